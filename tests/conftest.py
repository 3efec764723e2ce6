"""
Shared fixtures for admission-core tests.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest
import pytest_asyncio

from admission_core.errors import FastStoreUnavailable, DurableStoreUnavailable
from admission_core.events import BaseEventSink, EventDispatcher
from admission_core.stores.base import BaseBlockStore, BaseCounterStore


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSink(BaseEventSink):
    name = "recording"

    def __init__(self):
        self.events: List = []

    async def emit(self, event) -> None:
        self.events.append(event)

    def of_type(self, violation_type):
        return [e for e in self.events if e.violation_type == violation_type]


class ExplodingSink(BaseEventSink):
    name = "exploding"

    async def emit(self, event) -> None:
        raise RuntimeError("collector down")


class DownCounterStore(BaseCounterStore):
    """Counter store whose every call fails."""

    def __init__(self, name: str = "redis", durable: bool = False):
        self.name = name
        self.calls = 0
        self._error = DurableStoreUnavailable if durable else FastStoreUnavailable

    async def increment(self, identifier, endpoint, bucket, rule, now):
        self.calls += 1
        raise self._error("connection refused")

    async def reset(self, identifier, buckets):
        raise self._error("connection refused")


class DownBlockStore(BaseBlockStore):
    """Block store whose every call fails."""

    def __init__(self, name: str = "redis"):
        self.name = name

    async def get(self, identifier, now):
        raise FastStoreUnavailable("connection refused")

    async def set_if_absent(self, identifier, block_until, now, config_key=None):
        raise FastStoreUnavailable("connection refused")

    async def delete(self, identifier):
        raise FastStoreUnavailable("connection refused")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(sink):
    # Inline delivery keeps event assertions deterministic
    return EventDispatcher(sink, background=False)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    from admission_core.database import create_async_engine, create_tables

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ratelimit.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()
