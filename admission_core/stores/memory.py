"""
In-Memory Stores
================
Single-process counter and block stores for development and testing.

Use the Redis and durable stores in production: state here is neither
shared between instances nor persisted.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, Optional, Tuple

from ..models import CounterSnapshot, RateLimitRule
from .base import BaseBlockStore, BaseCounterStore


class InMemoryCounterStore(BaseCounterStore):
    """
    Sliding-window log kept in process memory.

    Same semantics as the Redis script: every attempt is logged and the
    count covers the trailing window.
    """

    name = "memory"

    def __init__(self):
        self._logs: Dict[Tuple[str, str], Deque[datetime]] = {}
        self._lock = asyncio.Lock()

    async def increment(
        self,
        identifier: str,
        endpoint: str,
        bucket: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> CounterSnapshot:
        async with self._lock:
            log = self._logs.setdefault((identifier, bucket), deque())
            cutoff = now - rule.window
            while log and log[0] <= cutoff:
                log.popleft()
            log.append(now)

            count = len(log)
            index = count - rule.requests_allowed if count > rule.requests_allowed else 0
            return CounterSnapshot(attempts=count, reset_at=log[index] + rule.window)

    async def reset(self, identifier: str, buckets: Iterable[str]) -> None:
        async with self._lock:
            for bucket in buckets:
                self._logs.pop((identifier, bucket), None)


class InMemoryBlockStore(BaseBlockStore):
    """Penalty box kept in process memory."""

    name = "memory"

    def __init__(self):
        self._blocks: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def get(self, identifier: str, now: datetime) -> Optional[datetime]:
        block_until = self._blocks.get(identifier)
        if block_until is None or block_until <= now:
            return None
        return block_until

    async def set_if_absent(
        self,
        identifier: str,
        block_until: datetime,
        now: datetime,
        config_key: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            existing = self._blocks.get(identifier)
            if existing is not None and existing > now:
                return False
            self._blocks[identifier] = block_until
            return True

    async def delete(self, identifier: str) -> None:
        async with self._lock:
            self._blocks.pop(identifier, None)
