"""
Durable Stores
==============
SQL-backed counter and block storage used when Redis is unreachable.

Each write is one ``INSERT ... ON CONFLICT DO UPDATE`` statement, so two
instances racing on the same identifier can neither both create a row nor
both increment from the same base.
"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import case, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..database import create_session_factory, session_scope
from ..errors import DurableStoreUnavailable
from ..models import CounterSnapshot, RateLimitRule
from .base import BaseBlockStore, BaseCounterStore, as_utc
from .tables import BlockEntry, CounterEntry

# Dialects with native upsert + RETURNING
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _upsert_insert(engine: AsyncEngine):
    dialect = engine.dialect.name
    try:
        return _UPSERT_INSERTS[dialect]
    except KeyError:
        raise ValueError(
            f"Durable rate limit store needs PostgreSQL or SQLite, got '{dialect}'"
        ) from None


class DurableCounterStore(BaseCounterStore):
    """Counter windows persisted in ``rate_limit_counters``."""

    name = "database"

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._insert = _upsert_insert(engine)
        self._session_factory = create_session_factory(engine)

    async def increment(
        self,
        identifier: str,
        endpoint: str,
        bucket: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> CounterSnapshot:
        stmt = self._insert(CounterEntry).values(
            identifier=identifier,
            endpoint=endpoint,
            bucket=bucket,
            attempts=1,
            window_start=now,
            expires_at=now + rule.window,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        # An expired row restarts as a fresh window instead of accumulating
        live = CounterEntry.expires_at > excluded.window_start
        stmt = stmt.on_conflict_do_update(
            index_elements=[CounterEntry.identifier, CounterEntry.endpoint, CounterEntry.bucket],
            set_={
                "attempts": case((live, CounterEntry.attempts + 1), else_=1),
                "window_start": case((live, CounterEntry.window_start), else_=excluded.window_start),
                "expires_at": case((live, CounterEntry.expires_at), else_=excluded.expires_at),
                "updated_at": excluded.updated_at,
            },
        ).returning(CounterEntry.attempts, CounterEntry.expires_at)

        try:
            async with session_scope(self._session_factory) as session:
                row = (await session.execute(stmt)).one()
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(str(e)) from e

        return CounterSnapshot(attempts=int(row.attempts), reset_at=as_utc(row.expires_at))

    async def reset(self, identifier: str, buckets: Iterable[str]) -> None:
        buckets = list(buckets)
        if not buckets:
            return
        stmt = delete(CounterEntry).where(
            CounterEntry.identifier == identifier,
            CounterEntry.bucket.in_(buckets),
        )
        try:
            async with session_scope(self._session_factory) as session:
                await session.execute(stmt)
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(str(e)) from e


class DurableBlockStore(BaseBlockStore):
    """Blocks persisted in ``rate_limit_blocks``, one row per identifier."""

    name = "database"

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._insert = _upsert_insert(engine)
        self._session_factory = create_session_factory(engine)

    async def get(self, identifier: str, now: datetime) -> Optional[datetime]:
        stmt = select(BlockEntry.block_until).where(
            BlockEntry.identifier == identifier,
            BlockEntry.block_until > now,
        )
        try:
            async with self._session_factory() as session:
                block_until = await session.scalar(stmt)
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(str(e)) from e

        return as_utc(block_until) if block_until is not None else None

    async def set_if_absent(
        self,
        identifier: str,
        block_until: datetime,
        now: datetime,
        config_key: Optional[str] = None,
    ) -> bool:
        stmt = self._insert(BlockEntry).values(
            identifier=identifier,
            block_until=block_until,
            blocked_at=now,
            config_key=config_key,
        )
        excluded = stmt.excluded
        # Only an expired block may be replaced; live blocks never stack
        stmt = stmt.on_conflict_do_update(
            index_elements=[BlockEntry.identifier],
            set_={
                "block_until": excluded.block_until,
                "blocked_at": excluded.blocked_at,
                "config_key": excluded.config_key,
            },
            where=BlockEntry.block_until <= excluded.blocked_at,
        ).returning(BlockEntry.identifier)

        try:
            async with session_scope(self._session_factory) as session:
                row = (await session.execute(stmt)).first()
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(str(e)) from e

        return row is not None

    async def delete(self, identifier: str) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                await session.execute(delete(BlockEntry).where(BlockEntry.identifier == identifier))
        except SQLAlchemyError as e:
            raise DurableStoreUnavailable(str(e)) from e
