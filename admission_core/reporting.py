"""
Rate Limit Reporting
====================
Read-only views over the durable counter and block tables for dashboards
and admin tooling. Nothing here writes.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from .database import create_session_factory
from .models import RateLimitConfig
from .stores.base import as_utc
from .stores.tables import BlockEntry, CounterEntry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitReporter:
    """Queries live counter windows and blocks."""

    def __init__(self, engine: AsyncEngine, clock: Callable[[], datetime] = _utcnow):
        self._session_factory = create_session_factory(engine)
        self._clock = clock

    @staticmethod
    def _entry_dict(entry: CounterEntry, now: datetime) -> Dict[str, Any]:
        expires_at = as_utc(entry.expires_at)
        return {
            "identifier": entry.identifier,
            "endpoint": entry.endpoint,
            "bucket": entry.bucket,
            "attempts": entry.attempts,
            "window_start": as_utc(entry.window_start).isoformat(),
            "expires_at": expires_at.isoformat(),
            "time_remaining_ms": max(0, int((expires_at - now).total_seconds() * 1000)),
        }

    async def active_entries(
        self,
        identifier: Optional[str] = None,
        endpoint: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Live counter windows, most recently updated first."""
        now = self._clock()
        stmt = select(CounterEntry).where(CounterEntry.expires_at > now)
        if identifier is not None:
            stmt = stmt.where(CounterEntry.identifier == identifier)
        if endpoint is not None:
            stmt = stmt.where(CounterEntry.endpoint == endpoint)
        stmt = stmt.order_by(desc(CounterEntry.updated_at)).limit(limit)

        async with self._session_factory() as session:
            entries = (await session.execute(stmt)).scalars().all()
        return [self._entry_dict(entry, now) for entry in entries]

    async def summary(self, near_limit_threshold: int = 80) -> Dict[str, Any]:
        """
        Aggregate statistics over live windows.

        Args:
            near_limit_threshold: Attempt count from which a window counts as near its limit

        Returns:
            Dict with total_active, near_limit, active_blocks and top_endpoints
        """
        now = self._clock()
        live = CounterEntry.expires_at > now

        async with self._session_factory() as session:
            total_active = await session.scalar(
                select(func.count()).select_from(CounterEntry).where(live)
            )
            near_limit = await session.scalar(
                select(func.count()).select_from(CounterEntry).where(
                    live, CounterEntry.attempts >= near_limit_threshold
                )
            )
            active_blocks = await session.scalar(
                select(func.count()).select_from(BlockEntry).where(BlockEntry.block_until > now)
            )
            total_attempts = func.sum(CounterEntry.attempts).label("total_attempts")
            top = (await session.execute(
                select(CounterEntry.endpoint, func.count().label("entries"), total_attempts)
                .where(live)
                .group_by(CounterEntry.endpoint)
                .order_by(desc(total_attempts))
                .limit(5)
            )).all()

        return {
            "total_active": total_active or 0,
            "near_limit": near_limit or 0,
            "active_blocks": active_blocks or 0,
            "top_endpoints": [
                {"endpoint": row.endpoint, "count": row.entries, "total_attempts": int(row.total_attempts or 0)}
                for row in top
            ],
        }

    async def status(self, identifier: str, endpoint: str, config: RateLimitConfig) -> Dict[str, Any]:
        """Quota position of one identifier on one endpoint under ``config``."""
        now = self._clock()
        rule = config.primary_rule

        async with self._session_factory() as session:
            entry = await session.scalar(
                select(CounterEntry).where(
                    CounterEntry.identifier == identifier,
                    CounterEntry.endpoint == endpoint,
                    CounterEntry.bucket == config.key,
                    CounterEntry.expires_at > now,
                )
            )
            block = await session.scalar(
                select(BlockEntry).where(
                    BlockEntry.identifier == identifier,
                    BlockEntry.block_until > now,
                )
            )

        attempts = entry.attempts if entry is not None else 0
        return {
            "identifier": identifier,
            "endpoint": endpoint,
            "config_key": config.key,
            "is_active": entry is not None,
            "attempts": attempts,
            "limit": rule.requests_allowed,
            "remaining": max(0, rule.requests_allowed - attempts),
            "reset_at": as_utc(entry.expires_at).isoformat() if entry is not None else None,
            "blocked": block is not None,
            "block_until": as_utc(block.block_until).isoformat() if block is not None else None,
        }
