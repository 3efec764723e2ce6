"""
Store Interfaces
================
Abstract base classes for counter and block storage backends.

Every backend must make its increment and its block creation atomic at the
store itself; callers never lock around them.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..models import CounterSnapshot, RateLimitRule


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)


class BaseCounterStore(ABC):
    """Shared counter keyed by identifier, endpoint and rule bucket."""

    name: str = "base"

    @abstractmethod
    async def increment(
        self,
        identifier: str,
        endpoint: str,
        bucket: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> CounterSnapshot:
        """
        Atomically record one attempt and return the post-increment count.

        Args:
            identifier: Rate limit identifier (``user:...`` or ``ip:...``)
            endpoint: Endpoint name of the request
            bucket: Config key, suffixed with the rule index for extra rules
            rule: Rule whose window applies
            now: Current time

        Returns:
            CounterSnapshot with attempts in the live window and its reset time
        """

    @abstractmethod
    async def reset(self, identifier: str, buckets: Iterable[str]) -> None:
        """Drop the identifier's counters for the given buckets."""

    async def close(self) -> None:
        """Release backend resources."""


class BaseBlockStore(ABC):
    """Penalty-box storage with passive expiry."""

    name: str = "base"

    @abstractmethod
    async def get(self, identifier: str, now: datetime) -> Optional[datetime]:
        """Return ``block_until`` for a live block, else None."""

    @abstractmethod
    async def set_if_absent(
        self,
        identifier: str,
        block_until: datetime,
        now: datetime,
        config_key: Optional[str] = None,
    ) -> bool:
        """
        Create a block unless a live one exists.

        Returns:
            True if a new block was created, False if a live block was kept
        """

    @abstractmethod
    async def delete(self, identifier: str) -> None:
        """Lift any block on the identifier."""
