"""
Block Ledger
============
Tracks identifiers under an escalated temporary block ("penalty box").

A live block overrides the counter check entirely. Blocks never stack: a
violation while a block is live leaves its expiry untouched.

Blocks are written to both backends. A block created while the primary was
down exists only in the fallback; until it lapses, a primary miss is checked
against the fallback and the block is copied back. Other processes that
never saw the outage do not know about it.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import structlog

from .breaker import StoreBreaker
from .errors import StoreUnavailable
from .models import BlockStatus
from .stores.base import BaseBlockStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_PRIMARY_FAILURES = (StoreUnavailable, asyncio.TimeoutError)


class BlockLedger:
    """
    Block ledger with a primary backend and an optional durable fallback.

    Raises StoreUnavailable only when every configured backend failed.
    """

    def __init__(
        self,
        primary: BaseBlockStore,
        fallback: Optional[BaseBlockStore] = None,
        timeout: float = 0.25,
        breaker: Optional[StoreBreaker] = None,
    ):
        """
        Args:
            primary: Fast backend, usually Redis
            fallback: Durable backend used when the primary fails
            timeout: Seconds allowed per backend call
            breaker: Circuit breaker shared with the fast counter store
        """
        self.primary = primary
        self.fallback = fallback
        self.timeout = timeout
        self.breaker = breaker
        # Latest expiry of a block that only the fallback holds
        self._fallback_only_until: Optional[datetime] = None

    async def _bounded(self, func: Callable[..., Awaitable[T]], *args) -> T:
        return await asyncio.wait_for(func(*args), timeout=self.timeout)

    async def _call_primary(self, func: Callable[..., Awaitable[T]], *args) -> T:
        if self.breaker is not None:
            return await self.breaker.call(self._bounded, func, *args)
        return await self._bounded(func, *args)

    async def _run(self, operation: str, identifier: str, method: str, *args) -> Tuple[Any, bool]:
        """
        Run ``method`` on the primary, or on the fallback when it fails.

        Returns:
            Tuple of (result, answered_by_fallback)
        """
        try:
            return await self._call_primary(getattr(self.primary, method), identifier, *args), False
        except _PRIMARY_FAILURES as e:
            if self.fallback is None:
                raise StoreUnavailable(self.primary.name, str(e) or type(e).__name__) from e
            logger.warning(
                "block_ledger_primary_unavailable",
                operation=operation,
                store=self.primary.name,
                error=str(e) or type(e).__name__,
            )

        try:
            return await self._bounded(getattr(self.fallback, method), identifier, *args), True
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            raise StoreUnavailable(self.fallback.name, str(e) or type(e).__name__) from e

    def _fallback_may_hold_blocks(self, now: datetime) -> bool:
        if self._fallback_only_until is not None and self._fallback_only_until <= now:
            self._fallback_only_until = None
        return self._fallback_only_until is not None

    async def _recover_from_fallback(self, identifier: str, now: datetime) -> Optional[datetime]:
        """Look up a block written to the fallback while the primary was down."""
        try:
            block_until = await self._bounded(self.fallback.get, identifier, now)
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            logger.warning("block_ledger_fallback_unavailable", store=self.fallback.name, error=str(e))
            return None
        if block_until is None:
            return None
        try:
            await self._call_primary(self.primary.set_if_absent, identifier, block_until, now)
        except _PRIMARY_FAILURES as e:
            logger.warning("block_ledger_copy_failed", store=self.primary.name, error=str(e))
        return block_until

    async def status(self, identifier: str, now: datetime) -> BlockStatus:
        """Whether ``identifier`` is blocked at ``now``."""
        block_until, from_fallback = await self._run("status", identifier, "get", now)
        if block_until is None and not from_fallback and self._fallback_may_hold_blocks(now):
            block_until = await self._recover_from_fallback(identifier, now)
        if block_until is None:
            return BlockStatus(blocked=False)
        return BlockStatus(blocked=True, block_until=block_until)

    async def block(
        self,
        identifier: str,
        block_until: datetime,
        now: datetime,
        config_key: Optional[str] = None,
    ) -> bool:
        """
        Put ``identifier`` in the penalty box until ``block_until``.

        Blocks are written to both backends so either one can answer
        ``status()`` during an outage of the other.

        Returns:
            True if a new block was created, False if a live block was kept
        """
        created, from_fallback = await self._run(
            "block", identifier, "set_if_absent", block_until, now, config_key
        )
        if from_fallback:
            if created:
                self._fallback_only_until = max(self._fallback_only_until or block_until, block_until)
        elif created and self.fallback is not None:
            try:
                await self._bounded(self.fallback.set_if_absent, identifier, block_until, now, config_key)
            except (StoreUnavailable, asyncio.TimeoutError) as e:
                logger.warning("block_ledger_mirror_failed", store=self.fallback.name, error=str(e))

        if created:
            logger.warning(
                "rate_limit_block_created",
                identifier=identifier,
                config_key=config_key,
                block_until=block_until.isoformat(),
            )
        return created

    async def unblock(self, identifier: str) -> None:
        """Lift a block from every backend that is reachable."""
        for store in filter(None, (self.primary, self.fallback)):
            try:
                await self._bounded(store.delete, identifier)
            except (StoreUnavailable, asyncio.TimeoutError) as e:
                logger.warning("block_ledger_unblock_failed", store=store.name, error=str(e))
