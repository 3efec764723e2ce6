"""
Store Breaker
=============
Tracks the health of the fast store so the engine and the block ledger go
straight to the durable store while it is failing, instead of waiting out
the store timeout on every request.

    closed     calls go through; ``fail_threshold`` failures in a row open it
    open       calls are skipped with StoreSkipped until ``cooldown`` elapses
    half_open  one trial call goes through; success closes, failure reopens

Usage:
    breaker = StoreBreaker("redis")
    snapshot = await breaker.call(store.increment, identifier, endpoint, bucket, rule, now)
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from .errors import StoreSkipped

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class StoreBreaker:
    """
    Per-process breaker for one store.

    ``last_error`` keeps the failure that opened the circuit; skipped calls
    carry it so fallback logs say why the store is being avoided.
    """

    def __init__(
        self,
        store_name: str,
        fail_threshold: int = 5,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store_name = store_name
        self.fail_threshold = fail_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = asyncio.Lock()

        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self.skipped_calls = 0
        self.last_error: Optional[str] = None
        self._opened_at: Optional[float] = None
        self._trial_running = False

    def retry_after(self) -> float:
        """Seconds until a trial call is allowed; 0 when not open."""
        if self.state != BreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self._opened_at))

    @property
    def metrics(self) -> Dict[str, Any]:
        return {
            "store": self.store_name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "skipped_calls": self.skipped_calls,
            "last_error": self.last_error,
            "retry_after_seconds": round(self.retry_after(), 1),
        }

    def reset(self) -> None:
        """Close the circuit by hand."""
        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self.last_error = None
        self._opened_at = None
        self._trial_running = False
        logger.info("store_breaker_reset", store=self.store_name)

    async def _admit(self) -> bool:
        async with self._lock:
            if self.state == BreakerState.OPEN and self.retry_after() == 0:
                self.state = BreakerState.HALF_OPEN
                logger.info("store_breaker_half_open", store=self.store_name)

            if self.state == BreakerState.CLOSED:
                return True
            if self.state == BreakerState.HALF_OPEN and not self._trial_running:
                self._trial_running = True
                return True

            self.skipped_calls += 1
            return False

    async def _succeeded(self) -> None:
        async with self._lock:
            if self.state != BreakerState.CLOSED:
                logger.info(
                    "store_breaker_closed",
                    store=self.store_name,
                    skipped_calls=self.skipped_calls,
                )
            self.state = BreakerState.CLOSED
            self.consecutive_failures = 0
            self.last_error = None
            self._opened_at = None
            self._trial_running = False

    async def _failed(self, exc: Exception) -> None:
        async with self._lock:
            self.consecutive_failures += 1
            self.last_error = str(exc) or type(exc).__name__
            self._trial_running = False

            if self.state == BreakerState.OPEN:
                return
            trial_failed = self.state == BreakerState.HALF_OPEN
            if trial_failed or self.consecutive_failures >= self.fail_threshold:
                self.state = BreakerState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "store_breaker_opened",
                    store=self.store_name,
                    failures=self.consecutive_failures,
                    error=self.last_error,
                    cooldown=self.cooldown,
                )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """
        Run ``func(*args)`` unless the circuit is open.

        The coroutine is only created once the call is admitted.

        Raises:
            StoreSkipped: If the circuit is open
        """
        if not await self._admit():
            raise StoreSkipped(self.store_name, self.retry_after(), self.last_error)

        try:
            result = await func(*args)
        except asyncio.CancelledError:
            async with self._lock:
                self._trial_running = False
            raise
        except Exception as e:
            await self._failed(e)
            raise
        await self._succeeded()
        return result
