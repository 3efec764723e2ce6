"""
Decision Engine
===============
Admission decisions for inbound requests.

Order of evaluation:

1. Emergency bypass token
2. Trusted IP whitelist
3. Block ledger (penalty box)
4. Sliding-window counters, fast store first, durable store on failure
5. Fail open when no store can count

``check()`` always returns a RateLimitResult; store outages and internal
errors surface as ``degraded`` metadata, never as exceptions.
"""

import asyncio
import hmac
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, TypeVar, Union

import structlog

from .catalog import RuleCatalog, severity_for
from .breaker import StoreBreaker
from .errors import DurableStoreUnavailable, StoreSkipped, StoreUnavailable
from .events import EventDispatcher, LoggingEventSink, ViolationEvent, ViolationType
from .identifiers import IPNetwork, build_identifier, is_whitelisted
from .ledger import BlockLedger
from .models import (
    UNLIMITED,
    BlockStatus,
    CounterSnapshot,
    Degraded,
    RateLimitConfig,
    RateLimitContext,
    RateLimitResult,
    RateLimitRule,
    RuleCombination,
    Severity,
    seconds_until,
)
from .stores.base import BaseCounterStore
from .stores.memory import InMemoryBlockStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Validity reported for bypassed requests
BYPASS_RESET = timedelta(seconds=60)

_FAST_FAILURES = (StoreUnavailable, asyncio.TimeoutError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def bucket_for(config: RateLimitConfig, index: int) -> str:
    """Counter bucket of the rule at ``index``; the primary rule uses the bare key."""
    return config.key if index == 0 else f"{config.key}:{index}"


class DecisionEngine:
    """
    Stateless admission engine; all shared state lives in the stores.

    Example:
        engine = DecisionEngine(
            catalog=RuleCatalog(),
            fast_store=RedisCounterStore(redis_client),
            durable_store=DurableCounterStore(db_engine),
            ledger=BlockLedger(RedisBlockStore(redis_client), DurableBlockStore(db_engine)),
        )

        result = await engine.check(context, "auth_login")
        if not result.allowed:
            ...  # respond 429 with result.headers()
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        fast_store: BaseCounterStore,
        durable_store: Optional[BaseCounterStore] = None,
        ledger: Optional[BlockLedger] = None,
        dispatcher: Optional[EventDispatcher] = None,
        breaker: Optional[StoreBreaker] = None,
        whitelist: Iterable[IPNetwork] = (),
        emergency_token: Optional[str] = None,
        store_timeout: float = 0.25,
        rule_combination: RuleCombination = RuleCombination.ALL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            catalog: Rule catalog used to resolve config keys
            fast_store: Shared low-latency counter store (Redis)
            durable_store: SQL fallback counter store
            ledger: Block ledger; defaults to an in-process one
            dispatcher: Violation event dispatcher; defaults to structured logs
            breaker: Circuit breaker guarding the fast store
            whitelist: Trusted networks that are never limited
            emergency_token: Shared secret for the emergency bypass; None disables it
            store_timeout: Seconds allowed per store call
            rule_combination: Whether every rule (ALL) or one rule (ANY) must pass
            clock: Source of the current UTC time
        """
        self.catalog = catalog
        self.fast_store = fast_store
        self.durable_store = durable_store
        self.ledger = ledger or BlockLedger(InMemoryBlockStore(), timeout=store_timeout)
        self.dispatcher = dispatcher or EventDispatcher(LoggingEventSink())
        self.breaker = breaker
        self.whitelist = list(whitelist)
        self.emergency_token = emergency_token or None
        self.store_timeout = store_timeout
        self.rule_combination = RuleCombination(rule_combination)
        self._clock = clock

    # --- store access -----------------------------------------------------

    async def _bounded(self, func: Callable[..., Awaitable[T]], *args) -> T:
        return await asyncio.wait_for(func(*args), timeout=self.store_timeout)

    async def _call_fast(self, func: Callable[..., Awaitable[T]], *args) -> T:
        if self.breaker is not None:
            return await self.breaker.call(self._bounded, func, *args)
        return await self._bounded(func, *args)

    async def _increment(
        self,
        identifier: str,
        endpoint: str,
        bucket: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> Tuple[CounterSnapshot, bool]:
        """
        Record one attempt.

        Returns:
            Tuple of (snapshot, used_fallback)

        Raises:
            StoreUnavailable: If no store could count the attempt
        """
        try:
            snapshot = await self._call_fast(
                self.fast_store.increment, identifier, endpoint, bucket, rule, now
            )
            return snapshot, False
        except _FAST_FAILURES as e:
            error = str(e) or type(e).__name__
            if isinstance(e, StoreSkipped):
                error = e.last_error or error
                logger.debug(
                    "fast_store_skipped",
                    store=self.fast_store.name,
                    bucket=bucket,
                    last_error=e.last_error,
                    retry_after=round(e.retry_after, 1),
                )
            else:
                logger.warning("fast_store_unavailable", store=self.fast_store.name, error=error)
            if self.durable_store is None:
                raise StoreUnavailable(self.fast_store.name, error) from e

        try:
            snapshot = await self._bounded(
                self.durable_store.increment, identifier, endpoint, bucket, rule, now
            )
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            error = str(e) or type(e).__name__
            logger.error("durable_store_unavailable", store=self.durable_store.name, error=error)
            raise DurableStoreUnavailable(error) from e
        return snapshot, True

    # --- results ----------------------------------------------------------

    def _unlimited(
        self,
        config: RateLimitConfig,
        now: datetime,
        degraded: Optional[Degraded] = None,
    ) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=UNLIMITED,
            remaining=UNLIMITED,
            reset_at=now + BYPASS_RESET,
            degraded=degraded.value if degraded else None,
            config_key=config.key,
        )

    def _fail_open(self, config: RateLimitConfig, now: datetime, degraded: Degraded) -> RateLimitResult:
        rule = config.primary_rule
        return RateLimitResult(
            allowed=True,
            limit=rule.requests_allowed,
            remaining=rule.requests_allowed,
            reset_at=now + rule.window,
            degraded=degraded.value,
            config_key=config.key,
        )

    async def _emit(
        self,
        violation_type: ViolationType,
        context: RateLimitContext,
        identifier: str,
        config: RateLimitConfig,
        now: datetime,
        severity: Optional[Severity] = None,
        success: bool = False,
        block_until: Optional[datetime] = None,
        **details,
    ) -> None:
        await self.dispatcher.emit(ViolationEvent(
            violation_type=violation_type,
            identifier=identifier,
            ip=context.ip,
            endpoint=context.endpoint,
            config_key=config.key,
            severity=severity or severity_for(config.key),
            user_id=context.user_id,
            user_agent=context.user_agent,
            success=success,
            block_until=block_until,
            details=details,
            timestamp=now,
        ))

    # --- checks -----------------------------------------------------------

    def _has_emergency_token(self, context: RateLimitContext) -> bool:
        if not self.emergency_token or not context.emergency_token:
            return False
        return hmac.compare_digest(
            context.emergency_token.encode("utf-8"),
            self.emergency_token.encode("utf-8"),
        )

    async def _block_status(self, identifier: str, now: datetime) -> BlockStatus:
        try:
            return await self.ledger.status(identifier, now)
        except StoreUnavailable as e:
            # No backend can answer: treat as not blocked
            logger.error("block_ledger_unavailable", identifier=identifier, error=str(e))
            return BlockStatus(blocked=False)

    async def check(
        self,
        context: RateLimitContext,
        config_key: str,
        override_config: Optional[RateLimitConfig] = None,
    ) -> RateLimitResult:
        """
        Decide whether one request is admitted.

        Args:
            context: Request context
            config_key: Endpoint class, operation or tier name
            override_config: Config to enforce instead of the catalog entry

        Returns:
            RateLimitResult; never raises
        """
        now = self._clock()
        config = override_config
        try:
            if config is None:
                config = self.catalog.resolve(config_key, context.role)
            return await self._check(context, config, now)
        except Exception:
            logger.exception(
                "rate_limit_check_failed",
                config_key=config_key,
                endpoint=context.endpoint,
                ip=context.ip,
            )
            return self._fail_open(config or self.catalog.default, now, Degraded.INTERNAL_ERROR)

    async def _check(
        self,
        context: RateLimitContext,
        config: RateLimitConfig,
        now: datetime,
    ) -> RateLimitResult:
        if self._has_emergency_token(context):
            await self._emit(
                ViolationType.EMERGENCY_BYPASS,
                context,
                build_identifier(context),
                config,
                now,
                severity=Severity.CRITICAL,
                success=True,
                degraded=Degraded.EMERGENCY_BYPASS.value,
            )
            return self._unlimited(config, now, Degraded.EMERGENCY_BYPASS)

        if is_whitelisted(context.ip, self.whitelist):
            return self._unlimited(config, now)

        identifier = build_identifier(context)

        status = await self._block_status(identifier, now)
        if status.blocked:
            await self._emit(
                ViolationType.BLOCKED, context, identifier, config, now,
                block_until=status.block_until,
            )
            return RateLimitResult(
                allowed=False,
                limit=config.primary_rule.requests_allowed,
                remaining=0,
                reset_at=status.block_until,
                blocked=True,
                block_until=status.block_until,
                retry_after_seconds=seconds_until(status.block_until, now, minimum=1),
                config_key=config.key,
            )

        outcomes: List[Tuple[RateLimitRule, CounterSnapshot]] = []
        degraded: Optional[str] = None
        for index, rule in enumerate(config.rules):
            try:
                snapshot, used_fallback = await self._increment(
                    identifier, context.endpoint, bucket_for(config, index), rule, now
                )
            except StoreUnavailable as e:
                logger.error(
                    "rate_limit_storage_unavailable",
                    identifier=identifier,
                    config_key=config.key,
                    error=str(e),
                )
                await self._emit(
                    ViolationType.STORAGE_UNAVAILABLE, context, identifier, config, now,
                    severity=Severity.HIGH,
                    success=True,
                    degraded=Degraded.STORAGE_UNAVAILABLE.value,
                    error=str(e),
                )
                return self._fail_open(config, now, Degraded.STORAGE_UNAVAILABLE)
            if used_fallback:
                degraded = Degraded.FALLBACK_STORE.value
            outcomes.append((rule, snapshot))

        passed = [o for o in outcomes if o[1].attempts <= o[0].requests_allowed]
        failed = [o for o in outcomes if o[1].attempts > o[0].requests_allowed]

        if self.rule_combination == RuleCombination.ALL:
            allowed = not failed
        else:
            allowed = bool(passed)

        if allowed:
            rule, snapshot = min(
                passed,
                key=lambda o: (o[0].requests_allowed - o[1].attempts, o[1].reset_at),
            )
            return RateLimitResult(
                allowed=True,
                limit=rule.requests_allowed,
                remaining=max(0, rule.requests_allowed - snapshot.attempts),
                reset_at=snapshot.reset_at,
                degraded=degraded,
                config_key=config.key,
            )

        # ALL waits for every failed rule to recover, ANY only for the first
        pick = max if self.rule_combination == RuleCombination.ALL else min
        rule, snapshot = pick(failed, key=lambda o: o[1].reset_at)

        block_until = None
        if config.block_duration:
            block_until = now + config.block_duration
            try:
                if not await self.ledger.block(identifier, block_until, now, config.key):
                    # A concurrent request created the block first; report that one
                    block_until = (await self.ledger.status(identifier, now)).block_until
            except StoreUnavailable as e:
                logger.error("block_ledger_unavailable", identifier=identifier, error=str(e))
                block_until = None

        await self._emit(
            ViolationType.EXCEEDED, context, identifier, config, now,
            block_until=block_until,
            attempts=snapshot.attempts,
            limit=rule.requests_allowed,
            window_seconds=int(rule.window.total_seconds()),
        )
        return RateLimitResult(
            allowed=False,
            limit=rule.requests_allowed,
            remaining=0,
            reset_at=snapshot.reset_at,
            retry_after_seconds=seconds_until(snapshot.reset_at, now, minimum=1),
            degraded=degraded,
            config_key=config.key,
        )

    # --- administration ---------------------------------------------------

    async def reset(self, identifier: str, config: Union[RateLimitConfig, str]) -> None:
        """
        Clear an identifier's counters for ``config`` and lift its block.

        Best effort: unreachable stores are logged and skipped.
        """
        if isinstance(config, str):
            config = self.catalog.resolve(config)
        buckets = [bucket_for(config, index) for index in range(len(config.rules))]

        for store in filter(None, (self.fast_store, self.durable_store)):
            try:
                await self._bounded(store.reset, identifier, buckets)
            except (StoreUnavailable, asyncio.TimeoutError) as e:
                logger.warning("rate_limit_reset_failed", store=store.name, error=str(e))

        await self.ledger.unblock(identifier)
        logger.info("rate_limit_reset", identifier=identifier, config_key=config.key)

    async def close(self) -> None:
        """Flush pending events and release store connections."""
        await self.dispatcher.close()
        for store in filter(None, (self.fast_store, self.durable_store)):
            await store.close()
