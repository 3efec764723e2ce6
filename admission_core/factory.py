"""
Engine Factory
==============
Wires settings into a ready-to-use DecisionEngine.

Usage:
    settings = RateLimitSettings.from_env()
    components = await create_engine_from_settings(settings)
    app.state.rate_limit_engine = components.engine
    ...
    await components.close()
"""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from .catalog import load_catalog
from .breaker import StoreBreaker
from .config import RateLimitSettings
from .database import close_engine, create_async_engine, create_tables
from .engine import DecisionEngine
from .events import (
    AuditTrailSink,
    CompositeEventSink,
    EventDispatcher,
    HttpEventSink,
    LoggingEventSink,
)
from .identifiers import parse_whitelist
from .ledger import BlockLedger
from .reporting import RateLimitReporter
from .stores import (
    DurableBlockStore,
    DurableCounterStore,
    RedisBlockStore,
    RedisCounterStore,
)

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitComponents:
    """Everything created for one engine; closed together on shutdown."""
    engine: DecisionEngine
    redis_client: redis.Redis
    db_engine: AsyncEngine
    breaker: StoreBreaker
    audit_trail: AuditTrailSink
    reporter: RateLimitReporter

    async def close(self) -> None:
        await self.engine.close()
        await close_engine(self.db_engine)


async def create_engine_from_settings(
    settings: Optional[RateLimitSettings] = None,
    create_schema: bool = True,
) -> RateLimitComponents:
    """
    Build the engine, its stores and its event sinks.

    Args:
        settings: Settings to use; read from the environment when omitted
        create_schema: Create the durable tables if missing

    Returns:
        RateLimitComponents holding the engine and its collaborators
    """
    settings = settings or RateLimitSettings.from_env()

    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    db_engine = create_async_engine(settings.database_url)
    if create_schema:
        await create_tables(db_engine)

    breaker = StoreBreaker(
        "redis",
        fail_threshold=settings.breaker_fail_threshold,
        cooldown=settings.breaker_cooldown,
    )

    audit_trail = AuditTrailSink(settings.service_name)
    sinks = [LoggingEventSink(), audit_trail]
    if settings.event_sink_url:
        sinks.append(HttpEventSink(settings.event_sink_url, timeout=settings.event_sink_timeout))

    engine = DecisionEngine(
        catalog=load_catalog(settings.config_file),
        fast_store=RedisCounterStore(redis_client),
        durable_store=DurableCounterStore(db_engine),
        ledger=BlockLedger(
            RedisBlockStore(redis_client),
            DurableBlockStore(db_engine),
            timeout=settings.store_timeout,
            breaker=breaker,
        ),
        dispatcher=EventDispatcher(CompositeEventSink(sinks)),
        breaker=breaker,
        whitelist=parse_whitelist(settings.whitelist),
        emergency_token=settings.emergency_bypass_token,
        store_timeout=settings.store_timeout,
        rule_combination=settings.rule_combination,
    )

    logger.info(
        "rate_limit_engine_created",
        service=settings.service_name,
        rule_combination=settings.rule_combination.value,
        whitelist_entries=len(engine.whitelist),
        emergency_bypass=engine.emergency_token is not None,
        event_sink_url=settings.event_sink_url,
    )

    return RateLimitComponents(
        engine=engine,
        redis_client=redis_client,
        db_engine=db_engine,
        breaker=breaker,
        audit_trail=audit_trail,
        reporter=RateLimitReporter(db_engine),
    )
