"""
Health Check Module
===================
Reports whether the counter stores behind the admission engine are reachable.

Redis down with the database up is degraded (the durable path still counts);
both down is unhealthy (every decision fails open).
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Response
from pydantic import BaseModel
from sqlalchemy import text
import structlog

from .breaker import StoreBreaker

logger = structlog.get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    status: str
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: HealthStatus
    service: str
    version: str
    components: Dict[str, ComponentHealth]
    circuit: Optional[Dict[str, Any]] = None
    timestamp: float


async def check_database(engine) -> ComponentHealth:
    """Check database connectivity and latency."""
    try:
        start = time.perf_counter()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency = (time.perf_counter() - start) * 1000
        return ComponentHealth(status="connected", latency_ms=round(latency, 2))
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return ComponentHealth(status="error", error=str(e))


async def check_redis(redis_client) -> ComponentHealth:
    """Check Redis connectivity and latency."""
    try:
        start = time.perf_counter()
        await redis_client.ping()
        latency = (time.perf_counter() - start) * 1000
        return ComponentHealth(status="connected", latency_ms=round(latency, 2))
    except Exception as e:
        logger.error("redis_health_check_failed", error=str(e))
        return ComponentHealth(status="error", error=str(e))


def overall_status(components: Dict[str, ComponentHealth]) -> HealthStatus:
    """Combine component results into one status."""
    failing = [name for name, health in components.items() if health.status == "error"]
    if not failing:
        return HealthStatus.HEALTHY
    if len(failing) == len(components):
        return HealthStatus.UNHEALTHY
    return HealthStatus.DEGRADED


def create_health_router(
    service_name: str,
    version: str = "1.0.0",
    engine=None,
    redis_client=None,
    breaker: Optional[StoreBreaker] = None,
    custom_checks: Optional[Dict[str, Callable[[], Awaitable[ComponentHealth]]]] = None,
) -> APIRouter:
    """
    Create a health check router for the rate limit stores.

    Args:
        service_name: Name of the service
        version: Service version
        engine: SQLAlchemy async engine of the durable store (optional)
        redis_client: Redis client of the fast store (optional)
        breaker: Fast store breaker whose state is reported (optional)
        custom_checks: Dict of extra health check functions (optional)

    Returns:
        FastAPI router with /health, /health/live and /health/ready endpoints
    """
    router = APIRouter(tags=["Health"])

    async def collect() -> Dict[str, ComponentHealth]:
        components: Dict[str, ComponentHealth] = {}
        if redis_client is not None:
            components["redis"] = await check_redis(redis_client)
        if engine is not None:
            components["database"] = await check_database(engine)
        if custom_checks:
            for name, check_fn in custom_checks.items():
                try:
                    components[name] = await check_fn()
                except Exception as e:
                    components[name] = ComponentHealth(status="error", error=str(e))
        return components

    @router.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check with per-store status and latency."""
        components = await collect()
        return HealthResponse(
            status=overall_status(components),
            service=service_name,
            version=version,
            components=components,
            circuit=breaker.metrics if breaker is not None else None,
            timestamp=time.time(),
        )

    @router.get("/health/live")
    async def liveness():
        """Liveness check - always 200 while the process runs."""
        return {"status": "alive"}

    @router.get("/health/ready")
    async def readiness():
        """Readiness check - 503 only when no store can count requests."""
        components = await collect()
        if components and overall_status(components) == HealthStatus.UNHEALTHY:
            return Response(
                content='{"status": "not_ready", "reason": "stores_unavailable"}',
                status_code=503,
                media_type="application/json",
            )
        return {"status": "ready"}

    return router
