"""
Tests for the HTTP layer: middleware, FastAPI guard and health router.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import Depends, FastAPI
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from admission_core.breaker import StoreBreaker
from admission_core.catalog import RuleCatalog
from admission_core.engine import DecisionEngine
from admission_core.errors import FastStoreUnavailable, RateLimitExceeded
from admission_core.events import EventDispatcher
from admission_core.health import HealthStatus, create_health_router
from admission_core.middleware import (
    RateLimitGuard,
    RateLimitMiddleware,
    build_rate_limit_response,
    rate_limit_exceeded_handler,
    rate_limit_message,
)
from admission_core.models import RateLimitConfig, RateLimitResult, RateLimitRule, Role
from admission_core.reporting import RateLimitReporter
from admission_core.stores import DurableCounterStore, InMemoryCounterStore

from conftest import DownCounterStore, RecordingSink


def make_engine(sink=None, **kwargs):
    return DecisionEngine(
        catalog=RuleCatalog(),
        fast_store=InMemoryCounterStore(),
        dispatcher=EventDispatcher(sink or RecordingSink(), background=False),
        **kwargs,
    )


async def homepage(request):
    return JSONResponse({"status": "ok"})


def resolve_key(request):
    if request.url.path == "/login":
        return "auth_login"
    if request.url.path == "/static":
        return None
    if request.url.path == "/api":
        return "api_user"
    return "public"


def create_app(engine, resolve_config_key=resolve_key, **kwargs):
    app = Starlette(routes=[
        Route("/login", homepage, methods=["GET", "POST"]),
        Route("/static", homepage),
        Route("/health", homepage),
        Route("/data", homepage),
        Route("/api", homepage),
        Route("/users/{user_id}", homepage),
    ])
    app.add_middleware(RateLimitMiddleware, engine=engine, resolve_config_key=resolve_config_key, **kwargs)
    return app


def create_client(engine, resolve_config_key=resolve_key, **kwargs):
    app = create_app(engine, resolve_config_key, **kwargs)
    return TestClient(app)


class TestRateLimitMiddleware:
    """Tests for the Starlette middleware."""

    def test_allowed_request_gets_headers(self):
        """Allowed responses should carry the rate limit headers."""
        with create_client(make_engine()) as client:
            response = client.post("/login")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert "X-RateLimit-Reset" in response.headers

    def test_refused_then_blocked(self):
        """The sixth login is refused and the seventh reports a block."""
        with create_client(make_engine()) as client:
            for _ in range(5):
                assert client.post("/login").status_code == 200

            refused = client.post("/login")
            blocked = client.post("/login")

        assert refused.status_code == 429
        assert refused.json()["error"] == "Rate limit exceeded"
        assert refused.json()["message"].startswith("Too many requests.")
        assert "Retry-After" in refused.headers
        assert "X-RateLimit-Blocked" not in refused.headers

        assert blocked.status_code == 429
        assert blocked.headers["X-RateLimit-Blocked"] == "true"
        assert "X-RateLimit-Block-Until" in blocked.headers
        assert blocked.json()["message"] == "You are temporarily blocked. Try again after 30 minutes."

    def test_endpoint_name(self):
        """Events should carry METHOD:path endpoint names."""
        sink = RecordingSink()
        with create_client(make_engine(sink)) as client:
            for _ in range(6):
                client.post("/login")

        assert sink.events[0].endpoint == "POST:/login"

    def test_excluded_and_unresolved_paths(self):
        """Health paths and unresolved keys should skip the check."""
        with create_client(make_engine()) as client:
            assert "X-RateLimit-Limit" not in client.get("/health").headers
            assert "X-RateLimit-Limit" not in client.get("/static").headers
            assert "X-RateLimit-Limit" in client.get("/data").headers

    def test_forwarded_ip_used(self):
        """Clients behind a proxy should be keyed by X-Forwarded-For."""
        with create_client(make_engine()) as client:
            for _ in range(6):
                client.post("/login", headers={"X-Forwarded-For": "198.51.100.1"})
            other = client.post("/login", headers={"X-Forwarded-For": "198.51.100.2"})

        assert other.status_code == 200

    def test_emergency_header(self):
        """The bypass header should lift limits."""
        with create_client(make_engine(emergency_token="s3cret")) as client:
            for _ in range(6):
                client.post("/login")
            response = client.post("/login", headers={"X-Emergency-Bypass": "s3cret"})

        assert response.status_code == 200

    def test_identity_resolver(self):
        """Resolved roles should select the API tier."""
        with create_client(
            make_engine(),
            resolve_identity=lambda request: ("u-1", Role.ADMIN),
        ) as client:
            response = client.get("/api")

        assert response.headers["X-RateLimit-Limit"] == "1000"

    def test_skip_identity_paths(self):
        """Listed paths should be counted anonymously."""
        with create_client(
            make_engine(),
            resolve_identity=lambda request: ("u-1", Role.ADMIN),
            skip_identity_paths={"/api"},
        ) as client:
            response = client.get("/api")

        assert response.headers["X-RateLimit-Limit"] == "100"

    def test_endpoint_uses_route_template(self):
        """Path parameters should collapse into the route placeholder."""
        sink = RecordingSink()
        with create_client(make_engine(sink)) as client:
            statuses = [client.get(f"/users/{i}").status_code for i in range(1, 22)]

        assert statuses.count(200) == 20
        assert sink.events[0].endpoint == "GET:/users/{user_id}"

    def test_hooks(self):
        """Hooks should see each allowed and refused decision."""
        seen = []

        async def on_success(context, result):
            seen.append(("success", context.endpoint, result.remaining))

        async def on_violation(context, result):
            seen.append(("violation", context.endpoint, result.remaining))

        with create_client(make_engine(), on_success=on_success, on_violation=on_violation) as client:
            for _ in range(6):
                client.post("/login")

        assert seen[:5] == [("success", "POST:/login", n) for n in (4, 3, 2, 1, 0)]
        assert seen[5] == ("violation", "POST:/login", 0)

    def test_failing_hook_keeps_response(self):
        """A hook that raises should not change the response."""

        async def broken(context, result):
            raise RuntimeError("audit db down")

        with create_client(make_engine(), on_success=broken, on_violation=broken) as client:
            statuses = [client.post("/login").status_code for _ in range(6)]

        assert statuses == [200] * 5 + [429]

    def test_failing_config_resolver_lets_request_through(self):
        """A config key resolver that raises should skip the check."""

        def broken(request):
            raise RuntimeError("bad route table")

        with create_client(make_engine(), resolve_config_key=broken) as client:
            response = client.get("/data")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_failing_identity_resolver_counts_anonymously(self):
        """An identity resolver that raises should fall back to the IP."""

        def broken(request):
            raise RuntimeError("token service down")

        with create_client(make_engine(), resolve_identity=broken) as client:
            response = client.get("/api")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "100"


class TestDurableFallbackRoutes:
    """Tests for parameterised routes while the fast store is down."""

    @pytest.mark.asyncio
    async def test_parameterised_route_shares_one_row(self, db_engine):
        """Every /users/{id} should count against one durable window."""
        engine = DecisionEngine(
            catalog=RuleCatalog(),
            fast_store=DownCounterStore(),
            durable_store=DurableCounterStore(db_engine),
            dispatcher=EventDispatcher(RecordingSink(), background=False),
        )
        app = create_app(engine, resolve_config_key=lambda request: "public")

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            statuses = [(await client.get(f"/users/{i}")).status_code for i in range(1, 31)]

        assert statuses.count(200) == 20
        entries = await RateLimitReporter(db_engine).active_entries()
        assert [e["endpoint"] for e in entries] == ["GET:/users/{user_id}"]
        # The 21st attempt is refused and blocks; blocked requests are not counted
        assert entries[0]["attempts"] == 21


class TestRateLimitGuard:
    """Tests for the FastAPI dependency."""

    def create_app(self, engine):
        app = FastAPI()
        app.state.rate_limit_engine = engine

        @app.post("/login", dependencies=[Depends(RateLimitGuard("auth_login"))])
        async def login():
            return {"status": "ok"}

        tight = RateLimitConfig(key="export", rules=(RateLimitRule(1, timedelta(hours=1)),))

        @app.get("/export")
        async def export(result=Depends(RateLimitGuard("export", override_config=tight))):
            return {"remaining": result.remaining}

        return app

    def test_headers_on_success(self):
        """Allowed requests should get the headers."""
        with TestClient(self.create_app(make_engine())) as client:
            response = client.post("/login")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_raises_429(self):
        """Without the handler, FastAPI nests the body under detail."""
        with TestClient(self.create_app(make_engine())) as client:
            for _ in range(5):
                client.post("/login")
            response = client.post("/login")

        assert response.status_code == 429
        assert response.json()["detail"]["error"] == "Rate limit exceeded"
        assert int(response.headers["Retry-After"]) > 0

    def test_handler_renders_flat_body(self):
        """The exception handler should match the middleware's 429 body."""
        app = self.create_app(make_engine())
        app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

        with TestClient(app) as client:
            for _ in range(5):
                client.post("/login")
            response = client.post("/login")

        body = response.json()
        assert response.status_code == 429
        assert body["error"] == "Rate limit exceeded"
        assert body["message"].startswith("Too many requests.")
        assert body["retry_after"] == int(response.headers["Retry-After"])

    def test_route_template_endpoint(self):
        """The guard should name endpoints by their route template."""
        sink = RecordingSink()
        app = self.create_app(make_engine(sink))

        @app.get("/orders/{order_id}", dependencies=[Depends(RateLimitGuard("auth_login"))])
        async def order(order_id: str):
            return {"order": order_id}

        with TestClient(app) as client:
            statuses = [client.get(f"/orders/{i}").status_code for i in range(6)]

        assert statuses == [200] * 5 + [429]
        assert sink.events[0].endpoint == "GET:/orders/{order_id}"

    def test_identity_from_app_state(self):
        """Without its own resolver the guard should use the app's."""
        app = self.create_app(make_engine())
        app.state.rate_limit_identity = lambda request: ("u-1", Role.ADMIN)

        @app.get("/api", dependencies=[Depends(RateLimitGuard("api_user"))])
        async def api():
            return {}

        @app.get("/api/anonymous", dependencies=[Depends(RateLimitGuard("api_user", skip_identity=True))])
        async def anonymous():
            return {}

        with TestClient(app) as client:
            assert client.get("/api").headers["X-RateLimit-Limit"] == "1000"
            assert client.get("/api/anonymous").headers["X-RateLimit-Limit"] == "100"

    def test_hooks(self):
        """Guard hooks should run on both outcomes."""
        seen = []

        async def on_success(context, result):
            seen.append("success")

        async def on_violation(context, result):
            seen.append("violation")

        app = self.create_app(make_engine())
        guard = RateLimitGuard("auth_login", on_success=on_success, on_violation=on_violation)

        @app.post("/hooked", dependencies=[Depends(guard)])
        async def hooked():
            return {}

        with TestClient(app) as client:
            for _ in range(6):
                client.post("/hooked")

        assert seen == ["success"] * 5 + ["violation"]

    def test_override_config(self):
        """An override config should be enforced instead of the catalog."""
        with TestClient(self.create_app(make_engine())) as client:
            first = client.get("/export")
            second = client.get("/export")

        assert first.json() == {"remaining": 0}
        assert second.status_code == 429


class TestResponseHelpers:
    """Tests for 429 rendering."""

    def test_message_rounds_minutes_up(self, clock):
        """Block messages should round up to whole minutes."""
        result = RateLimitResult(
            allowed=False, limit=5, remaining=0, reset_at=clock.now,
            blocked=True, block_until=clock.now, retry_after_seconds=61,
        )
        assert rate_limit_message(result) == "You are temporarily blocked. Try again after 2 minutes."

    def test_response(self, clock):
        """The 429 response should carry body and headers."""
        result = RateLimitResult(
            allowed=False, limit=5, remaining=0, reset_at=clock.now, retry_after_seconds=42,
        )

        response = build_rate_limit_response(result)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert b"Try again in 42 seconds." in response.body


class FakeConnection:
    def __init__(self, fail):
        self.fail = fail

    async def execute(self, statement):
        if self.fail:
            raise ConnectionError("database down")


class FakeDatabase:
    def __init__(self, fail=False):
        self.fail = fail

    @asynccontextmanager
    async def connect(self):
        yield FakeConnection(self.fail)


class TestHealthRouter:
    """Tests for the store health endpoints."""

    def create_client(self, redis_ok=True, db_ok=True):
        redis_client = AsyncMock()
        if not redis_ok:
            redis_client.ping.side_effect = ConnectionError("redis down")
        app = FastAPI()
        app.include_router(create_health_router(
            "auth-service",
            engine=FakeDatabase(fail=not db_ok),
            redis_client=redis_client,
        ))
        return TestClient(app)

    @pytest.mark.parametrize("redis_ok,db_ok,status", [
        (True, True, HealthStatus.HEALTHY),
        (False, True, HealthStatus.DEGRADED),
        (False, False, HealthStatus.UNHEALTHY),
    ])
    def test_overall_status(self, redis_ok, db_ok, status):
        """Overall status should follow store reachability."""
        with self.create_client(redis_ok, db_ok) as client:
            body = client.get("/health").json()

        assert body["status"] == status.value
        assert set(body["components"]) == {"redis", "database"}

    def test_readiness(self):
        """Readiness should fail only when every store is down."""
        with self.create_client(redis_ok=False, db_ok=True) as client:
            assert client.get("/health/ready").status_code == 200
        with self.create_client(redis_ok=False, db_ok=False) as client:
            assert client.get("/health/ready").status_code == 503

    @pytest.mark.asyncio
    async def test_reports_breaker_state(self):
        """The health body should carry the fast store breaker state."""
        breaker = StoreBreaker("redis", fail_threshold=1)

        async def refused():
            raise FastStoreUnavailable("connection refused")

        with pytest.raises(FastStoreUnavailable):
            await breaker.call(refused)

        app = FastAPI()
        app.include_router(create_health_router("auth-service", redis_client=AsyncMock(), breaker=breaker))
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            body = (await client.get("/health")).json()

        assert body["circuit"]["store"] == "redis"
        assert body["circuit"]["state"] == "open"
        assert body["circuit"]["last_error"] == "fast_store: connection refused"
