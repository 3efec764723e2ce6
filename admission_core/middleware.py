"""
Rate Limit HTTP Layer
=====================
Starlette middleware and a FastAPI dependency that run the decision engine
in front of protected routes.

Usage (middleware):
    app.add_middleware(
        RateLimitMiddleware,
        engine=engine,
        resolve_config_key=lambda request: "auth_login" if request.url.path == "/login" else "public",
    )

Usage (dependency):
    app.state.rate_limit_engine = engine
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.post("/login", dependencies=[Depends(RateLimitGuard("auth_login", skip_identity=True))])
    async def login(): ...

Endpoints are named ``METHOD:/route/{template}`` so that every value of a
path parameter shares one counter.
"""

import math
from typing import Awaitable, Callable, Optional, Set, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Match, Route
import structlog

from .config import DEFAULT_BYPASS_HEADER, DEFAULT_EXCLUDED_PATHS
from .engine import DecisionEngine
from .errors import RateLimitExceeded
from .identifiers import get_client_ip
from .models import RateLimitConfig, RateLimitContext, RateLimitResult, Role

logger = structlog.get_logger(__name__)

# Maps a request to (user_id, role); both may be None for anonymous callers
IdentityResolver = Callable[[Request], Tuple[Optional[str], Optional[Role]]]

# Maps a request to the config key to enforce; None skips the check
ConfigKeyResolver = Callable[[Request], Optional[str]]

# Called with the context and result after each decision
DecisionHook = Callable[[RateLimitContext, RateLimitResult], Awaitable[None]]


def _route_template(request: Request) -> Optional[str]:
    # Set by FastAPI once routing has run (dependencies)
    route = request.scope.get("route")
    if isinstance(route, Route):
        return route.path

    # Middleware runs before routing; match the app's routes ourselves
    app = request.scope.get("app")
    partial = None
    for route in getattr(app, "routes", ()):
        if not isinstance(route, Route):
            continue
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return route.path
        if match == Match.PARTIAL and partial is None:
            partial = route.path
    return partial


def endpoint_name(request: Request) -> str:
    """``METHOD:path``, with path parameters left as their route placeholders."""
    return f"{request.method}:{_route_template(request) or request.url.path}"


def _resolve_identity(
    request: Request,
    resolve_identity: Optional[IdentityResolver],
) -> Tuple[Optional[str], Optional[Role]]:
    if resolve_identity is None:
        return None, None
    try:
        return resolve_identity(request)
    except Exception:
        # Count the request anonymously rather than failing it
        logger.exception("rate_limit_identity_failed", path=request.url.path)
        return None, None


def build_context(
    request: Request,
    resolve_identity: Optional[IdentityResolver] = None,
    bypass_header: str = DEFAULT_BYPASS_HEADER,
    operation_type: Optional[str] = None,
) -> RateLimitContext:
    """Build the engine context for an inbound request."""
    user_id, role = _resolve_identity(request, resolve_identity)
    client_host = request.client.host if request.client else None
    return RateLimitContext(
        ip=get_client_ip(request.headers, client_host),
        endpoint=endpoint_name(request),
        user_agent=request.headers.get("user-agent", "unknown"),
        user_id=user_id,
        role=role,
        operation_type=operation_type,
        emergency_token=request.headers.get(bypass_header),
    )


async def _run_hook(
    hook: Optional[DecisionHook],
    context: RateLimitContext,
    result: RateLimitResult,
) -> None:
    if hook is None:
        return
    try:
        await hook(context, result)
    except Exception:
        logger.exception("rate_limit_hook_failed", endpoint=context.endpoint, allowed=result.allowed)


def rate_limit_message(result: RateLimitResult) -> str:
    """Human-readable reason for a refused request."""
    retry_after = result.retry_after_seconds or 0
    if result.blocked:
        minutes = max(1, math.ceil(retry_after / 60))
        return f"You are temporarily blocked. Try again after {minutes} minutes."
    return f"Too many requests. Try again in {retry_after} seconds."


def rate_limit_body(result: RateLimitResult) -> dict:
    return {
        "error": "Rate limit exceeded",
        "message": rate_limit_message(result),
        "retry_after": result.retry_after_seconds,
    }


def build_rate_limit_response(result: RateLimitResult) -> JSONResponse:
    """429 response for a refused request, with rate limit headers."""
    return JSONResponse(status_code=429, content=rate_limit_body(result), headers=result.headers())


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Exception handler for RateLimitExceeded.

    Renders the guard's refusal with the same flat body as the middleware
    instead of FastAPI's default ``{"detail": ...}`` wrapping.
    """
    return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Enforces rate limits on every request that resolves to a config key.

    Allowed requests get the rate limit headers on their response; refused
    requests are answered with 429 without reaching the route. A resolver
    that raises never fails the request: a config key error skips the check
    and an identity error counts the request anonymously.
    """

    def __init__(
        self,
        app,
        engine: DecisionEngine,
        resolve_config_key: ConfigKeyResolver,
        resolve_identity: Optional[IdentityResolver] = None,
        excluded_paths: Optional[Set[str]] = None,
        skip_identity_paths: Optional[Set[str]] = None,
        bypass_header: str = DEFAULT_BYPASS_HEADER,
        on_violation: Optional[DecisionHook] = None,
        on_success: Optional[DecisionHook] = None,
    ):
        """
        Args:
            app: ASGI application
            engine: Decision engine
            resolve_config_key: Picks the config for a request; None skips the check
            resolve_identity: Extracts (user_id, role) from a request
            excluded_paths: Paths never checked; defaults to health and metrics
            skip_identity_paths: Paths always counted by IP, e.g. login
            bypass_header: Header carrying the emergency bypass token
            on_violation: Awaited with (context, result) for refused requests
            on_success: Awaited with (context, result) for allowed requests
        """
        super().__init__(app)
        self.engine = engine
        self.resolve_config_key = resolve_config_key
        self.resolve_identity = resolve_identity
        self.excluded_paths = DEFAULT_EXCLUDED_PATHS if excluded_paths is None else excluded_paths
        self.skip_identity_paths = skip_identity_paths or set()
        self.bypass_header = bypass_header.lower()
        self.on_violation = on_violation
        self.on_success = on_success

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        try:
            config_key = self.resolve_config_key(request)
        except Exception:
            logger.exception("rate_limit_config_key_failed", path=request.url.path)
            return await call_next(request)
        if config_key is None:
            return await call_next(request)

        resolve_identity = None if request.url.path in self.skip_identity_paths else self.resolve_identity
        context = build_context(request, resolve_identity, self.bypass_header)
        result = await self.engine.check(context, config_key)
        request.state.rate_limit = result

        if not result.allowed:
            logger.info(
                "rate_limit_request_refused",
                endpoint=context.endpoint,
                ip=context.ip,
                config_key=result.config_key,
                blocked=result.blocked,
            )
            await _run_hook(self.on_violation, context, result)
            return build_rate_limit_response(result)

        await _run_hook(self.on_success, context, result)
        response = await call_next(request)
        response.headers.update(result.headers())
        return response


class RateLimitGuard:
    """
    FastAPI dependency enforcing one config on a route.

    Reads the engine from ``app.state.rate_limit_engine`` and, when no
    resolver is given, the identity resolver from
    ``app.state.rate_limit_identity``.
    """

    def __init__(
        self,
        config_key: str,
        override_config: Optional[RateLimitConfig] = None,
        resolve_identity: Optional[IdentityResolver] = None,
        skip_identity: bool = False,
        operation_type: Optional[str] = None,
        bypass_header: str = DEFAULT_BYPASS_HEADER,
        on_violation: Optional[DecisionHook] = None,
        on_success: Optional[DecisionHook] = None,
    ):
        self.config_key = config_key
        self.override_config = override_config
        self.resolve_identity = resolve_identity
        self.skip_identity = skip_identity
        self.operation_type = operation_type
        self.bypass_header = bypass_header.lower()
        self.on_violation = on_violation
        self.on_success = on_success

    def _identity_resolver(self, request: Request) -> Optional[IdentityResolver]:
        if self.skip_identity:
            return None
        return self.resolve_identity or getattr(request.app.state, "rate_limit_identity", None)

    async def __call__(self, request: Request, response: Response) -> RateLimitResult:
        engine: DecisionEngine = request.app.state.rate_limit_engine
        context = build_context(
            request,
            self._identity_resolver(request),
            self.bypass_header,
            self.operation_type,
        )
        result = await engine.check(context, self.config_key, self.override_config)
        request.state.rate_limit = result

        if not result.allowed:
            await _run_hook(self.on_violation, context, result)
            raise RateLimitExceeded(
                rate_limit_message(result),
                retry_after=result.retry_after_seconds,
                headers=result.headers(),
            )

        await _run_hook(self.on_success, context, result)
        response.headers.update(result.headers())
        return result
