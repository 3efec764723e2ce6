"""
Rate Limit Errors
=================
Exception taxonomy for the admission engine.

Only the store adapters and the strict catalog lookup raise these; the
decision engine turns every one of them into a well-formed result.
"""

from typing import Dict, Optional

from fastapi import HTTPException


class RateLimitError(Exception):
    """Base class for admission engine errors."""


class ConfigurationMissing(RateLimitError, KeyError):
    """Raised by a strict catalog lookup for an unknown config name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No rate limit config named '{name}'")

    def __str__(self) -> str:
        return self.args[0]


class StoreUnavailable(RateLimitError):
    """A backing store could not serve the request."""

    def __init__(self, store: str, message: str):
        self.store = store
        super().__init__(f"{store}: {message}")


class FastStoreUnavailable(StoreUnavailable):
    """The shared low-latency counter store failed or timed out."""

    def __init__(self, message: str):
        super().__init__("fast_store", message)


class StoreSkipped(StoreUnavailable):
    """The store breaker is open and the call was not attempted."""

    def __init__(self, store: str, retry_after: float, last_error: Optional[str] = None):
        self.retry_after = retry_after
        self.last_error = last_error
        super().__init__(store, f"circuit open, retry in {retry_after:.1f}s")


class DurableStoreUnavailable(StoreUnavailable):
    """The durable fallback store failed or timed out."""

    def __init__(self, message: str):
        super().__init__("durable_store", message)


class RateLimitExceeded(HTTPException):
    """
    HTTP 429 raised by the FastAPI guard when a request is refused.

    Carries the rate limit headers so exception handlers return them as-is.
    """

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.retry_after = retry_after
        super().__init__(
            status_code=429,
            detail={
                "error": "Rate limit exceeded",
                "message": message,
                "retry_after": retry_after,
            },
            headers=headers,
        )
