"""
Event Sinks
===========
Destinations for violation events: structured logs, an HTTP collector, or
several of them at once.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .models import ViolationEvent, ViolationType

logger = structlog.get_logger(__name__)


class BaseEventSink(ABC):
    """Accepts structured violation events."""

    name: str = "base"

    @abstractmethod
    async def emit(self, event: ViolationEvent) -> None:
        """Deliver one event. May raise; the dispatcher isolates failures."""

    async def close(self) -> None:
        """Release sink resources."""


class LoggingEventSink(BaseEventSink):
    """Writes events to the structured log."""

    name = "log"

    async def emit(self, event: ViolationEvent) -> None:
        record = event.to_record()
        if event.violation_type == ViolationType.EMERGENCY_BYPASS:
            logger.warning("rate_limit_emergency_bypass", **record)
        elif event.violation_type == ViolationType.STORAGE_UNAVAILABLE:
            logger.error("rate_limit_storage_unavailable", **record)
        else:
            logger.warning("rate_limit_violation", **record)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


class HttpEventSink(BaseEventSink):
    """
    Posts events as JSON to an external collector.

    Network errors and 5xx responses are retried with exponential backoff.
    """

    name = "http"

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff: float = 0.5,
        headers: Optional[dict] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json", **(headers or {})},
        )

    async def emit(self, event: ViolationEvent) -> None:
        record = event.to_record()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=5),
            reraise=True,
        ):
            with attempt:
                response = await self.client.post(self.url, json=record)
                response.raise_for_status()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()


class CompositeEventSink(BaseEventSink):
    """Fans each event out to several sinks; one failing sink does not stop the rest."""

    name = "composite"

    def __init__(self, sinks: Iterable[BaseEventSink]):
        self.sinks = list(sinks)

    async def emit(self, event: ViolationEvent) -> None:
        errors = []
        for sink in self.sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.warning("event_sink_failed", sink=sink.name, error=str(e))
                errors.append(e)
        if errors and len(errors) == len(self.sinks):
            raise errors[0]

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()
