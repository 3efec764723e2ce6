"""
Event Dispatcher
================
Fire-and-forget delivery of violation events so a slow or failing sink never
delays or changes an admission decision.
"""

import asyncio
from typing import Set

import structlog

from .models import ViolationEvent
from .sinks import BaseEventSink

logger = structlog.get_logger(__name__)


class EventDispatcher:
    """
    Hands events to a sink.

    With ``background=True`` (the default) each event is delivered from its own
    task and ``emit`` returns immediately. Sink errors are logged and dropped.
    """

    def __init__(self, sink: BaseEventSink, background: bool = True):
        self.sink = sink
        self.background = background
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._tasks)

    async def _deliver(self, event: ViolationEvent) -> None:
        try:
            await self.sink.emit(event)
        except Exception as e:
            logger.warning(
                "event_emit_failed",
                sink=self.sink.name,
                violation_type=event.violation_type.value,
                identifier=event.identifier,
                error=str(e),
            )

    async def emit(self, event: ViolationEvent) -> None:
        """Dispatch ``event``. Never raises."""
        if not self.background:
            await self._deliver(event)
            return

        task = asyncio.create_task(self._deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Drain pending deliveries, then close the sink."""
        await self.drain()
        await self.sink.close()
