"""In-process event bus for broadcasting PR and build lifecycle changes."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

_event_counter = itertools.count()


class EventType(StrEnum):
    """Categories of events published by the engine."""

    PR_TRACKED = "pr_tracked"
    PR_REMOVED = "pr_removed"
    BUILD_SCHEDULED = "build_scheduled"
    BUILD_STARTED = "build_started"
    BUILD_FINISHED = "build_finished"
    BUILD_CANCELLED = "build_cancelled"
    STATUS_FALLBACK = "status_fallback"
    WEBHOOK_REJECTED = "webhook_rejected"
    RECONCILE_ERROR = "reconcile_error"
    ORCHESTRATOR_STATUS = "orchestrator_status"
    ERROR = "error"


class PRGateEvent(BaseModel):
    """A single event published on the bus."""

    id: int = Field(default_factory=lambda: next(_event_counter))
    type: EventType
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    data: dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """Async pub/sub bus with bounded history.

    Subscribers receive an ``asyncio.Queue`` that yields
    :class:`PRGateEvent` objects as they are published.
    """

    def __init__(self, max_history: int = 2000) -> None:
        self._subscribers: list[asyncio.Queue[PRGateEvent]] = []
        self._history: list[PRGateEvent] = []
        self._max_history = max_history

    async def publish(self, event: PRGateEvent) -> None:
        """Publish *event* to all subscribers and append to history."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest if subscriber is slow
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
                queue.put_nowait(event)

    async def emit(self, event_type: EventType, **data: Any) -> None:
        """Shorthand for publishing an event built from keyword *data*."""
        await self.publish(PRGateEvent(type=event_type, data=data))

    def subscribe(self, max_queue: int = 500) -> asyncio.Queue[PRGateEvent]:
        """Return a new queue that will receive future events."""
        queue: asyncio.Queue[PRGateEvent] = asyncio.Queue(maxsize=max_queue)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[PRGateEvent]) -> None:
        """Remove *queue* from the subscriber list."""
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    @contextlib.asynccontextmanager
    async def subscription(
        self, max_queue: int = 500
    ) -> AsyncIterator[asyncio.Queue[PRGateEvent]]:
        """Async context manager that auto-unsubscribes on exit."""
        queue = self.subscribe(max_queue)
        try:
            yield queue
        finally:
            self.unsubscribe(queue)

    def get_history(self, event_type: EventType | None = None) -> list[PRGateEvent]:
        """Return a copy of recorded events, optionally of one type."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.type == event_type]

    def clear(self) -> None:
        """Remove all history and subscribers."""
        self._history.clear()
        self._subscribers.clear()
