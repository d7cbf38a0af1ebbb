"""In-process message buses between the host context and the agent.

- AgentCommandBus: single-consumer queue of inbound commands; host -> BoundaryController.
  Messages may be typed command models or raw tagged mappings; the controller
  parses and validates them.
- AgentEventBus: fan-out pub/sub for outbound status events; BoundaryController ->
  subscribers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog

from .models import AgentCommand, AgentEvent

logger = structlog.get_logger(__name__)

InboundMessage = AgentCommand | Mapping[str, Any]


class AgentCommandBus:
    """Single-consumer queue for inbound commands."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[InboundMessage] = asyncio.Queue()

    async def put(self, message: InboundMessage) -> None:
        """Enqueue a command for the controller."""
        await self._queue.put(message)

    def put_nowait(self, message: InboundMessage) -> None:
        self._queue.put_nowait(message)

    async def get(self) -> InboundMessage:
        """Dequeue the next command (awaits until one is available)."""
        return await self._queue.get()

    def task_done(self) -> None:
        """Mark the most recently processed command as done."""
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every enqueued command has been processed."""
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()


class AgentEventBus:
    """Fan-out bus for outbound agent events."""

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[AgentEvent]] = set()

    def subscribe(self) -> asyncio.Queue[AgentEvent]:
        """Create a new subscriber queue that will receive published events."""
        q: asyncio.Queue[AgentEvent] = asyncio.Queue()
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue[AgentEvent]) -> None:
        """Remove a subscriber queue (no further events will be delivered)."""
        self._subscribers.discard(q)

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all current subscribers (best-effort fan-out)."""
        logger.debug("agent event", event_type=event.type)
        for q in list(self._subscribers):
            await q.put(event)

