"""Async adapter over a durable record backend.

The adapter is the only path the agent uses to reach disk. Backend failures
never propagate: they are logged, reported as `ERROR` events when an event bus
is attached, and turned into an empty/false result so the in-memory buffer
stays authoritative until the store recovers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import structlog

from agent.bus import AgentEventBus
from agent.errors import StorageError
from agent.models import AgentError, Record, now_ms

from .backends import RecordBackend

logger = structlog.get_logger(__name__)


class DurableStore:
    """Upsert/read/expire/clear operations over a `RecordBackend`."""

    def __init__(
        self,
        backend: RecordBackend,
        *,
        events: AgentEventBus | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Create an adapter around a synchronous backend.

        Args:
            backend: Storage implementation; called from worker threads.
            events: Bus used to report storage failures as `ERROR` events.
            clock: Millisecond wall clock used for retention filtering.
        """
        self._backend = backend
        self._events = events
        self._clock = clock
        self._failures = 0

    @property
    def failures(self) -> int:
        """Number of backend operations that failed so far."""
        return self._failures

    def attach_events(self, events: AgentEventBus) -> None:
        self._events = events

    async def _report(self, op: str, exc: StorageError) -> None:
        self._failures += 1
        logger.error("durable store operation failed", operation=op, error=str(exc))
        if self._events is not None:
            await self._events.publish(
                AgentError(message=f"durable store {op} failed", kind=exc.kind, detail={"error": str(exc), **exc.detail})
            )

    async def save(self, records: Sequence[Record]) -> bool:
        """Upsert records by id. Returns False when the write did not apply."""
        if not records:
            return True
        try:
            await asyncio.to_thread(self._backend.upsert, list(records))
        except StorageError as exc:
            await self._report("save", exc)
            return False
        return True

    async def load_retained(self, retention_window_ms: int) -> list[Record] | None:
        """Return non-expired records (oldest first); expired ones are deleted.

        Returns None when the store could not be read, so callers can tell an
        empty store from one whose contents are unknown.
        """
        try:
            return await asyncio.to_thread(self._backend.load_retained, self._clock(), retention_window_ms)
        except StorageError as exc:
            await self._report("load", exc)
            return None

    async def delete_expired(self, retention_window_ms: int) -> int:
        try:
            return await asyncio.to_thread(self._backend.delete_expired, self._clock(), retention_window_ms)
        except StorageError as exc:
            await self._report("delete_expired", exc)
            return 0

    async def delete(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        try:
            return await asyncio.to_thread(self._backend.delete, list(ids))
        except StorageError as exc:
            await self._report("delete", exc)
            return 0

    async def clear(self) -> bool:
        try:
            await asyncio.to_thread(self._backend.clear)
        except StorageError as exc:
            await self._report("clear", exc)
            return False
        return True

    async def aclose(self) -> None:
        await asyncio.to_thread(self._backend.close)
