"""Recurring removal of records older than the retention window."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from config import DeliveryConfig
from storage.store import DurableStore

from .bus import AgentEventBus
from .buffer import BufferManager
from .models import QueueUpdate, now_ms

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """Sweeps the buffer and the durable store on demand and periodically.

    A failed store sweep is reported by the store adapter and retried on the
    next tick; it never stops the loop.
    """

    def __init__(
        self,
        buffer: BufferManager,
        store: DurableStore,
        *,
        events: AgentEventBus | None = None,
        config: DeliveryConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._buffer = buffer
        self._store = store
        self._events = events
        self.config = config
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> int:
        """Remove expired records from memory and disk; return the total removed."""
        if self.config is None:
            return 0
        window = self.config.retention_window_ms
        from_memory = self._buffer.remove_expired(self._clock(), window)
        from_store = await self._store.delete_expired(window)
        total = from_memory + from_store
        logger.info("expired records swept", memory=from_memory, storage=from_store, total=total)
        if self._events is not None:
            await self._events.publish(
                QueueUpdate(queue_length=len(self._buffer), action="cleanup_expired", expired_deleted_count=total)
            )
        return total

    def start(self) -> None:
        """(Re)start the periodic loop; the caller runs the startup sweep itself."""
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="telemetry-expiry-sweeper")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            interval = self.config.sweep_interval_s if self.config is not None else 86400.0
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as exc:  # noqa: BLE001 - keep sweeping on the next tick
                logger.error("expiry sweep failed", error=str(exc))
