"""Delivery engine: batch the buffer, transmit, reconcile.

One drain walks an immutable snapshot of the buffer in windows of
`batch_size`. Each window is tried on the best-effort path first and falls back
to confirmed delivery with exponential backoff. Delivered records are removed
from the buffer by id, so the walk never depends on index arithmetic over a
shrinking sequence. Afterwards the durable store is reconciled:

- some batches failed: the remaining buffer is persisted (delivered ids that an
  earlier drain had persisted are deleted first);
- nothing failed, nothing was spilled since the last seeding, and the last
  seeding read the store successfully: the store is cleared;
- otherwise the store may hold records the buffer never saw (spilled, or not
  restored because the read failed): only delivered ids are deleted and the
  rest wait for the next INIT.

At most one drain runs at a time (single-flight).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import structlog

from collector.client import CollectorTransport, encode_batch
from config import DeliveryConfig
from storage.store import DurableStore

from .buffer import BufferManager
from .errors import DeliveryError, DrainAbortedError
from .models import DeliveryOutcome, DeliveryResult, Record

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(base_s: float, attempt: int) -> float:
    """Delay before retrying after failed attempt number `attempt` (0-based)."""
    return base_s * (2**attempt)


class DeliveryEngine:
    """Drains the buffer to the collector with tiered transmit and retry."""

    def __init__(
        self,
        buffer: BufferManager,
        store: DurableStore,
        transport: CollectorTransport | None = None,
        *,
        config: DeliveryConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._buffer = buffer
        self._store = store
        self.transport = transport
        self.config = config
        self._sleep = sleep
        self._draining = False
        # Set while the store holds records that could not be read back at INIT.
        self.store_unseeded = False

    @property
    def draining(self) -> bool:
        return self._draining

    def _skip_reason(self) -> str | None:
        if self._draining:
            return "drain already in progress"
        if self.config is None or self.transport is None:
            return "not configured"
        if len(self._buffer) == 0:
            return "buffer empty"
        return None

    async def drain(self) -> DeliveryResult | None:
        """Deliver everything currently buffered.

        Returns None without doing anything when a drain is already running,
        the buffer is empty, or no config is set.

        `remaining` counts the records this drain left unresolved, so it always
        equals `failed`. The periodic sweeper may expire some of them while the
        drain waits on a backoff; those are gone from the buffer but still
        counted here.

        Raises:
        - `DrainAbortedError` if an unexpected error interrupted the walk; the
          buffer has been persisted before it is raised.
        """
        reason = self._skip_reason()
        if reason is not None:
            logger.debug("drain skipped", reason=reason, queue_length=len(self._buffer))
            return None

        self._draining = True
        config = self.config
        assert config is not None
        total = len(self._buffer)
        success = 0
        failed = 0
        delivered_ids: list[str] = []
        try:
            windows = [self._buffer.take_batch(offset, config.batch_size) for offset in range(0, total, config.batch_size)]
            logger.info("drain started", total=total, batches=len(windows), batch_size=config.batch_size)

            for index, window in enumerate(windows):
                outcome = await self._deliver(window, config, batch_index=index)
                ids = [r.id for r in outcome.batch]
                if outcome.delivered:
                    success += len(ids)
                    delivered_ids.extend(ids)
                    self._buffer.discard(ids)
                else:
                    failed += len(ids)

            await self._reconcile_store(failed=failed, delivered_ids=delivered_ids)
            result = DeliveryResult(total=total, success=success, failed=failed, remaining=failed)
            logger.info("drain finished", queue_length=len(self._buffer), **result.model_dump())
            return result
        except asyncio.CancelledError:
            await self._persist_buffer("cancelled")
            raise
        except Exception as exc:  # noqa: BLE001 - persist before reporting
            logger.error("drain crashed", error=str(exc), total=total, success=success, failed=failed)
            await self._persist_buffer("crashed")
            raise DrainAbortedError(
                f"drain aborted: {exc}", total=total, success=success, failed=total - success
            ) from exc
        finally:
            self._draining = False

    async def _persist_buffer(self, why: str) -> None:
        snapshot = self._buffer.snapshot()
        saved = await self._store.save(snapshot)
        logger.info("buffer persisted after interrupted drain", reason=why, count=len(snapshot), saved=saved)

    async def _reconcile_store(self, *, failed: int, delivered_ids: Sequence[str]) -> None:
        if failed:
            await self._store.delete(delivered_ids)
            remaining = self._buffer.snapshot()
            await self._store.save(remaining)
            logger.info("undelivered records persisted", failed=failed, persisted=len(remaining))
        elif self._buffer.spilled or self.store_unseeded:
            await self._store.delete(delivered_ids)
            logger.info(
                "delivered records removed from store",
                count=len(delivered_ids),
                spilled=self._buffer.spilled,
                store_unseeded=self.store_unseeded,
            )
        else:
            await self._store.clear()
            logger.info("all records delivered; durable store cleared")

    async def _deliver(self, batch: Sequence[Record], config: DeliveryConfig, *, batch_index: int) -> DeliveryOutcome:
        payload = encode_batch(batch)
        if not config.require_confirmed_delivery and self._try_beacon(payload, batch_index=batch_index):
            logger.info("batch sent via beacon", batch_index=batch_index, size=len(batch))
            return DeliveryOutcome(delivered=True, batch=tuple(batch))

        delivered = await self._send_confirmed(payload, config, batch_index=batch_index, size=len(batch))
        return DeliveryOutcome(delivered=delivered, batch=tuple(batch))

    def _try_beacon(self, payload: bytes, *, batch_index: int) -> bool:
        assert self.transport is not None
        try:
            accepted = self.transport.send_beacon(payload)
        except Exception as exc:  # noqa: BLE001 - best-effort path; fall back to confirmed
            logger.warning("beacon unavailable", batch_index=batch_index, error=str(exc))
            return False
        if not accepted:
            logger.warning("beacon refused; falling back to confirmed delivery", batch_index=batch_index)
        return accepted

    async def _send_confirmed(self, payload: bytes, config: DeliveryConfig, *, batch_index: int, size: int) -> bool:
        """POST with retry/backoff; True once the collector acknowledges.

        `max_retry` bounds the number of attempts (at least one). The delay
        before retry k is `backoff_base_s * 2**(k-1)`.
        """
        assert self.transport is not None
        attempts = max(1, config.max_retry)
        for attempt in range(attempts):
            try:
                await self.transport.post(payload)
            except DeliveryError as exc:
                if attempt == attempts - 1:
                    logger.error(
                        "batch delivery failed",
                        batch_index=batch_index,
                        size=size,
                        attempts=attempts,
                        error=str(exc),
                    )
                    return False
                delay = backoff_delay(config.backoff_base_s, attempt)
                logger.warning(
                    "batch delivery retry scheduled",
                    batch_index=batch_index,
                    attempt=attempt + 1,
                    delay_s=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
            else:
                logger.info("batch delivered", batch_index=batch_index, size=size, attempt=attempt + 1)
                return True
        return False
