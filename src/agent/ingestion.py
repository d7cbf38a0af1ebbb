"""Admission filter in front of the buffer: masking, sampling, deduplication."""

from __future__ import annotations

import random
from collections.abc import Callable

import structlog

from config import DeliveryConfig

from .buffer import BufferManager
from .models import Record
from .privacy import mask_record

logger = structlog.get_logger(__name__)


class IngestionPipeline:
    """Decides which submitted records enter the buffer.

    Rejections are expected (cost control and best-effort dedup), so they are
    logged at DEBUG and never reported as errors.
    """

    def __init__(
        self,
        buffer: BufferManager,
        *,
        config: DeliveryConfig | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._buffer = buffer
        self.config = config
        self._rng = rng
        self.sampled_out = 0
        self.duplicates = 0

    def prepare(self, record: Record) -> Record:
        """Mask sensitive payload fields before the record is kept anywhere."""
        return mask_record(record)

    def sample(self, record: Record) -> bool:
        """Keep the record iff a uniform draw in [0, 100) falls below `sample_rate`."""
        if self.config is None:
            return False
        keep = self._rng() * 100.0 < self.config.sample_rate
        if not keep:
            self.sampled_out += 1
            logger.debug("record sampled out", record_id=record.id, sample_rate=self.config.sample_rate)
        return keep

    def is_duplicate(self, record: Record) -> bool:
        """Buffer-scoped check; ids spilled to the durable store are not consulted."""
        if record.id in self._buffer:
            self.duplicates += 1
            logger.debug("duplicate record dropped", record_id=record.id)
            return True
        return False

    def admit(self, record: Record) -> bool:
        return self.sample(record) and not self.is_duplicate(record)
