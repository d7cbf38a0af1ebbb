"""Ordered in-memory buffer of records awaiting delivery.

Insertion order is arrival order. When the buffer grows past its overflow
threshold, the oldest `threshold` records are handed out for spilling to the
durable store so memory stays bounded whatever the producer burst rate.

Thread Safety:
    NOT thread-safe. All access happens on the agent's single event loop,
    serialized by the BoundaryController's command consumer.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import structlog

from .models import Record

logger = structlog.get_logger(__name__)


class BufferManager:
    """Owns the ordered record sequence and an id index for deduplication."""

    def __init__(self, overflow_threshold: int = 1000) -> None:
        if overflow_threshold < 1:
            raise ValueError(f"overflow_threshold must be >= 1, got {overflow_threshold}")
        self.overflow_threshold = overflow_threshold
        self._records: list[Record] = []
        self._ids: set[str] = set()
        # Records handed to the durable store since the buffer was last seeded.
        self._spilled = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._ids

    @property
    def spilled(self) -> int:
        return self._spilled

    def snapshot(self) -> list[Record]:
        """Return a point-in-time copy of the buffered records."""
        return list(self._records)

    def append(self, record: Record) -> bool:
        """Add a record at the tail. Returns False if its id is already buffered."""
        if record.id in self._ids:
            return False
        self._records.append(record)
        self._ids.add(record.id)
        return True

    def seed(self, records: Iterable[Record]) -> int:
        """Append restored records, skipping ids already present.

        Resets the spill counter; whatever is spilled from here on is counted
        against this seeding.
        """
        added = sum(1 for record in records if self.append(record))
        self._spilled = 0
        return added

    def drain_overflow(self) -> list[Record]:
        """Remove and return the oldest `overflow_threshold` records when over capacity."""
        if len(self._records) <= self.overflow_threshold:
            return []
        evicted = self._records[: self.overflow_threshold]
        del self._records[: self.overflow_threshold]
        self._ids.difference_update(r.id for r in evicted)
        self._spilled += len(evicted)
        return evicted

    def restore_front(self, records: Sequence[Record]) -> None:
        """Put records back at the head (used when a spill could not be persisted)."""
        fresh = [r for r in records if r.id not in self._ids]
        self._records[:0] = fresh
        self._ids.update(r.id for r in fresh)
        self._spilled = max(0, self._spilled - len(records))

    def remove_expired(self, now: int, retention_window_ms: int) -> int:
        """Drop records with `now - created_at > retention_window_ms`; return how many."""
        kept = [r for r in self._records if not r.is_expired(now, retention_window_ms)]
        removed = len(self._records) - len(kept)
        if removed:
            self._replace(kept)
        return removed

    def take_batch(self, offset: int, size: int) -> list[Record]:
        """Copy the records in `[offset, offset + size)`; tolerant of short buffers."""
        if offset < 0 or size < 1:
            return []
        return self._records[offset : offset + size]

    def remove_batch(self, offset: int, size: int) -> list[Record]:
        """Remove and return the records in `[offset, offset + size)`."""
        removed = self.take_batch(offset, size)
        if removed:
            del self._records[offset : offset + len(removed)]
            self._ids.difference_update(r.id for r in removed)
        return removed

    def discard(self, ids: Iterable[str]) -> int:
        """Remove records by id wherever they sit; return how many were removed."""
        doomed = set(ids) & self._ids
        if not doomed:
            return 0
        self._replace([r for r in self._records if r.id not in doomed])
        return len(doomed)

    def _replace(self, kept: list[Record]) -> None:
        self._records = kept
        self._ids = {r.id for r in kept}
