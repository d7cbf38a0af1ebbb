"""Durable record backends (synchronous).

Backends are intentionally synchronous; the async `DurableStore` adapter runs
them in worker threads so the event loop never blocks on disk I/O. Each call
is atomic on its own: a failed call leaves the previous state in place.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import duckdb
import structlog

from agent.errors import StorageError
from agent.models import Record

logger = structlog.get_logger(__name__)


class RecordBackend(Protocol):
    """A keyed (by record id) persistent record set."""

    def upsert(self, records: Sequence[Record]) -> None:
        """Insert or replace records by id."""

    def load_retained(self, now: int, retention_window_ms: int) -> list[Record]:
        """Return non-expired records, deleting expired ones on the way."""

    def delete_expired(self, now: int, retention_window_ms: int) -> int:
        """Delete expired records and return how many were removed."""

    def delete(self, ids: Sequence[str]) -> int:
        """Delete the given ids and return how many existed."""

    def clear(self) -> None:
        """Delete every record."""

    def close(self) -> None:
        """Close any underlying resources."""


class InMemoryRecordBackend:
    """In-memory backend for tests and hosts without a writable disk."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, Record] = {}

    def upsert(self, records: Sequence[Record]) -> None:
        with self._lock:
            for record in records:
                self._records[record.id] = record

    def load_retained(self, now: int, retention_window_ms: int) -> list[Record]:
        with self._lock:
            expired = [rid for rid, r in self._records.items() if r.is_expired(now, retention_window_ms)]
            for rid in expired:
                del self._records[rid]
            return sorted(self._records.values(), key=lambda r: r.created_at)

    def delete_expired(self, now: int, retention_window_ms: int) -> int:
        with self._lock:
            expired = [rid for rid, r in self._records.items() if r.is_expired(now, retention_window_ms)]
            for rid in expired:
                del self._records[rid]
            return len(expired)

    def delete(self, ids: Sequence[str]) -> int:
        with self._lock:
            return sum(1 for rid in ids if self._records.pop(rid, None) is not None)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def close(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""

    def snapshot(self) -> dict[str, Record]:
        """Return a point-in-time copy keyed by id."""
        with self._lock:
            return dict(self._records)


@dataclass(frozen=True)
class DuckDBOptions:
    path: Path
    table: str = "telemetry_records"


class DuckDBRecordBackend:
    """DuckDB backend: one table keyed by record id.

    The full record is kept as JSON next to a `created_at` column used for
    retention filtering.
    """

    def __init__(self, *, path: str | Path, table: str = "telemetry_records") -> None:
        """Create (or open) a DuckDB-backed record set at the given path."""
        self._opts = DuckDBOptions(path=Path(path), table=table)
        self._lock = threading.Lock()
        try:
            self._conn = duckdb.connect(str(self._opts.path))
        except duckdb.Error as exc:
            raise StorageError(f"failed to open durable store: {exc}", detail={"path": str(path)}) from exc
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        create_sql = f"""
        create table if not exists {self._opts.table} (
          id varchar primary key,
          created_at bigint not null,
          record_json varchar not null
        )
        """
        self._run_in_transaction("ensure schema", lambda: self._conn.execute(create_sql))

    def _run_in_transaction(self, op: str, fn):
        """Run `fn` inside a transaction; roll back and raise StorageError on failure."""
        with self._lock:
            try:
                self._conn.execute("begin transaction")
                result = fn()
                self._conn.execute("commit")
                return result
            except duckdb.Error as exc:
                try:
                    self._conn.execute("rollback")
                except duckdb.Error:
                    pass  # no open transaction
                raise StorageError(f"durable store {op} failed: {exc}", detail={"operation": op}) from exc

    def upsert(self, records: Sequence[Record]) -> None:
        """Insert or replace records by id."""
        if not records:
            return
        rows = [[r.id, r.created_at, r.model_dump_json()] for r in records]
        sql = f"insert or replace into {self._opts.table} (id, created_at, record_json) values (?, ?, ?)"
        self._run_in_transaction("upsert", lambda: self._conn.executemany(sql, rows))

    def load_retained(self, now: int, retention_window_ms: int) -> list[Record]:
        """Return non-expired records oldest-first.

        Expired rows are deleted on the way, and so are rows that no longer
        decode into a `Record`; one bad row never blocks restoring the rest.
        """
        cutoff = now - retention_window_ms

        def _load() -> list[Record]:
            self._conn.execute(f"delete from {self._opts.table} where created_at < ?", [cutoff])
            rows = self._conn.execute(
                f"select id, record_json from {self._opts.table} order by created_at, id"
            ).fetchall()
            records: list[Record] = []
            corrupt: list[str] = []
            for rid, raw in rows:
                record = _decode(raw)
                if record is None:
                    corrupt.append(rid)
                else:
                    records.append(record)
            if corrupt:
                logger.error("dropping undecodable rows from durable store", count=len(corrupt), ids=corrupt)
                for rid in corrupt:
                    self._conn.execute(f"delete from {self._opts.table} where id = ?", [rid])
            return records

        return self._run_in_transaction("load", _load)

    def delete_expired(self, now: int, retention_window_ms: int) -> int:
        """Delete records older than the retention window."""
        cutoff = now - retention_window_ms

        def _delete() -> int:
            rows = self._conn.execute(
                f"delete from {self._opts.table} where created_at < ? returning id", [cutoff]
            ).fetchall()
            return len(rows)

        return self._run_in_transaction("delete expired", _delete)

    def delete(self, ids: Sequence[str]) -> int:
        """Delete specific records by id."""
        unique = list(dict.fromkeys(ids))
        if not unique:
            return 0

        def _delete() -> int:
            deleted = 0
            for rid in unique:
                rows = self._conn.execute(
                    f"delete from {self._opts.table} where id = ? returning id", [rid]
                ).fetchall()
                deleted += len(rows)
            return deleted

        return self._run_in_transaction("delete", _delete)

    def clear(self) -> None:
        """Delete every record."""
        self._run_in_transaction("clear", lambda: self._conn.execute(f"delete from {self._opts.table}"))

    def count(self) -> int:
        def _count() -> int:
            return int(self._conn.execute(f"select count(*) from {self._opts.table}").fetchone()[0])

        return self._run_in_transaction("count", _count)

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        with self._lock:
            self._conn.close()


def _decode(raw: str) -> Record | None:
    try:
        return Record.model_validate(json.loads(raw))
    except ValueError as exc:
        logger.warning("undecodable durable record", error=str(exc))
        return None
