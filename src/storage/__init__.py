"""Durable storage for records awaiting delivery.

- Backends are synchronous and keyed by record id (DuckDB by default).
- `DurableStore` runs them off the event loop and absorbs their failures.
"""

from .backends import DuckDBRecordBackend, InMemoryRecordBackend, RecordBackend
from .store import DurableStore

__all__ = [
    "DuckDBRecordBackend",
    "DurableStore",
    "InMemoryRecordBackend",
    "RecordBackend",
]
