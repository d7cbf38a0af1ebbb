from __future__ import annotations

import pytest

from fakes import NOW_MS, FlakyBackend, RecordingSleep
from storage import DurableStore


@pytest.fixture(autouse=True)
def _no_threads_in_unit_tests(monkeypatch: pytest.MonkeyPatch):
    """Run `asyncio.to_thread` inline for unit tests.

    The store adapter and collector client push blocking calls to worker
    threads. In unit tests the backends are in-memory fakes, so this would only
    create threadpool workers that keep the process alive longer than needed.
    """

    async def _to_thread(func, /, *args, **kwargs):  # noqa: ANN001, D401
        return func(*args, **kwargs)

    monkeypatch.setattr("storage.store.asyncio.to_thread", _to_thread)
    yield


@pytest.fixture
def backend() -> FlakyBackend:
    return FlakyBackend()


@pytest.fixture
def store(backend: FlakyBackend) -> DurableStore:
    return DurableStore(backend, clock=lambda: NOW_MS)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
