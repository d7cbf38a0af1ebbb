from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from agent.sdk import TelemetryAgent
from config import Config, DeliveryConfig, StorageConfig


class _Collector:
    """Local HTTP collector that answers with a scripted status code."""

    def __init__(self) -> None:
        self.status_code = 200
        self.batches: list[list[dict]] = []
        self._lock = threading.Lock()

        collector = self

        class _Handler(BaseHTTPRequestHandler):
            def do_POST(self) -> None:  # noqa: N802
                length = int(self.headers.get("Content-Length", "0"))
                body = json.loads(self.rfile.read(length))
                with collector._lock:
                    collector.batches.append(body["event"])
                self.send_response(collector.status_code)
                self.end_headers()

            def log_message(self, format: str, *args) -> None:  # noqa: A002
                return None

        self._server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        host, port = self._server.server_address[:2]
        return f"http://{host}:{port}/events"

    def delivered_ids(self) -> list[str]:
        with self._lock:
            return [item["id"] for batch in self.batches for item in batch]

    def __enter__(self) -> "_Collector":
        self._thread.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self._server.shutdown()
        self._server.server_close()


@pytest.fixture
def collector() -> Iterator[_Collector]:
    with _Collector() as c:
        yield c


def _config(collector: _Collector, db_path: Path, **delivery) -> Config:
    return Config(
        delivery=DeliveryConfig(
            app_id="integration",
            endpoint=collector.url,
            require_confirmed_delivery=True,
            max_retry=2,
            backoff_base_s=0.01,
            request_timeout_s=5.0,
            **delivery,
        ),
        storage=StorageConfig(db_path=str(db_path)),
    )


@pytest.mark.asyncio
async def test_records_reach_collector_over_http(collector: _Collector, tmp_path: Path) -> None:
    cfg = _config(collector, tmp_path / "agent.duckdb", batch_size=2)
    agent = TelemetryAgent.from_config(cfg, page_url="https://it.example.test/")
    try:
        await agent.start(cfg.delivery)
        for i in range(5):
            await agent.track("behavior", {"behavior_type": "click", "n": i}, record_id=f"b{i}")

        result = await agent.flush()
    finally:
        await agent.aclose()

    assert result is not None
    assert (result.total, result.success, result.failed, result.remaining) == (5, 5, 0, 0)
    assert collector.delivered_ids() == ["b0", "b1", "b2", "b3", "b4"]
    assert [len(batch) for batch in collector.batches] == [2, 2, 1]
    assert collector.batches[0][0]["page_url"] == "https://it.example.test/"


@pytest.mark.asyncio
async def test_rejected_batches_survive_restart(collector: _Collector, tmp_path: Path) -> None:
    db_path = tmp_path / "agent.duckdb"
    cfg = _config(collector, db_path)
    collector.status_code = 503

    agent = TelemetryAgent.from_config(cfg)
    try:
        await agent.start(cfg.delivery)
        await agent.track("error", {"message": "boom"}, record_id="e1")
        await agent.track("error", {"message": "bang"}, record_id="e2")
        result = await agent.flush()
    finally:
        await agent.aclose()

    assert result is not None
    assert (result.success, result.failed, result.remaining) == (0, 2, 2)
    assert len(collector.batches) == 2

    collector.status_code = 200
    restarted = TelemetryAgent.from_config(cfg)
    try:
        init = await restarted.start(cfg.delivery)
        assert init.restored_count == 2
        result = await restarted.flush()
    finally:
        await restarted.aclose()

    assert result is not None and result.success == 2
    assert collector.delivered_ids()[-2:] == ["e1", "e2"]
