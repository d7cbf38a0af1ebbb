"""HTTP transport to the remote telemetry collector.

Two delivery primitives are exposed:

- `send_beacon()`: best-effort, fire-and-forget. It only reports whether the
  payload was accepted for sending; the POST itself runs on a worker thread
  and its outcome is never reported back.
- `post()`: confirmed. One POST awaited to completion; anything but a 2xx
  raises `DeliveryError`. Retries are the caller's decision.

The HTTP call uses `requests` executed in a thread, like the rest of the
agent's blocking I/O.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any, Protocol

import requests  # type: ignore
import structlog

from agent.errors import DeliveryError
from agent.models import Record

logger = structlog.get_logger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}


def encode_batch(records: Sequence[Record]) -> bytes:
    """Encode a batch as the collector's wire format: `{"event": [...]}`."""
    body = {"event": [r.model_dump(mode="json") for r in records]}
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


class CollectorTransport(Protocol):
    def send_beacon(self, payload: bytes) -> bool:
        """Queue a fire-and-forget send; True if the payload was accepted."""

    async def post(self, payload: bytes) -> None:
        """Send and wait for a 2xx; raise `DeliveryError` otherwise."""

    async def aclose(self) -> None:
        """Release resources and stop accepting beacons."""


class CollectorClient:
    """`requests`-backed collector transport bound to one endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_s: float = 10.0,
        beacon_max_bytes: int = 65536,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_s = timeout_s
        self.beacon_max_bytes = beacon_max_bytes
        self._session = session or requests.Session()
        self._in_flight: set[asyncio.Future[Any]] = set()
        self._closed = False

    def _do_post(self, payload: bytes) -> requests.Response:
        """Execute the HTTP request synchronously (runs in a worker thread)."""
        return self._session.post(self.endpoint, data=payload, headers=JSON_HEADERS, timeout=self.timeout_s)

    def _beacon_post(self, payload: bytes) -> None:
        try:
            resp = self._do_post(payload)
        except requests.RequestException as exc:
            logger.warning("beacon send failed", endpoint=self.endpoint, error=str(exc))
            return
        if not 200 <= resp.status_code < 300:
            logger.warning("beacon rejected by collector", endpoint=self.endpoint, status_code=resp.status_code)

    def send_beacon(self, payload: bytes) -> bool:
        """Accept the payload for background delivery without waiting on it.

        Returns False when the client is closed or the payload is too large for
        the best-effort path, so the caller can fall back to `post()`.
        """
        if self._closed:
            return False
        if len(payload) > self.beacon_max_bytes:
            logger.warning("beacon payload too large", size=len(payload), limit=self.beacon_max_bytes)
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        fut = loop.run_in_executor(None, self._beacon_post, payload)
        self._in_flight.add(fut)
        fut.add_done_callback(self._in_flight.discard)
        return True

    async def post(self, payload: bytes) -> None:
        """Send a batch and wait for the collector's acknowledgment.

        Raises:
        - `DeliveryError` with `status_code` set for non-2xx responses
        - `DeliveryError` wrapping `requests.RequestException` for transport errors
        """
        try:
            resp = await asyncio.to_thread(self._do_post, payload)
        except requests.RequestException as exc:
            raise DeliveryError(f"collector unreachable: {exc}", detail={"endpoint": self.endpoint}) from exc
        if 200 <= resp.status_code < 300:
            return None
        raise DeliveryError(
            f"collector HTTP {resp.status_code}",
            status_code=resp.status_code,
            detail={"endpoint": self.endpoint},
        )

    async def aclose(self) -> None:
        """Wait for outstanding beacons, then close the HTTP session."""
        self._closed = True
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        self._session.close()
