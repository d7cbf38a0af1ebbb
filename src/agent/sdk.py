"""Host-side entry point for embedding the telemetry agent.

This is the producer-facing half of the agent: it stamps records with their
shared context, forwards them as ADD_RECORD commands, and turns the
controller's replies back into return values. It only talks to the controller
through the command and event buses.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from config import Config, DeliveryConfig
from storage import DuckDBRecordBackend, DurableStore

from .bus import AgentCommandBus, AgentEventBus, InboundMessage
from .controller import BoundaryController, TransportFactory, default_transport_factory
from .errors import ConfigurationError
from .models import (
    AGENT_VERSION,
    RECORD_KINDS,
    AgentError,
    AgentEvent,
    InitComplete,
    QueueUpdate,
    Record,
    RecordKind,
    ReportResult,
    now_ms,
)

logger = structlog.get_logger(__name__)


class TelemetryAgent:
    """Owns a BoundaryController, its buses and its consumer task.

    - `start()` sends INIT and returns the INIT_COMPLETE reply.
    - `track()` builds a record and submits it.
    - `flush()` / `sweep()` trigger delivery and expiry and return their replies.
    - `aclose()` processes pending commands, then persists and shuts down.
    """

    def __init__(
        self,
        *,
        store: DurableStore,
        transport_factory: TransportFactory = default_transport_factory,
        enabled_kinds: Iterable[RecordKind] = RECORD_KINDS,
        page_url: str = "",
        user_agent: str = "",
        user_id: str | None = None,
        device_info: dict[str, Any] | None = None,
        clock: Callable[[], int] = now_ms,
        **controller_options: Any,
    ) -> None:
        self._store = store
        self._commands = AgentCommandBus()
        self._events = AgentEventBus()
        self._subscription = self._events.subscribe()
        self._controller = BoundaryController(
            store=store,
            command_bus=self._commands,
            event_bus=self._events,
            transport_factory=transport_factory,
            clock=clock,
            **controller_options,
        )
        self._enabled_kinds: set[str] = set(enabled_kinds)
        self._page_url = page_url
        self._user_agent = user_agent
        self._user_id = user_id
        self._device_info = device_info
        self._clock = clock
        self._config: DeliveryConfig | None = None

        self._errors: list[AgentError] = []
        self._queue_length = 0

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> "TelemetryAgent":
        """Build an agent persisting to the DuckDB file named in `config.storage`."""
        backend = DuckDBRecordBackend(path=config.storage.db_path, table=config.storage.table)
        return cls(store=DurableStore(backend), **kwargs)

    @property
    def controller(self) -> BoundaryController:
        return self._controller

    @property
    def errors(self) -> list[AgentError]:
        """ERROR events observed so far."""
        return list(self._errors)

    @property
    def queue_length(self) -> int:
        """Buffer length as last reported by the controller."""
        return self._queue_length

    def set_collecting(self, kind: RecordKind, enabled: bool) -> None:
        """Switch collection of one record kind on or off."""
        if enabled:
            self._enabled_kinds.add(kind)
        else:
            self._enabled_kinds.discard(kind)

    def set_user(self, user_id: str | None) -> None:
        """Stamp subsequent records with `user_id` (None stops stamping)."""
        self._user_id = user_id

    def is_collecting(self, kind: str) -> bool:
        return kind in self._enabled_kinds

    async def _send(self, message: InboundMessage) -> list[AgentEvent]:
        """Enqueue a command, wait until it is processed, and return the replies."""
        await self._commands.put(message)
        await self._commands.join()
        return self._collect()

    def _collect(self) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        while not self._subscription.empty():
            event = self._subscription.get_nowait()
            events.append(event)
            if isinstance(event, AgentError):
                self._errors.append(event)
                logger.warning("agent reported error", kind=event.kind, message=event.message)
            elif isinstance(event, (QueueUpdate, InitComplete)):
                self._queue_length = event.queue_length
            elif isinstance(event, ReportResult):
                self._queue_length = event.remaining
        return events

    async def start(self, config: DeliveryConfig) -> InitComplete:
        """Start the controller and initialize it with `config`.

        Raises `ConfigurationError` if the controller rejects the config.
        """
        self._controller.start()
        events = await self._send({"type": "INIT", "config": config.model_dump(), "agent_version": AGENT_VERSION})
        for event in events:
            if isinstance(event, AgentError) and event.command_type == "INIT":
                raise ConfigurationError(event.message, detail=event.detail)
        init = next((e for e in events if isinstance(e, InitComplete)), None)
        if init is None:
            raise ConfigurationError("agent did not acknowledge INIT")
        self._config = config
        return init

    async def track(
        self,
        kind: RecordKind,
        payload: dict[str, Any],
        *,
        page_url: str | None = None,
        user_agent: str | None = None,
        user_id: str | None = None,
        record_id: str | None = None,
    ) -> Record | None:
        """Build a record of `kind` and submit it; None if the kind is switched off."""
        if self._config is None or not self.is_collecting(kind):
            return None
        record = Record(
            id=record_id or uuid.uuid4().hex,
            kind=kind,
            created_at=self._clock(),
            payload=payload,
            app_id=self._config.app_id,
            agent_version=AGENT_VERSION,
            page_url=self._page_url if page_url is None else page_url,
            user_agent=self._user_agent if user_agent is None else user_agent,
            user_id=self._user_id if user_id is None else user_id,
            device_info=self._device_info,
        )
        await self._send({"type": "ADD_RECORD", "record": record.model_dump()})
        return record

    async def flush(self) -> ReportResult | None:
        """Trigger delivery; None when the controller skipped the drain."""
        events = await self._send({"type": "TRIGGER_DELIVERY"})
        return next((e for e in events if isinstance(e, ReportResult)), None)

    async def sweep(self) -> int:
        """Trigger an expiry sweep and return how many records were removed."""
        events = await self._send({"type": "TRIGGER_EXPIRY"})
        for event in events:
            if isinstance(event, QueueUpdate) and event.action == "cleanup_expired":
                return event.expired_deleted_count or 0
        return 0

    async def update_config(self, **changes: Any) -> DeliveryConfig:
        """Apply a partial config update; raises `ConfigurationError` if rejected."""
        events = await self._send({"type": "UPDATE_CONFIG", "config": changes})
        for event in events:
            if isinstance(event, AgentError) and event.command_type == "UPDATE_CONFIG":
                raise ConfigurationError(event.message, detail=event.detail)
        self._config = self._controller.config
        assert self._config is not None
        return self._config

    async def aclose(self) -> None:
        """Finish pending commands, persist the buffer, and release resources."""
        try:
            await asyncio.wait_for(self._commands.join(), timeout=30.0)
        except TimeoutError:
            logger.warning("pending commands not processed before shutdown", pending=self._commands.qsize())
        self._collect()
        await self._controller.aclose()
        await self._store.aclose()
        self._events.unsubscribe(self._subscription)
