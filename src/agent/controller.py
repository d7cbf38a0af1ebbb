"""Boundary controller: the agent's message-driven front door.

Responsibilities:
- consume tagged commands from the host, one at a time, from a single queue
- own the agent state (config, buffer, pipeline, delivery engine, sweeper)
- reply with status events; every failure becomes an `ERROR` event and the
  consumer keeps running
- persist the buffer on shutdown so a later INIT restores it
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from collector.client import CollectorClient, CollectorTransport
from config import DeliveryConfig
from logging_config import bind_agent_context
from storage.store import DurableStore

from .buffer import BufferManager
from .bus import AgentCommandBus, AgentEventBus, InboundMessage
from .delivery import DeliveryEngine, Sleep
from .errors import AgentFailure, ConfigurationError, MalformedCommandError, NotInitializedError
from .expiry import ExpirySweeper
from .ingestion import IngestionPipeline
from .models import (
    AGENT_VERSION,
    COMMAND_TYPES,
    AddRecordCommand,
    AgentCommand,
    AgentError,
    InitCommand,
    InitComplete,
    QueueUpdate,
    Ready,
    RecordRef,
    ReportResult,
    TriggerDeliveryCommand,
    TriggerExpiryCommand,
    UpdateConfigCommand,
    command_adapter,
    now_ms,
)

logger = structlog.get_logger(__name__)

TransportFactory = Callable[[DeliveryConfig], CollectorTransport]


def default_transport_factory(config: DeliveryConfig) -> CollectorTransport:
    return CollectorClient(
        config.endpoint,
        timeout_s=config.request_timeout_s,
        beacon_max_bytes=config.beacon_max_bytes,
    )


def _message_type(message: Any) -> str | None:
    if isinstance(message, BaseModel):
        return getattr(message, "type", None)
    if isinstance(message, Mapping):
        tag = message.get("type")
        return tag if isinstance(tag, str) else None
    return None


def parse_command(message: InboundMessage) -> AgentCommand:
    """Validate an inbound message into a typed command.

    Raises `MalformedCommandError` for unknown tags or missing/invalid fields.
    """
    if isinstance(message, BaseModel):
        return message  # type: ignore[return-value]
    if not isinstance(message, Mapping):
        raise MalformedCommandError(f"command must be a mapping, got {type(message).__name__}")
    tag = message.get("type")
    if tag not in COMMAND_TYPES:
        raise MalformedCommandError(f"unknown command type: {tag!r}", detail={"type": tag})
    try:
        return command_adapter.validate_python(dict(message))
    except ValidationError as exc:
        raise MalformedCommandError(f"{tag} command is malformed", detail={"error": str(exc)}) from exc


class BoundaryController:
    """Serializes host commands onto the agent state and reports outcomes."""

    def __init__(
        self,
        *,
        store: DurableStore,
        command_bus: AgentCommandBus | None = None,
        event_bus: AgentEventBus | None = None,
        transport_factory: TransportFactory = default_transport_factory,
        clock: Callable[[], int] = now_ms,
        rng: Callable[[], float] = random.random,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._commands = command_bus or AgentCommandBus()
        self._events = event_bus or AgentEventBus()
        self._store = store
        self._store.attach_events(self._events)
        self._transport_factory = transport_factory
        self._transport: CollectorTransport | None = None
        self._config: DeliveryConfig | None = None
        self._agent_version = AGENT_VERSION

        self._buffer = BufferManager()
        self._pipeline = IngestionPipeline(self._buffer, rng=rng)
        self._engine = DeliveryEngine(self._buffer, store, sleep=sleep)
        self._sweeper = ExpirySweeper(self._buffer, store, events=self._events, clock=clock)

        self._consumer: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def commands(self) -> AgentCommandBus:
        return self._commands

    @property
    def events(self) -> AgentEventBus:
        return self._events

    @property
    def config(self) -> DeliveryConfig | None:
        return self._config

    @property
    def buffer(self) -> BufferManager:
        return self._buffer

    @property
    def engine(self) -> DeliveryEngine:
        return self._engine

    @property
    def sweeper(self) -> ExpirySweeper:
        return self._sweeper

    def start(self) -> asyncio.Task[None]:
        """Start the command consumer task (idempotent)."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self.run(), name="telemetry-agent-controller")
        return self._consumer

    async def run(self) -> None:
        """Announce readiness, then consume commands forever."""
        await self._events.publish(Ready(agent_version=self._agent_version))
        while True:
            message = await self._commands.get()
            try:
                await self.handle(message)
            finally:
                self._commands.task_done()

    async def handle(self, message: InboundMessage) -> None:
        """Process one inbound message; failures are reported, never raised."""
        command_type = _message_type(message)
        try:
            command = parse_command(message)
            await self._dispatch(command)
        except AgentFailure as exc:
            logger.error("command failed", command_type=command_type, kind=exc.kind, error=exc.message)
            await self._events.publish(
                AgentError(message=exc.message, kind=exc.kind, detail=exc.detail, command_type=command_type)
            )
        except Exception as exc:  # noqa: BLE001 - a bad command must not take the agent down
            logger.exception("command crashed", command_type=command_type)
            await self._events.publish(
                AgentError(
                    message=f"failed to handle {command_type} command",
                    kind="internal",
                    detail={"error": str(exc)},
                    command_type=command_type,
                )
            )

    async def _dispatch(self, command: AgentCommand) -> None:
        if isinstance(command, InitCommand):
            await self._handle_init(command)
        elif isinstance(command, AddRecordCommand):
            await self._handle_add(command)
        elif isinstance(command, TriggerDeliveryCommand):
            await self._handle_delivery()
        elif isinstance(command, TriggerExpiryCommand):
            await self._sweeper.sweep()
        elif isinstance(command, UpdateConfigCommand):
            await self._handle_update_config(command)
        else:
            raise MalformedCommandError(f"unsupported command: {type(command).__name__}")

    async def _apply_config(self, config: DeliveryConfig) -> None:
        previous = self._config
        transport_changed = previous is None or (
            (previous.endpoint, previous.request_timeout_s, previous.beacon_max_bytes)
            != (config.endpoint, config.request_timeout_s, config.beacon_max_bytes)
        )
        if transport_changed or self._transport is None:
            old = self._transport
            self._transport = self._transport_factory(config)
            if old is not None:
                await old.aclose()

        self._config = config
        bind_agent_context(app_id=config.app_id, agent_version=self._agent_version)
        self._buffer.overflow_threshold = config.overflow_threshold
        self._pipeline.config = config
        self._engine.config = config
        self._engine.transport = self._transport
        self._sweeper.config = config

    async def _handle_init(self, command: InitCommand) -> None:
        try:
            config = DeliveryConfig(**command.config)
        except ValidationError as exc:
            raise ConfigurationError("INIT config is invalid", detail={"error": str(exc)}) from exc

        self._agent_version = command.agent_version
        await self._apply_config(config)

        restored = await self._store.load_retained(config.retention_window_ms)
        # Until a load succeeds, a drain must not clear records it never saw.
        self._engine.store_unseeded = restored is None
        if restored is None:
            logger.warning("durable store unreadable at INIT; delivered records will be deleted individually")
        restored_count = self._buffer.seed(restored or [])
        await self._spill_overflow()
        logger.info(
            "agent initialized",
            app_id=config.app_id,
            restored=restored_count,
            queue_length=len(self._buffer),
            overflow_threshold=config.overflow_threshold,
        )

        await self._sweeper.sweep()
        self._sweeper.start()

        await self._events.publish(
            InitComplete(
                agent_version=self._agent_version,
                queue_length=len(self._buffer),
                overflow_threshold=config.overflow_threshold,
                restored_count=restored_count,
            )
        )

    async def _handle_add(self, command: AddRecordCommand) -> None:
        if self._config is None:
            raise NotInitializedError("ADD_RECORD received before INIT", detail={"record_id": command.record.id})

        record = self._pipeline.prepare(command.record)
        if not self._pipeline.admit(record):
            return
        self._buffer.append(record)
        await self._spill_overflow()
        await self._events.publish(
            QueueUpdate(
                queue_length=len(self._buffer),
                action="add",
                added_record=RecordRef(id=record.id, kind=record.kind, created_at=record.created_at),
            )
        )

    async def _spill_overflow(self) -> None:
        # Seeding or a lowered threshold can leave several thresholds' worth buffered.
        while True:
            evicted = self._buffer.drain_overflow()
            if not evicted:
                return
            if not await self._store.save(evicted):
                self._buffer.restore_front(evicted)
                logger.warning("spill failed; records kept in memory", count=len(evicted), queue_length=len(self._buffer))
                return
            logger.info("buffer overflow spilled to durable store", count=len(evicted), queue_length=len(self._buffer))
            await self._events.publish(
                QueueUpdate(queue_length=len(self._buffer), action="flush_to_storage", flushed_count=len(evicted))
            )

    async def _handle_delivery(self) -> None:
        result = await self._engine.drain()
        if result is None:
            return
        await self._events.publish(ReportResult(**result.model_dump()))

    async def _handle_update_config(self, command: UpdateConfigCommand) -> None:
        if self._config is None:
            raise NotInitializedError("UPDATE_CONFIG received before INIT")
        try:
            config = self._config.merged(command.config)
        except ValidationError as exc:
            raise ConfigurationError("config update is invalid", detail={"error": str(exc)}) from exc
        await self._apply_config(config)
        logger.info("config updated", changed=sorted(command.config))
        await self._spill_overflow()

    async def aclose(self) -> None:
        """Stop consuming commands and persist whatever is still buffered.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True
        await self._sweeper.aclose()
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
        if len(self._buffer):
            snapshot = self._buffer.snapshot()
            saved = await self._store.save(snapshot)
            logger.info("buffer persisted on shutdown", count=len(snapshot), saved=saved)
        if self._transport is not None:
            await self._transport.aclose()
