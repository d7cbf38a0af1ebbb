from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio
import structlog

from agent.bus import AgentEventBus
from agent.controller import BoundaryController, parse_command
from agent.errors import MalformedCommandError
from agent.models import (
    AgentError,
    InitComplete,
    QueueUpdate,
    Ready,
    ReportResult,
    TriggerDeliveryCommand,
)
from config import DeliveryConfig
from fakes import DAY_MS, NOW_MS, FakeTransport, FlakyBackend, RecordingSleep, make_record, make_records
from storage import DurableStore

ENDPOINT = "https://collector.example.test/events"


def _init(**overrides: Any) -> dict[str, Any]:
    config = {"app_id": "app-1", "endpoint": ENDPOINT, "require_confirmed_delivery": True}
    config.update(overrides)
    return {"type": "INIT", "config": config, "agent_version": "1.0.0"}


def _add(index: int, **kwargs: Any) -> dict[str, Any]:
    return {"type": "ADD_RECORD", "record": make_record(index, **kwargs).model_dump()}


class _Harness:
    def __init__(self, backend: FlakyBackend, *, rng=lambda: 0.0) -> None:
        self.transports: list[FakeTransport] = []
        self.sleep = RecordingSleep()
        self.store = DurableStore(backend, clock=lambda: NOW_MS)
        self.events = AgentEventBus()
        self.queue = self.events.subscribe()
        self.controller = BoundaryController(
            store=self.store,
            event_bus=self.events,
            transport_factory=self._factory,
            clock=lambda: NOW_MS,
            rng=rng,
            sleep=self.sleep,
        )

    def _factory(self, _config: DeliveryConfig) -> FakeTransport:
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    async def send(self, message: Any) -> list[Any]:
        await self.controller.handle(message)
        return self.drain_events()

    def drain_events(self) -> list[Any]:
        return [self.queue.get_nowait() for _ in range(self.queue.qsize())]


@pytest_asyncio.fixture
async def harness(backend: FlakyBackend):
    h = _Harness(backend)
    yield h
    await h.controller.aclose()


def test_parse_command_accepts_models_and_mappings():
    assert isinstance(parse_command({"type": "TRIGGER_DELIVERY"}), TriggerDeliveryCommand)
    command = TriggerDeliveryCommand()
    assert parse_command(command) is command


@pytest.mark.parametrize(
    "message",
    [{"type": "EXPLODE"}, {"config": {}}, {"type": "ADD_RECORD"}, {"type": "ADD_RECORD", "record": {"id": ""}}, "INIT"],
)
def test_parse_command_rejects_malformed(message: Any):
    with pytest.raises(MalformedCommandError):
        parse_command(message)


@pytest.mark.asyncio
async def test_init_restores_retained_records(harness: _Harness, backend: FlakyBackend) -> None:
    backend.upsert([*make_records(3), make_record(9, created_at=NOW_MS - 8 * DAY_MS)])

    events = await harness.send(_init())

    init = next(e for e in events if isinstance(e, InitComplete))
    assert init.restored_count == 3
    assert init.queue_length == 3
    assert init.overflow_threshold == 1000
    assert len(harness.controller.buffer) == 3
    assert "r0009" not in backend.snapshot()
    assert harness.controller.sweeper.running


@pytest.mark.asyncio
async def test_init_binds_agent_identity_for_logging(harness: _Harness) -> None:
    try:
        await harness.send(_init())
        bound = structlog.contextvars.get_contextvars()
        assert bound["app_id"] == "app-1"
        assert bound["agent_version"] == "1.0.0"
    finally:
        structlog.contextvars.clear_contextvars()


@pytest.mark.asyncio
async def test_invalid_init_config_reports_configuration_error(harness: _Harness) -> None:
    events = await harness.send(_init(endpoint="not-a-url"))

    assert len(events) == 1
    error = events[0]
    assert isinstance(error, AgentError)
    assert error.kind == "configuration"
    assert error.command_type == "INIT"
    assert harness.controller.config is None


@pytest.mark.asyncio
async def test_commands_before_init_are_rejected(harness: _Harness) -> None:
    events = await harness.send(_add(1))
    assert [(e.kind, e.command_type) for e in events] == [("not_initialized", "ADD_RECORD")]

    events = await harness.send({"type": "UPDATE_CONFIG", "config": {"sample_rate": 10}})
    assert events[0].kind == "not_initialized"

    assert await harness.send({"type": "TRIGGER_EXPIRY"}) == []
    assert await harness.send({"type": "TRIGGER_DELIVERY"}) == []


@pytest.mark.asyncio
async def test_malformed_and_unknown_commands_report_errors(harness: _Harness) -> None:
    await harness.send(_init())

    unknown = await harness.send({"type": "SELF_DESTRUCT"})
    malformed = await harness.send({"type": "ADD_RECORD", "record": {"kind": "behavior"}})

    assert unknown[0].kind == "malformed_command"
    assert unknown[0].command_type == "SELF_DESTRUCT"
    assert malformed[0].kind == "malformed_command"
    assert malformed[0].command_type == "ADD_RECORD"


@pytest.mark.asyncio
async def test_add_record_publishes_queue_update(harness: _Harness) -> None:
    await harness.send(_init())

    events = await harness.send(_add(1, phone="13812345678"))

    assert len(events) == 1
    update = events[0]
    assert isinstance(update, QueueUpdate)
    assert update.action == "add"
    assert update.queue_length == 1
    assert update.added_record is not None and update.added_record.id == "r0001"
    assert harness.controller.buffer.snapshot()[0].payload["phone"] == "138****5678"


@pytest.mark.asyncio
async def test_duplicates_and_sampled_out_records_are_silent(backend: FlakyBackend) -> None:
    h = _Harness(backend, rng=lambda: 0.6)
    try:
        await h.send(_init(sample_rate=100))
        await h.send(_add(1))
        assert await h.send(_add(1)) == []

        await h.send({"type": "UPDATE_CONFIG", "config": {"sample_rate": 50}})
        h.drain_events()
        assert await h.send(_add(2)) == []
        assert len(h.controller.buffer) == 1
    finally:
        await h.controller.aclose()


@pytest.mark.asyncio
async def test_buffer_never_exceeds_overflow_threshold(harness: _Harness, backend: FlakyBackend) -> None:
    await harness.send(_init(overflow_threshold=5))

    spills: list[QueueUpdate] = []
    for i in range(1, 13):
        events = await harness.send(_add(i))
        assert len(harness.controller.buffer) <= 5
        spills.extend(e for e in events if isinstance(e, QueueUpdate) and e.action == "flush_to_storage")

    assert [s.flushed_count for s in spills] == [5, 5]
    assert len(harness.controller.buffer) == 2
    assert len(backend.snapshot()) == 10


@pytest.mark.asyncio
async def test_failed_spill_keeps_records_and_reports(harness: _Harness, backend: FlakyBackend) -> None:
    await harness.send(_init(overflow_threshold=2))
    await harness.send(_add(1))
    await harness.send(_add(2))
    backend.failing = {"upsert"}

    events = await harness.send(_add(3))

    assert len(harness.controller.buffer) == 3
    assert [e.kind for e in events if isinstance(e, AgentError)] == ["storage"]
    assert not any(isinstance(e, QueueUpdate) and e.action == "flush_to_storage" for e in events)


@pytest.mark.asyncio
async def test_trigger_delivery_reports_result(harness: _Harness) -> None:
    await harness.send(_init())
    for i in range(1, 4):
        await harness.send(_add(i))

    events = await harness.send({"type": "TRIGGER_DELIVERY"})

    result = events[-1]
    assert isinstance(result, ReportResult)
    assert (result.total, result.success, result.failed, result.remaining) == (3, 3, 0, 0)
    assert harness.transport.posts == [["r0001", "r0002", "r0003"]]
    assert await harness.send({"type": "TRIGGER_DELIVERY"}) == []


@pytest.mark.asyncio
async def test_trigger_expiry_reports_cleanup(harness: _Harness) -> None:
    await harness.send(_init())
    await harness.send(_add(1, created_at=NOW_MS - 8 * DAY_MS))
    await harness.send(_add(2))

    events = await harness.send({"type": "TRIGGER_EXPIRY"})

    assert len(events) == 1
    assert events[0].action == "cleanup_expired"
    assert events[0].expired_deleted_count == 1
    assert events[0].queue_length == 1


@pytest.mark.asyncio
async def test_update_config_merges_and_recreates_transport(harness: _Harness) -> None:
    await harness.send(_init(batch_size=10))
    first = harness.transport

    await harness.send({"type": "UPDATE_CONFIG", "config": {"sample_rate": 20}})
    assert harness.controller.config.sample_rate == 20
    assert harness.controller.config.batch_size == 10
    assert harness.transport is first

    await harness.send({"type": "UPDATE_CONFIG", "config": {"endpoint": "https://other.example.test/e"}})
    assert harness.transport is not first
    assert first.closed


@pytest.mark.asyncio
async def test_invalid_config_update_keeps_previous_config(harness: _Harness) -> None:
    await harness.send(_init())

    events = await harness.send({"type": "UPDATE_CONFIG", "config": {"batch_size": 0}})

    assert events[0].kind == "configuration"
    assert harness.controller.config.batch_size == 50


@pytest.mark.asyncio
async def test_lowering_threshold_spills_immediately(harness: _Harness, backend: FlakyBackend) -> None:
    await harness.send(_init())
    for i in range(1, 8):
        await harness.send(_add(i))

    await harness.send({"type": "UPDATE_CONFIG", "config": {"overflow_threshold": 3}})

    assert len(harness.controller.buffer) == 1
    assert len(backend.snapshot()) == 6


@pytest.mark.asyncio
async def test_buffer_survives_restart(backend: FlakyBackend) -> None:
    first = _Harness(backend)
    await first.send(_init())
    for i in range(1, 4):
        await first.send(_add(i))
    await first.controller.aclose()
    assert sorted(backend.snapshot()) == ["r0001", "r0002", "r0003"]

    second = _Harness(backend)
    try:
        events = await second.send(_init())
        init = next(e for e in events if isinstance(e, InitComplete))
        assert init.restored_count == 3

        events = await second.send({"type": "TRIGGER_DELIVERY"})
        assert events[-1].success == 3
        assert backend.snapshot() == {}
    finally:
        await second.controller.aclose()


@pytest.mark.asyncio
async def test_unreadable_store_at_init_is_never_cleared(backend: FlakyBackend) -> None:
    backend.upsert(make_records(5))
    backend.failing = {"load_retained"}

    first = _Harness(backend)
    try:
        events = await first.send(_init())
        init = next(e for e in events if isinstance(e, InitComplete))
        assert init.restored_count == 0
        assert [e.kind for e in events if isinstance(e, AgentError)] == ["storage"]

        backend.failing = set()
        await first.send(_add(42))
        events = await first.send({"type": "TRIGGER_DELIVERY"})

        assert events[-1].success == 1
        assert sorted(backend.snapshot()) == ["r0001", "r0002", "r0003", "r0004", "r0005"]
    finally:
        await first.controller.aclose()

    second = _Harness(backend)
    try:
        events = await second.send(_init())
        assert next(e for e in events if isinstance(e, InitComplete)).restored_count == 5
        assert second.controller.engine.store_unseeded is False

        await second.send({"type": "TRIGGER_DELIVERY"})
        assert backend.snapshot() == {}
    finally:
        await second.controller.aclose()


@pytest.mark.asyncio
async def test_spilled_records_wait_for_next_init(backend: FlakyBackend) -> None:
    first = _Harness(backend)
    await first.send(_init(overflow_threshold=2))
    for i in range(1, 4):
        await first.send(_add(i))
    await first.send({"type": "TRIGGER_DELIVERY"})
    assert first.transport.posts == [["r0003"]]
    assert sorted(backend.snapshot()) == ["r0001", "r0002"]
    await first.controller.aclose()

    second = _Harness(backend)
    try:
        events = await second.send(_init())
        assert next(e for e in events if isinstance(e, InitComplete)).restored_count == 2
    finally:
        await second.controller.aclose()


@pytest.mark.asyncio
async def test_run_loop_announces_ready_and_survives_bad_commands(harness: _Harness) -> None:
    task = harness.controller.start()
    await harness.controller.commands.put({"type": "NOPE"})
    await harness.controller.commands.put(_init())
    await harness.controller.commands.put(_add(1))
    await asyncio.wait_for(harness.controller.commands.join(), timeout=2.0)

    events = harness.drain_events()
    # INIT runs a startup expiry sweep before acknowledging.
    assert [type(e) for e in events] == [Ready, AgentError, QueueUpdate, InitComplete, QueueUpdate]
    assert [e.action for e in events if isinstance(e, QueueUpdate)] == ["cleanup_expired", "add"]
    assert not task.done()
