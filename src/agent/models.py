"""Records, commands and events exchanged by the telemetry agent.

Inbound commands and outbound events are tagged by a `type` field so they can
travel as plain mappings between the host context and the agent. Records are
immutable once built; the agent never edits one in place.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

RecordId: TypeAlias = str

RecordKind = Literal["error", "behavior", "exposure", "performance", "resource"]
RECORD_KINDS: tuple[RecordKind, ...] = ("error", "behavior", "exposure", "performance", "resource")

AGENT_VERSION = "1.0.0"


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class Record(_Model):
    """One telemetry event awaiting delivery.

    Two records with the same `id` are the same delivery unit.
    """

    id: RecordId = Field(..., min_length=1)
    kind: RecordKind
    created_at: int = Field(..., description="Creation time, epoch milliseconds")
    payload: dict[str, Any] = Field(default_factory=dict)

    # Shared context stamped by the producer side.
    app_id: str = ""
    agent_version: str = AGENT_VERSION
    page_url: str = ""
    user_agent: str = ""
    user_id: str | None = None
    device_info: dict[str, Any] | None = None

    def age_ms(self, now: int) -> int:
        return now - self.created_at

    def is_expired(self, now: int, retention_window_ms: int) -> bool:
        return self.age_ms(now) > retention_window_ms


class RecordRef(_Model):
    id: RecordId
    kind: RecordKind
    created_at: int


class DeliveryOutcome(_Model):
    """Per-batch transmit outcome; consumed by the drain, never persisted."""

    delivered: bool
    batch: tuple[Record, ...]


class DeliveryResult(_Model):
    total: int
    success: int
    failed: int
    remaining: int


# ---------------------------------------------------------------------------
# Inbound commands (host -> agent)
# ---------------------------------------------------------------------------


class InitCommand(_Model):
    type: Literal["INIT"] = "INIT"
    config: dict[str, Any]
    agent_version: str = AGENT_VERSION


class AddRecordCommand(_Model):
    type: Literal["ADD_RECORD"] = "ADD_RECORD"
    record: Record


class TriggerDeliveryCommand(_Model):
    type: Literal["TRIGGER_DELIVERY"] = "TRIGGER_DELIVERY"


class TriggerExpiryCommand(_Model):
    type: Literal["TRIGGER_EXPIRY"] = "TRIGGER_EXPIRY"


class UpdateConfigCommand(_Model):
    type: Literal["UPDATE_CONFIG"] = "UPDATE_CONFIG"
    config: dict[str, Any]


AgentCommand = InitCommand | AddRecordCommand | TriggerDeliveryCommand | TriggerExpiryCommand | UpdateConfigCommand

COMMAND_TYPES: frozenset[str] = frozenset(
    {"INIT", "ADD_RECORD", "TRIGGER_DELIVERY", "TRIGGER_EXPIRY", "UPDATE_CONFIG"}
)

command_adapter: TypeAdapter[AgentCommand] = TypeAdapter(
    Annotated[AgentCommand, Field(discriminator="type")]
)


# ---------------------------------------------------------------------------
# Outbound events (agent -> host)
# ---------------------------------------------------------------------------


class Ready(_Model):
    type: Literal["READY"] = "READY"
    agent_version: str = AGENT_VERSION
    message: str = "agent started, waiting for INIT"


class InitComplete(_Model):
    type: Literal["INIT_COMPLETE"] = "INIT_COMPLETE"
    agent_version: str
    queue_length: int
    overflow_threshold: int
    restored_count: int = 0


QueueAction = Literal["add", "flush_to_storage", "cleanup_expired"]


class QueueUpdate(_Model):
    type: Literal["QUEUE_UPDATE"] = "QUEUE_UPDATE"
    queue_length: int
    action: QueueAction
    added_record: RecordRef | None = None
    flushed_count: int | None = None
    expired_deleted_count: int | None = None


class ReportResult(_Model):
    type: Literal["REPORT_RESULT"] = "REPORT_RESULT"
    total: int
    success: int
    failed: int
    remaining: int
    timestamp: int = Field(default_factory=now_ms)


class AgentError(_Model):
    type: Literal["ERROR"] = "ERROR"
    message: str
    kind: str = "internal"
    detail: dict[str, Any] = Field(default_factory=dict)
    command_type: str | None = None
    timestamp: int = Field(default_factory=now_ms)


AgentEvent = Ready | InitComplete | QueueUpdate | ReportResult | AgentError
