"""Failure taxonomy for the telemetry agent.

Every failure the agent can report carries a machine-readable `kind` so the
host context can tell configuration problems from transient storage or
delivery trouble without parsing messages.
"""

from __future__ import annotations

from typing import Any


class AgentFailure(RuntimeError):
    """Base class for failures reported as `ERROR` events."""

    kind: str = "internal"

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        self.message = message
        self.detail = dict(detail or {})
        super().__init__(message)


class ConfigurationError(AgentFailure):
    """Missing or invalid configuration; fatal to initialization."""

    kind = "configuration"


class NotInitializedError(AgentFailure):
    """A command that needs a config arrived before INIT."""

    kind = "not_initialized"


class MalformedCommandError(AgentFailure):
    """An inbound message was missing fields or carried an unknown tag."""

    kind = "malformed_command"


class StorageError(AgentFailure):
    """The durable store could not be opened, read or written."""

    kind = "storage"


class DeliveryError(AgentFailure):
    """The collector rejected a batch or could not be reached."""

    kind = "delivery"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.status_code = status_code
        merged = dict(detail or {})
        if status_code is not None:
            merged.setdefault("status_code", status_code)
        super().__init__(message, detail=merged)


class DrainAbortedError(AgentFailure):
    """A drain crashed part-way; the buffer was persisted before re-raising."""

    kind = "internal"

    def __init__(self, message: str, *, total: int, success: int, failed: int) -> None:
        self.total = total
        self.success = success
        self.failed = failed
        super().__init__(message, detail={"total": total, "success": success, "failed": failed})
