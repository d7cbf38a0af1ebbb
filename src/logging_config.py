"""Logging setup for the telemetry agent.

Agent modules log through `structlog.get_logger(__name__)`; `requests`,
`urllib3` and `duckdb` log through stdlib `logging`. Both end up in one stdout
handler so a host sees a single stream, either as console lines or as JSON.

The controller binds the agent's identity (`app_id`, `agent_version`) with
`bind_agent_context()` at INIT; every later log line from the controller task
and the tasks it starts carries those fields.
"""

import logging
import sys
from typing import IO, Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Only warnings and above from HTTP and storage internals.
_QUIET_LOGGERS = ("urllib3", "requests", "duckdb")

_AGENT_CONTEXT_KEYS = ("app_id", "agent_version")


def _drop_formatter_keys(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.pop("_record", None)
    event_dict.pop("_from_structlog", None)
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def _renderer(json_output: bool) -> list[Any]:
    if json_output:
        return [
            _drop_formatter_keys,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    return [_drop_formatter_keys, structlog.dev.ConsoleRenderer(colors=False)]


def configure_logging(*, json_output: bool = False, level: str = "INFO", stream: IO[str] | None = None) -> None:
    """Route structlog and stdlib logging to one handler.

    Args:
        json_output: Emit one JSON object per line instead of console text.
        level: Root level name (DEBUG, INFO, WARNING, ERROR).
        stream: Destination; defaults to stdout.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"unknown log level: {level!r}")

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfigured by tests; cached loggers would keep the old chain.
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(ProcessorFormatter(processors=_renderer(json_output), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def bind_agent_context(**fields: Any) -> None:
    """Attach agent identity fields to every log line of the current context."""
    unknown = set(fields) - set(_AGENT_CONTEXT_KEYS)
    if unknown:
        raise ValueError(f"unsupported agent context fields: {sorted(unknown)}")
    structlog.contextvars.bind_contextvars(**fields)


def clear_agent_context() -> None:
    structlog.contextvars.unbind_contextvars(*_AGENT_CONTEXT_KEYS)
