"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into strongly-typed Pydantic models.
- Validating required fields and providing actionable error messages.
- Computing the host-dependent overflow threshold once, at startup.
"""

import os
from typing import Any, TypeVar

import dotenv
from pydantic import BaseModel, Field, field_validator

_T = TypeVar("_T", int, float)

DAY_MS = 24 * 60 * 60 * 1000

LOW_MEMORY_GB = 4.0
LOW_MEMORY_OVERFLOW_THRESHOLD = 500
DEFAULT_OVERFLOW_THRESHOLD = 1000


def _get_required_env(name: str) -> str:
    """Read a required env var or raise a helpful error."""
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"{name} is required. Please set it in your .env file.")
    if value.startswith("your_") and value.endswith("_here"):
        raise ValueError(f"{name} is required. Please replace the placeholder value in your .env file.")
    return value


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


def _get_env_optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a float. Got: {raw!r}") from exc


def resolve_overflow_threshold(device_memory_gb: float | None) -> int:
    """Pick the in-memory buffer capacity for the host device.

    Memory-constrained devices spill to the durable store sooner. Unknown
    memory is treated as unconstrained.
    """
    if device_memory_gb is not None and device_memory_gb < LOW_MEMORY_GB:
        return LOW_MEMORY_OVERFLOW_THRESHOLD
    return DEFAULT_OVERFLOW_THRESHOLD


class DeliveryConfig(BaseModel):
    """Filtering and delivery settings shared with the agent at INIT."""

    app_id: str = Field(..., description="Originating application/page identifier")
    endpoint: str = Field(..., description="Collector URL receiving batches via POST")
    sample_rate: float = Field(default=100.0, ge=0.0, le=100.0, description="Percent of records kept")
    max_retry: int = Field(default=3, ge=0, description="Confirmed-transmit attempts per batch")
    log_expire_days: float = Field(default=7.0, gt=0.0, description="Retention window in days")
    batch_size: int = Field(default=50, ge=1, description="Max records per delivery unit")
    overflow_threshold: int = Field(
        default=DEFAULT_OVERFLOW_THRESHOLD, ge=1, description="In-memory buffer capacity before spilling"
    )
    require_confirmed_delivery: bool = Field(
        default=False, description="Skip the best-effort path and always wait for a 2xx"
    )
    backoff_base_s: float = Field(default=1.0, ge=0.0, description="Base delay for exponential backoff")
    request_timeout_s: float = Field(default=10.0, gt=0.0, description="Confirmed-transmit timeout")
    beacon_max_bytes: int = Field(default=65536, ge=1, description="Largest payload the best-effort path accepts")
    sweep_interval_s: float = Field(default=86400.0, gt=0.0, description="Expiry sweep period")

    @property
    def retention_window_ms(self) -> int:
        """Age (ms) after which a record is discardable."""
        return int(self.log_expire_days * DAY_MS)

    @field_validator("app_id")
    def validate_app_id(cls, v: str) -> str:
        """Validate app id is set (not empty/placeholder)."""
        if not v or not v.strip() or v == "your_app_id_here":
            raise ValueError("app_id is required. Set TELEMETRY_APP_ID or pass it in the INIT config.")
        return v.strip()

    @field_validator("endpoint")
    def validate_endpoint(cls, v: str) -> str:
        """Validate the collector endpoint looks like an HTTP(S) URL."""
        v = v.strip() if v else v
        if not v:
            raise ValueError("endpoint is required. Set TELEMETRY_ENDPOINT or pass it in the INIT config.")
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError(f"endpoint must be an http:// or https:// URL. Got: {v!r}")
        return v

    def merged(self, changes: dict[str, Any]) -> "DeliveryConfig":
        """Return a re-validated copy with `changes` applied on top."""
        return DeliveryConfig(**{**self.model_dump(), **changes})


class StorageConfig(BaseModel):
    """Location of the durable record store."""

    db_path: str = Field(default="telemetry_records.duckdb", description="DuckDB database file")
    table: str = Field(default="telemetry_records", description="Table holding persisted records")

    @field_validator("table")
    def validate_table(cls, v: str) -> str:
        """Table names are interpolated into SQL, so keep them to identifiers."""
        if not v.replace("_", "").isalnum():
            raise ValueError(f"table must be a plain identifier. Got: {v!r}")
        return v


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(default=False, description="Emit JSON log lines")


class Config(BaseModel):
    """Top-level agent configuration."""

    delivery: DeliveryConfig = Field(..., description="Delivery configuration")
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config() -> Config:
    """Load agent configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages when required configuration is
      missing or still contains placeholder values.
    """
    dotenv.load_dotenv()

    delivery = DeliveryConfig(
        app_id=_get_required_env("TELEMETRY_APP_ID"),
        endpoint=_get_required_env("TELEMETRY_ENDPOINT"),
        sample_rate=_get_env_number("TELEMETRY_SAMPLE_RATE", 100.0, float),
        max_retry=_get_env_number("TELEMETRY_MAX_RETRY", 3, int),
        log_expire_days=_get_env_number("TELEMETRY_LOG_EXPIRE_DAYS", 7.0, float),
        overflow_threshold=resolve_overflow_threshold(_get_env_optional_float("TELEMETRY_DEVICE_MEMORY_GB")),
        require_confirmed_delivery=_get_env_bool("TELEMETRY_REQUIRE_CONFIRMED_DELIVERY", False),
    )
    storage = StorageConfig(db_path=os.getenv("TELEMETRY_DB_PATH", "telemetry_records.duckdb"))
    logging = LoggingConfig(
        level=os.getenv("TELEMETRY_LOG_LEVEL", "INFO"),
        json_output=_get_env_bool("TELEMETRY_LOG_JSON", False),
    )
    return Config(delivery=delivery, storage=storage, logging=logging)
