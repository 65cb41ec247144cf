"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into strongly-typed Pydantic models.
- Validating pipeline tuning knobs and providing actionable error messages.

The pipeline core never calls `load_config()` itself; callers build a config
(from env or by hand) and pass it to the controller.
"""

import os
from typing import Literal, TypeVar

import dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

_T = TypeVar("_T", int, float)

OverflowPolicy = Literal["block", "reject"]


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


def _get_env_choice(name: str, default: str, choices: set[str]) -> str:
    """Read an env var restricted to a fixed set of (case-insensitive) values."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized not in choices:
        raise ValueError(f"{name} must be one of {sorted(choices)}. Got: {raw!r}")
    return normalized


class PipelineConfig(BaseModel):
    """Tuning knobs for the batching loop (see env_example.env)."""

    flush_threshold: int = Field(default=10, description="Buffer length above which a batch is flushed")
    buffer_capacity: int = Field(default=1000, description="Max records held in the buffer")
    overflow_policy: OverflowPolicy = Field(default="block", description="What to do when the buffer is full")

    base_delay: float = Field(default=0.5, description="Initial retry delay (seconds)")
    backoff_multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")
    max_delay: float = Field(default=30.0, description="Upper bound for a single retry delay (seconds)")
    backoff_jitter: float = Field(default=0.1, description="Random jitter as a fraction of the delay")
    max_attempt: int = Field(default=5, description="Max send attempts per batch before giving up")

    drain_on_stop: bool = Field(default=False, description="Flush buffered records when stop() is requested")

    @field_validator("flush_threshold", "max_attempt")
    def validate_positive(cls, v: int) -> int:
        """Counts must be at least one."""
        if v <= 0:
            raise ValueError(f"must be a positive integer. Got: {v}")
        return v

    @field_validator("base_delay", "max_delay")
    def validate_delay(cls, v: float) -> float:
        """Delays must not be negative."""
        if v < 0:
            raise ValueError(f"delay must be >= 0 seconds. Got: {v}")
        return v

    @field_validator("backoff_multiplier")
    def validate_multiplier(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1.0. Got: {v}")
        return v

    @field_validator("backoff_jitter")
    def validate_jitter(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"backoff_jitter must be between 0.0 and 1.0. Got: {v}")
        return v

    @model_validator(mode="after")
    def validate_capacity(self) -> "PipelineConfig":
        """A full buffer must always hold a flushable batch, otherwise `block` would deadlock."""
        if self.buffer_capacity <= self.flush_threshold:
            raise ValueError(
                f"buffer_capacity ({self.buffer_capacity}) must be greater than "
                f"flush_threshold ({self.flush_threshold})."
            )
        if self.max_delay < self.base_delay:
            raise ValueError(f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay}).")
        return self


class ObservabilityConfig(BaseModel):
    """Where observability records are persisted."""

    db_path: str = Field(default="observability.duckdb", description="DuckDB file for observability records")
    max_queue_size: int = Field(default=10000, description="Recorder queue bound; records are dropped when full")


class Config(BaseModel):
    """Top-level application configuration."""

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig, description="Pipeline configuration")
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig, description="Observability configuration"
    )


def load_config() -> Config:
    """Load application configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Every variable is optional; unset variables fall back to the model defaults.
    - Raises `ValueError` with actionable messages when a value cannot be parsed
      or fails validation.
    """
    # Load variables from `.env` into the process environment (without overriding
    # already-set env vars).
    dotenv.load_dotenv()

    pipeline = PipelineConfig(
        flush_threshold=_get_env_number("PIPELINE_FLUSH_THRESHOLD", 10, int),
        buffer_capacity=_get_env_number("PIPELINE_BUFFER_CAPACITY", 1000, int),
        overflow_policy=_get_env_choice("PIPELINE_OVERFLOW_POLICY", "block", {"block", "reject"}),
        base_delay=_get_env_number("PIPELINE_BASE_DELAY", 0.5, float),
        backoff_multiplier=_get_env_number("PIPELINE_BACKOFF_MULTIPLIER", 2.0, float),
        max_delay=_get_env_number("PIPELINE_MAX_DELAY", 30.0, float),
        backoff_jitter=_get_env_number("PIPELINE_BACKOFF_JITTER", 0.1, float),
        max_attempt=_get_env_number("PIPELINE_MAX_ATTEMPT", 5, int),
        drain_on_stop=_get_env_bool("PIPELINE_DRAIN_ON_STOP", False),
    )
    observability = ObservabilityConfig(
        db_path=os.getenv("OBSERVABILITY_DB_PATH", "").strip() or "observability.duckdb",
        max_queue_size=_get_env_number("OBSERVABILITY_MAX_QUEUE_SIZE", 10000, int),
    )
    return Config(pipeline=pipeline, observability=observability)
