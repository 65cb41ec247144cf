"""Normalized models for the batching pipeline.

These models intentionally include only the minimum fields needed to:
- carry records from a source to a destination
- describe controller state for the control surface
- describe lifecycle/error events for observers (dashboards, recorders)

Every model is frozen; records in particular are never mutated once fetched.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

RecordId: TypeAlias = int | str
RunId: TypeAlias = str
BatchId: TypeAlias = str

PipelineState = Literal["idle", "running", "stopping", "stopped"]
StopReason = Literal["requested", "exhausted", "fatal"]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class _Model(BaseModel):
    # Keep these models small and forward-compatible with evolving payloads.
    model_config = ConfigDict(extra="ignore", frozen=True)


class Record(_Model):
    """Unit of data flowing through the pipeline.

    `id` is unique within a run only. `value` is an opaque payload; the core
    never inspects it.
    """

    id: RecordId
    value: Any = None


class PipelineStatus(_Model):
    """Point-in-time view of a controller, as returned by `status()`."""

    run_id: RunId
    state: PipelineState
    buffered: int = 0
    delivered: int = 0
    failed: int = 0
    dropped: int = 0
    batches_sent: int = 0
    stop_reason: StopReason | None = None
    error: str | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        """True while the loop is active (including a pending stop)."""
        return self.state in {"running", "stopping"}

    @property
    def stopped_cleanly(self) -> bool:
        """True once stopped by request or end of input, without a fatal error."""
        return self.state == "stopped" and self.stop_reason in {"requested", "exhausted"}


class StateChanged(_Model):
    type: Literal["state_changed"] = "state_changed"
    run_id: RunId
    previous: PipelineState
    state: PipelineState
    stop_reason: StopReason | None = None
    ts: datetime = Field(default_factory=utc_now)


class BatchDelivered(_Model):
    type: Literal["batch_delivered"] = "batch_delivered"
    run_id: RunId
    batch_id: BatchId
    size: int
    attempts: int = 1
    final: bool = False
    record_ids: list[RecordId] = Field(default_factory=list)
    ts: datetime = Field(default_factory=utc_now)


class BatchRejected(_Model):
    type: Literal["batch_rejected"] = "batch_rejected"
    run_id: RunId
    batch_id: BatchId
    size: int
    message: str
    record_ids: list[RecordId] = Field(default_factory=list)
    ts: datetime = Field(default_factory=utc_now)


class FetchRetryScheduled(_Model):
    type: Literal["fetch_retry_scheduled"] = "fetch_retry_scheduled"
    run_id: RunId
    attempt: int
    delay_s: float
    message: str
    ts: datetime = Field(default_factory=utc_now)


class SendRetryScheduled(_Model):
    type: Literal["send_retry_scheduled"] = "send_retry_scheduled"
    run_id: RunId
    batch_id: BatchId
    attempt: int
    delay_s: float
    message: str
    ts: datetime = Field(default_factory=utc_now)


class RecordsOverflowed(_Model):
    type: Literal["records_overflowed"] = "records_overflowed"
    run_id: RunId
    dropped: int
    capacity: int
    record_ids: list[RecordId] = Field(default_factory=list)
    ts: datetime = Field(default_factory=utc_now)


class PipelineFailed(_Model):
    type: Literal["pipeline_failed"] = "pipeline_failed"
    run_id: RunId
    batch_id: BatchId | None = None
    attempts: int = 0
    message: str
    ts: datetime = Field(default_factory=utc_now)


PipelineEvent = (
    StateChanged
    | BatchDelivered
    | BatchRejected
    | FetchRetryScheduled
    | SendRetryScheduled
    | RecordsOverflowed
    | PipelineFailed
)

_ERROR_EVENTS = (BatchRejected, FetchRetryScheduled, SendRetryScheduled, RecordsOverflowed, PipelineFailed)


def event_kind(event: PipelineEvent) -> Literal["lifecycle", "batch", "error"]:
    """Classify an event for observability filtering."""
    if isinstance(event, _ERROR_EVENTS):
        return "error"
    if isinstance(event, BatchDelivered):
        return "batch"
    return "lifecycle"
