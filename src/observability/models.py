"""Durable record shape for pipeline observability.

One `ObservabilityRecord` is stored per published pipeline event. Records
carry the run and batch identifiers needed to reconstruct a run afterwards,
plus a summary that holds record ids and counts but never record values.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RecordKind = Literal["lifecycle", "batch", "error"]


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


class ObservabilityRecord(BaseModel):
    """A stored view of one pipeline event."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    kind: RecordKind
    # Event `type` tag, e.g. "batch_delivered" or "state_changed".
    event_type: str
    # Component that published the event, e.g. "pipeline_controller".
    stage: str

    run_id: str | None = None
    batch_id: str | None = None
    # Batch id when present, otherwise the run id.
    correlation_id: str | None = None

    # Number of records the event is about (batch size, overflow drop count).
    record_count: int | None = None

    occurred_at: datetime
    logged_at: datetime = Field(default_factory=utc_now)

    summary: dict[str, Any] = Field(default_factory=dict)
