"""Storage backends for observability records.

Sinks are plain synchronous objects; the recorder calls them from a worker
thread, so every sink guards its state with a lock.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import duckdb

from .models import ObservabilityRecord, RecordKind

_COLUMNS = (
    "logged_at",
    "occurred_at",
    "kind",
    "event_type",
    "stage",
    "run_id",
    "batch_id",
    "correlation_id",
    "record_count",
    "summary_json",
)


class ObservabilitySink(Protocol):
    def write(self, record: ObservabilityRecord) -> None:
        """Persist one record."""

    def close(self) -> None:
        """Release any underlying resources."""


class InMemoryObservabilitySink:
    """Keeps records in a list; used by tests and for local debugging."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[ObservabilityRecord] = []

    def write(self, record: ObservabilityRecord) -> None:
        with self._lock:
            self._records.append(record)

    def close(self) -> None:
        pass

    def snapshot(self, *, kind: RecordKind | None = None) -> Sequence[ObservabilityRecord]:
        """Copy of the stored records, oldest first, optionally only one kind."""
        with self._lock:
            return [r for r in self._records if kind is None or r.kind == kind]


class DuckDBObservabilitySink:
    """Appends records to a DuckDB table so a run can be inspected after the fact.

    Example:
        sink = DuckDBObservabilitySink(path="observability.duckdb")
        sink.count_by_event_type(run_id="3f2a9c01b7de")
        # {"batch_delivered": 12, "send_retry_scheduled": 2, ...}
    """

    def __init__(self, *, path: str | Path, table: str = "pipeline_events") -> None:
        if not table.isidentifier():
            raise ValueError(f"table must be a plain identifier. Got: {table!r}")
        self._table = table
        self._lock = threading.Lock()
        self._conn = duckdb.connect(str(Path(path)))
        with self._lock:
            self._conn.execute(
                f"""
                create table if not exists {table} (
                  logged_at timestamptz not null,
                  occurred_at timestamptz not null,
                  kind varchar not null,
                  event_type varchar not null,
                  stage varchar not null,
                  run_id varchar,
                  batch_id varchar,
                  correlation_id varchar,
                  record_count integer,
                  summary_json varchar not null
                )
                """
            )

    def write(self, record: ObservabilityRecord) -> None:
        row = [
            record.logged_at,
            record.occurred_at,
            record.kind,
            record.event_type,
            record.stage,
            record.run_id,
            record.batch_id,
            record.correlation_id,
            record.record_count,
            json.dumps(record.summary, separators=(",", ":"), sort_keys=True, default=str),
        ]
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock:
            self._conn.execute(f"insert into {self._table} ({', '.join(_COLUMNS)}) values ({placeholders})", row)

    def count_by_event_type(self, *, run_id: str | None = None) -> dict[str, int]:
        """Return `{event_type: count}`, across all runs or for one run."""
        query = f"select event_type, count(*) from {self._table}"
        params: list[Any] = []
        if run_id is not None:
            query += " where run_id = ?"
            params.append(run_id)
        query += " group by event_type"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return {str(event_type): int(count) for event_type, count in rows}

    def recent(self, *, limit: int = 20, kind: RecordKind | None = None) -> list[dict[str, Any]]:
        """Most recently logged records (newest first) with the summary decoded."""
        query = f"select event_type, kind, run_id, batch_id, record_count, summary_json from {self._table}"
        params: list[Any] = []
        if kind is not None:
            query += " where kind = ?"
            params.append(kind)
        query += " order by logged_at desc limit ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            {
                "event_type": event_type,
                "kind": row_kind,
                "run_id": run_id,
                "batch_id": batch_id,
                "record_count": record_count,
                "summary": json.loads(summary_json),
            }
            for event_type, row_kind, run_id, batch_id, record_count, summary_json in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
