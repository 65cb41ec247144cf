"""Background recorder that persists pipeline events without stalling the loop.

`record_message()` only builds a record and enqueues it; a writer task drains
the queue and hands each record to the (synchronous) sink on a worker thread.
When the queue is full the record is dropped and counted rather than making
the pipeline wait on observability.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from .models import ObservabilityRecord, RecordKind, utc_now
from .sinks import ObservabilitySink

# Record id lists longer than this are truncated in stored summaries.
MAX_SUMMARY_IDS = 50

_SECRET_KEYS = ("api_key", "password", "private_key", "secret", "token")
_COUNT_FIELDS = ("size", "dropped")


def _field(message: Any, name: str) -> Any:
    """Read `name` from a model or a plain dict; missing fields read as None."""
    if isinstance(message, dict):
        return message.get(name)
    try:
        return getattr(message, name, None)
    except Exception:  # pragma: no cover - properties on foreign objects
        return None


def _str_field(message: Any, name: str) -> str | None:
    value = _field(message, name)
    return value if isinstance(value, str) and value else None


def _event_type(message: Any) -> str:
    return _str_field(message, "type") or type(message).__name__


def _occurred_at(message: Any) -> datetime:
    ts = _field(message, "ts")
    return ts if isinstance(ts, datetime) else utc_now()


def _record_count(message: Any) -> int | None:
    for name in _COUNT_FIELDS:
        value = _field(message, name)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _summarize(message: Any) -> dict[str, Any]:
    """Return a JSON-safe summary of `message` with record values stripped.

    A `records` list is replaced by its ids; long id lists are cut to
    `MAX_SUMMARY_IDS` and the number of omitted ids is kept alongside.
    """
    if hasattr(message, "model_dump"):
        data = message.model_dump(mode="json", exclude={"ts"})
    elif isinstance(message, dict):
        data = dict(message)
    else:
        return {"repr": repr(message)}

    records = data.pop("records", None)
    data.pop("value", None)
    if isinstance(records, list) and "record_ids" not in data:
        data["record_ids"] = [_field(r, "id") for r in records]

    ids = data.get("record_ids")
    if isinstance(ids, list) and len(ids) > MAX_SUMMARY_IDS:
        data["record_ids"] = ids[:MAX_SUMMARY_IDS]
        data["record_ids_truncated"] = len(ids) - MAX_SUMMARY_IDS

    for key in _SECRET_KEYS:
        if key in data:
            data[key] = "[REDACTED]"
    return data


class ObservabilityRecorder:
    """Queue-backed writer of `ObservabilityRecord`s.

    Must be used from a single event loop. Call `aclose()` at shutdown so
    queued records reach the sink.
    """

    def __init__(self, *, sink: ObservabilitySink, max_queue_size: int = 10000) -> None:
        self._sink = sink
        self._queue: asyncio.Queue[ObservabilityRecord | None] = asyncio.Queue(maxsize=max_queue_size)
        self._writer: asyncio.Task[None] | None = None
        self._closed = False

        self._queue_drops = 0
        self._write_failures = 0
        self._first_failure_at: datetime | None = None
        self._last_failure_at: datetime | None = None

    @property
    def pending(self) -> int:
        """Records queued but not yet handed to the sink."""
        return self._queue.qsize()

    async def record_message(
        self,
        message: Any,
        *,
        kind: RecordKind,
        stage: str,
        correlation_id: str | None = None,
    ) -> None:
        """Build a record for `message` and enqueue it. Never blocks on the sink."""
        if self._closed:
            return
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name="observability-writer")

        run_id = _str_field(message, "run_id")
        batch_id = _str_field(message, "batch_id")
        record = ObservabilityRecord(
            kind=kind,
            event_type=_event_type(message),
            stage=stage,
            run_id=run_id,
            batch_id=batch_id,
            correlation_id=correlation_id or batch_id or run_id,
            record_count=_record_count(message),
            occurred_at=_occurred_at(message),
            logged_at=utc_now(),
            summary=_summarize(message),
        )

        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._queue_drops += 1
            self._mark_degraded()

    async def flush(self) -> None:
        """Wait until every record queued so far has been written (or failed)."""
        if self._writer is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        """Write out queued records and close the sink. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._writer is not None:
            await self._queue.put(None)
            await self._writer
        await asyncio.to_thread(self._sink.close)

    def degraded_status(self) -> dict[str, Any]:
        """Counts and time window of lost records, for health reporting."""
        return {
            "queue_drops": self._queue_drops,
            "write_failures": self._write_failures,
            "first_failure_at": self._first_failure_at,
            "last_failure_at": self._last_failure_at,
        }

    def _mark_degraded(self) -> None:
        now = utc_now()
        if self._first_failure_at is None:
            self._first_failure_at = now
        self._last_failure_at = now

    async def _write_loop(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                if record is None:
                    return
                await asyncio.to_thread(self._sink.write, record)
            except Exception:  # noqa: BLE001 - a failing sink must not stop the pipeline
                self._write_failures += 1
                self._mark_degraded()
            finally:
                self._queue.task_done()
