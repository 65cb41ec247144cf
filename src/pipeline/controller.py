"""Pipeline controller.

Responsibilities:
- drive the fetch -> buffer -> flush cycle on a single background task
- own the lifecycle state machine (idle -> running -> stopping -> stopped)
- apply backpressure when the buffer reaches capacity
- apply the error policy: retry transient failures, drop rejected batches,
  stop on fatal failures
- publish lifecycle/batch/error events for observers
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Sequence

from config import PipelineConfig

from .adapters.base import Destination, Source
from .buffer import BatchBuffer
from .bus import PipelineEventBus
from .errors import (
    DestinationError,
    DestinationRejected,
    InvalidState,
    PipelineFatal,
    SourceError,
    SourceExhausted,
)
from .models import (
    BatchDelivered,
    BatchId,
    BatchRejected,
    FetchRetryScheduled,
    PipelineFailed,
    PipelineEvent,
    PipelineState,
    PipelineStatus,
    Record,
    RecordsOverflowed,
    RunId,
    SendRetryScheduled,
    StateChanged,
    StopReason,
    utc_now,
)
from .retry import ExponentialBackoff

_STAGE = "pipeline_controller"


class _StopRequested(Exception):
    """Raised inside the loop when a stop request is observed at a suspension point."""


class PipelineController:
    """Background worker that moves records from a source to a destination in fixed-size batches.

    The controller:
    - Fetches from a `Source` and appends the results to a bounded `BatchBuffer`.
    - Sends a batch of exactly `flush_threshold` records each time the buffer
      holds more than `flush_threshold` records.
    - Retries transient failures with exponential backoff.
    - Publishes `PipelineEvent` objects to the `PipelineEventBus`.

    Control surface: `start()`, `stop()`, `status()` (plus `wait()`, `run()`
    and `shutdown()`). `status()` and `stop()` are safe to call from other
    threads.
    """

    def __init__(
        self,
        *,
        source: Source,
        destination: Destination,
        config: PipelineConfig | None = None,
        event_bus: PipelineEventBus | None = None,
        run_id: RunId | None = None,
    ) -> None:
        """Create a controller; nothing runs until `start()` is called."""
        self._source = source
        self._destination = destination
        self._config = config or PipelineConfig()
        self._events = event_bus or PipelineEventBus()
        self._run_id = run_id or uuid.uuid4().hex[:12]

        self._buffer = BatchBuffer(self._config.buffer_capacity)
        self._fetch_backoff = ExponentialBackoff.from_config(self._config)
        # Fetched records waiting for buffer room (block policy only).
        self._held: list[Record] = []
        # (batch_id, attempts made, size, final) for a batch requeued mid-retry by a stop.
        self._retrying: tuple[BatchId, int, int, bool] | None = None

        # Guards state and counters; never held while awaiting.
        self._lock = threading.Lock()
        self._state: PipelineState = "idle"
        self._stop_reason: StopReason | None = None
        self._error: PipelineFatal | None = None
        self._delivered = 0
        self._failed = 0
        self._dropped = 0
        self._batches_sent = 0
        self._batch_seq = 0
        self._started_at = None
        self._stopped_at = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_requested = asyncio.Event()
        self._draining = False
        self._task: asyncio.Task[None] | None = None

    @property
    def run_id(self) -> RunId:
        return self._run_id

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    @property
    def event_bus(self) -> PipelineEventBus:
        return self._events

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        """Move from idle to running and spawn the loop task on the running event loop.

        Raises:
            InvalidState: If the controller has already been started.
            RuntimeError: If called without a running event loop.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._state != "idle":
                raise InvalidState("start", self._state)
            self._state = "running"
            self._started_at = utc_now()
        self._loop = loop
        self._task = loop.create_task(self._run_loop(), name=f"pipeline-{self._run_id}")
        return self._task

    def stop(self) -> None:
        """Request a cooperative stop. No-op unless the controller is running.

        A pending fetch or backoff sleep is interrupted; a pending send is
        allowed to finish so its outcome is counted.
        """
        with self._lock:
            if self._state != "running":
                return
            self._state = "stopping"

        loop = self._loop
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if loop is None or current is loop:
            self._stop_requested.set()
        else:
            # asyncio.Event is not thread-safe; hand the signal to the owning loop.
            loop.call_soon_threadsafe(self._stop_requested.set)

    def status(self) -> PipelineStatus:
        """Return a point-in-time snapshot of state and counters (non-blocking)."""
        with self._lock:
            return PipelineStatus(
                run_id=self._run_id,
                state=self._state,
                buffered=len(self._buffer) + len(self._held),
                delivered=self._delivered,
                failed=self._failed,
                dropped=self._dropped,
                batches_sent=self._batches_sent,
                stop_reason=self._stop_reason,
                error=str(self._error) if self._error is not None else None,
                started_at=self._started_at,
                stopped_at=self._stopped_at,
            )

    async def wait(self) -> PipelineStatus:
        """Wait for the loop to finish and return the final status.

        Cancelling the caller does not cancel the loop.

        Raises:
            PipelineFatal: If the run stopped because of a fatal error.
            InvalidState: If the controller was never started.
        """
        if self._task is None:
            raise InvalidState("wait", self.state)
        await asyncio.shield(self._task)
        if self._error is not None:
            raise self._error
        return self.status()

    async def run(self) -> PipelineStatus:
        """Start the controller and wait until it stops."""
        self.start()
        return await self.wait()

    async def shutdown(self, *, timeout_s: float | None = None) -> PipelineStatus:
        """Request a stop and wait for the loop to finish.

        Unlike `wait()`, a fatal error is reported through the returned status
        instead of being raised.
        """
        self.stop()
        if self._task is not None:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout_s)
        return self.status()

    def pending_records(self) -> tuple[Record, ...]:
        """Records fetched but not delivered, in order (useful after a stop)."""
        with self._lock:
            held = tuple(self._held)
        return self._buffer.snapshot() + held

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        """Fetch, buffer and flush until stopped, exhausted, or failed."""
        reason: StopReason = "requested"
        try:
            await self._publish(StateChanged(run_id=self._run_id, previous="idle", state="running"))
            try:
                while True:
                    self._check_stop()
                    try:
                        records = await self._fetch_with_retries()
                    except SourceExhausted:
                        reason = "exhausted"
                        await self._flush_ready()
                        await self._flush_remaining()
                        return
                    await self._accept(records)
                    await self._flush_ready()
            except _StopRequested:
                reason = "requested"
                await self._publish(StateChanged(run_id=self._run_id, previous="running", state="stopping"))
                if self._config.drain_on_stop:
                    await self._drain()
        except PipelineFatal as exc:
            reason = "fatal"
            await self._fail(exc)
        except Exception as exc:
            reason = "fatal"
            fatal = PipelineFatal(f"Pipeline loop crashed with {type(exc).__name__}: {exc}")
            fatal.__cause__ = exc
            await self._fail(fatal)
        finally:
            await self._finish(reason)

    def _check_stop(self) -> None:
        """Raise `_StopRequested` if stop() was called (ignored while draining)."""
        if self._stop_requested.is_set() and not self._draining:
            raise _StopRequested

    async def _pause(self, delay: float) -> None:
        """Sleep for a backoff delay, waking early if stop() is requested."""
        if self._draining:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=delay)
        except TimeoutError:
            return
        raise _StopRequested

    async def _fetch(self) -> Sequence[Record]:
        """Run one fetch, cancelling it if stop() is requested first."""
        fetch = asyncio.ensure_future(self._source.fetch())
        stop_wait = asyncio.ensure_future(self._stop_requested.wait())
        try:
            await asyncio.wait({fetch, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            fetch.cancel()
            raise
        finally:
            stop_wait.cancel()

        if not fetch.done():
            fetch.cancel()
            await asyncio.gather(fetch, return_exceptions=True)
            raise _StopRequested
        return fetch.result()

    async def _fetch_with_retries(self) -> Sequence[Record]:
        """Fetch until a call succeeds, backing off after each `SourceError`."""
        while True:
            try:
                records = list(await self._fetch())
            except SourceError as exc:
                delay = self._fetch_backoff.next_delay()
                await self._publish(
                    FetchRetryScheduled(
                        run_id=self._run_id,
                        attempt=self._fetch_backoff.attempt,
                        delay_s=delay,
                        message=str(exc),
                    )
                )
                await self._pause(delay)
                continue
            except (SourceExhausted, PipelineFatal, _StopRequested):
                raise
            except Exception as exc:
                raise PipelineFatal(f"Source raised unexpected {type(exc).__name__}: {exc}") from exc

            self._fetch_backoff.reset()
            return records

    async def _accept(self, records: Sequence[Record]) -> None:
        """Append fetched records, applying the overflow policy when the buffer is full."""
        pending = list(records)
        while pending:
            free = self._buffer.free_capacity
            if len(pending) <= free:
                self._buffer.append(pending)
                with self._lock:
                    self._held = []
                return

            if self._config.overflow_policy == "reject":
                accepted, overflow = pending[:free], pending[free:]
                if accepted:
                    self._buffer.append(accepted)
                with self._lock:
                    self._dropped += len(overflow)
                await self._publish(
                    RecordsOverflowed(
                        run_id=self._run_id,
                        dropped=len(overflow),
                        capacity=self._buffer.capacity,
                        record_ids=[r.id for r in overflow],
                    )
                )
                return

            # Block: fill what fits, hold the rest, and flush to make room before
            # fetching again. A full buffer is always above the threshold.
            if free:
                self._buffer.append(pending[:free])
                pending = pending[free:]
            with self._lock:
                self._held = pending
            await self._flush_ready()

    async def _flush_ready(self) -> None:
        """Send full batches while the buffer holds more than `flush_threshold` records."""
        while True:
            self._check_stop()
            batch = self._buffer.try_extract_batch(self._config.flush_threshold)
            if batch is None:
                return
            await self._send_batch(batch)

    async def _flush_remaining(self) -> None:
        """End-of-stream flush: send whatever is left, even below the threshold."""
        batch = self._buffer.drain()
        if batch:
            await self._send_batch(batch, final=True)

    async def _drain(self) -> None:
        """Deliver everything still pending after a stop request (drain_on_stop)."""
        self._draining = True
        if self._retrying is not None:
            batch_id, attempts, size, final = self._retrying
            self._retrying = None
            await self._send_batch(self._buffer.take(size), final=final, resume=(batch_id, attempts))
        with self._lock:
            held, self._held = self._held, []
        if held:
            await self._accept(held)
        await self._flush_ready()
        await self._flush_remaining()

    def _next_batch_id(self) -> str:
        self._batch_seq += 1
        return f"{self._run_id}-{self._batch_seq:06d}"

    async def _send_batch(
        self,
        batch: tuple[Record, ...],
        *,
        final: bool = False,
        resume: tuple[BatchId, int] | None = None,
    ) -> None:
        """Send one batch, retrying `DestinationError` up to `max_attempt` total attempts.

        Between attempts the batch sits at the front of the buffer, so a stop
        during backoff leaves it pending instead of losing it.

        `resume` continues an earlier `(batch_id, attempts)` instead of starting
        a new batch, so the attempt budget spans the interruption.
        """
        if resume is None:
            batch_id, attempt = self._next_batch_id(), 0
        else:
            batch_id, attempt = resume
        backoff = ExponentialBackoff.from_config(self._config)
        backoff.attempt = attempt
        while True:
            attempt += 1
            try:
                await self._destination.send(batch)
            except DestinationRejected as exc:
                with self._lock:
                    self._failed += len(batch)
                await self._publish(
                    BatchRejected(
                        run_id=self._run_id,
                        batch_id=batch_id,
                        size=len(batch),
                        message=str(exc),
                        record_ids=[r.id for r in batch],
                    )
                )
                return
            except DestinationError as exc:
                if attempt >= self._config.max_attempt:
                    with self._lock:
                        self._dropped += len(batch)
                    raise PipelineFatal(
                        f"Batch {batch_id} dropped after {attempt} failed attempts: {exc}",
                        batch_id=batch_id,
                        attempts=attempt,
                    ) from exc

                self._buffer.requeue(batch)
                delay = backoff.next_delay()
                await self._publish(
                    SendRetryScheduled(
                        run_id=self._run_id,
                        batch_id=batch_id,
                        attempt=attempt,
                        delay_s=delay,
                        message=str(exc),
                    )
                )
                self._retrying = (batch_id, attempt, len(batch), final)
                await self._pause(delay)
                self._retrying = None
                batch = self._buffer.take(len(batch))
                continue
            except Exception as exc:
                # Unknown failures are not retried; keep the records pending.
                self._buffer.requeue(batch)
                raise PipelineFatal(
                    f"Destination raised unexpected {type(exc).__name__}: {exc}",
                    batch_id=batch_id,
                    attempts=attempt,
                ) from exc

            with self._lock:
                self._delivered += len(batch)
                self._batches_sent += 1
            await self._publish(
                BatchDelivered(
                    run_id=self._run_id,
                    batch_id=batch_id,
                    size=len(batch),
                    attempts=attempt,
                    final=final,
                    record_ids=[r.id for r in batch],
                )
            )
            return

    async def _fail(self, exc: PipelineFatal) -> None:
        with self._lock:
            self._error = exc
        await self._publish(
            PipelineFailed(run_id=self._run_id, batch_id=exc.batch_id, attempts=exc.attempts, message=str(exc))
        )

    async def _finish(self, reason: StopReason) -> None:
        """Enter the terminal state and announce it."""
        with self._lock:
            previous = self._state
            self._state = "stopped"
            self._stop_reason = reason
            self._stopped_at = utc_now()
        await self._publish(StateChanged(run_id=self._run_id, previous=previous, state="stopped", stop_reason=reason))

    async def _publish(self, event: PipelineEvent) -> None:
        await self._events.publish(event, stage=_STAGE)
