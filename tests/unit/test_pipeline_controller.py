from __future__ import annotations

import asyncio
from collections.abc import Sequence

import pytest

from config import PipelineConfig
from pipeline.adapters.simulated import SimulatedDestination, SimulatedSource
from pipeline.controller import PipelineController
from pipeline.errors import DestinationError, DestinationRejected, PipelineFatal, SourceExhausted
from pipeline.models import (
    BatchDelivered,
    BatchRejected,
    FetchRetryScheduled,
    Record,
    RecordsOverflowed,
    SendRetryScheduled,
)


def _config(**overrides) -> PipelineConfig:
    settings = {
        "flush_threshold": 10,
        "buffer_capacity": 100,
        "base_delay": 0.001,
        "max_delay": 0.01,
        "backoff_jitter": 0.0,
        "max_attempt": 5,
    }
    settings.update(overrides)
    return PipelineConfig(**settings)


def _ids(records: Sequence[Record]) -> list[int]:
    return [r.id for r in records]


class _ScriptedSource:
    """Returns one scripted response per fetch, then raises `SourceExhausted`."""

    def __init__(self, responses: list[list[Record]]) -> None:
        self._responses = list(responses)

    async def fetch(self) -> Sequence[Record]:
        await asyncio.sleep(0)
        if not self._responses:
            raise SourceExhausted("done")
        return self._responses.pop(0)


class _CapacityProbe:
    """Destination that records how full the buffer was at every send."""

    def __init__(self) -> None:
        self.controller: PipelineController | None = None
        self.batches: list[tuple[Record, ...]] = []
        self.buffer_lengths: list[int] = []

    async def send(self, batch: Sequence[Record]) -> None:
        assert self.controller is not None
        self.buffer_lengths.append(len(self.controller._buffer))
        self.batches.append(tuple(batch))


async def _run(controller: PipelineController, timeout_s: float = 5.0):
    return await asyncio.wait_for(controller.run(), timeout=timeout_s)


@pytest.mark.asyncio
async def test_exactly_threshold_records_only_flush_at_end_of_stream(drain_events) -> None:
    source = SimulatedSource(delay_s=0, records_per_fetch=2, limit=10)
    destination = SimulatedDestination(delay_s=0)
    controller = PipelineController(source=source, destination=destination, config=_config())
    q = controller.event_bus.subscribe()

    status = await _run(controller)

    # 5 fetches reach exactly 10 records (not > 10); the 6th reports exhaustion.
    assert source.fetch_calls == 6
    assert [_ids(b) for b in destination.batches] == [list(range(1, 11))]
    assert status.delivered == 10
    assert status.state == "stopped"
    assert status.stop_reason == "exhausted"
    assert status.stopped_cleanly

    delivered = [e for e in drain_events(q) if isinstance(e, BatchDelivered)]
    assert len(delivered) == 1
    assert delivered[0].final is True


@pytest.mark.asyncio
async def test_mid_stream_batches_are_threshold_sized_and_ordered() -> None:
    source = SimulatedSource(delay_s=0, records_per_fetch=3, limit=35)
    destination = SimulatedDestination(delay_s=0)
    controller = PipelineController(source=source, destination=destination, config=_config())

    status = await _run(controller)

    assert [len(b) for b in destination.batches] == [10, 10, 10, 5]
    assert _ids(destination.records) == list(range(1, 36))
    assert status.delivered == 35
    assert status.batches_sent == 4
    assert status.buffered == 0


@pytest.mark.parametrize(
    ("records_per_fetch", "threshold", "limit"),
    [(1, 3, 20), (7, 4, 50), (25, 10, 61)],
)
@pytest.mark.asyncio
async def test_delivery_order_matches_fetch_order(records_per_fetch: int, threshold: int, limit: int) -> None:
    source = SimulatedSource(delay_s=0, records_per_fetch=records_per_fetch, limit=limit)
    destination = SimulatedDestination(delay_s=0)
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(flush_threshold=threshold),
    )

    await _run(controller)

    assert _ids(destination.records) == list(range(1, limit + 1))
    assert all(len(b) == threshold for b in destination.batches[:-1])
    assert 0 < len(destination.batches[-1]) <= threshold


@pytest.mark.asyncio
async def test_send_fails_twice_then_succeeds_delivers_once(drain_events) -> None:
    source = SimulatedSource(delay_s=0, records_per_fetch=3, limit=3)
    destination = SimulatedDestination(
        delay_s=0,
        script=[DestinationError("timeout"), DestinationError("timeout")],
    )
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(flush_threshold=2, max_attempt=5),
    )
    q = controller.event_bus.subscribe()

    status = await _run(controller)

    assert [_ids(b) for b in destination.batches] == [[1, 2], [3]]
    assert destination.send_calls == 4
    assert status.delivered == 3
    assert status.dropped == 0

    events = drain_events(q)
    retries = [e for e in events if isinstance(e, SendRetryScheduled)]
    delivered = [e for e in events if isinstance(e, BatchDelivered)]
    assert [r.attempt for r in retries] == [1, 2]
    assert len({r.batch_id for r in retries}) == 1
    assert delivered[0].batch_id == retries[0].batch_id
    assert delivered[0].attempts == 3
    assert delivered[0].size == 2


@pytest.mark.asyncio
async def test_send_retry_budget_exhausted_is_fatal() -> None:
    source = SimulatedSource(delay_s=0, records_per_fetch=3, limit=30)
    destination = SimulatedDestination(delay_s=0, script=[DestinationError("down")] * 3)
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(flush_threshold=2, max_attempt=3),
    )

    with pytest.raises(PipelineFatal) as excinfo:
        await _run(controller)

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.__cause__, DestinationError)

    status = controller.status()
    assert status.state == "stopped"
    assert status.stop_reason == "fatal"
    assert status.error is not None
    assert not status.stopped_cleanly
    assert status.dropped == 2
    assert status.delivered == 0
    assert destination.send_calls == 3
    assert destination.batches == []


@pytest.mark.asyncio
async def test_rejected_batch_is_dropped_and_loop_continues(drain_events) -> None:
    source = SimulatedSource(delay_s=0, records_per_fetch=3, limit=6)
    destination = SimulatedDestination(delay_s=0, script=[DestinationRejected("malformed record")])
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(flush_threshold=2),
    )
    q = controller.event_bus.subscribe()

    status = await _run(controller)

    assert [_ids(b) for b in destination.batches] == [[3, 4], [5, 6]]
    assert status.failed == 2
    assert status.delivered == 4
    assert status.stop_reason == "exhausted"

    rejected = [e for e in drain_events(q) if isinstance(e, BatchRejected)]
    assert len(rejected) == 1
    assert rejected[0].record_ids == [1, 2]
    assert rejected[0].message == "malformed record"


@pytest.mark.asyncio
async def test_source_errors_back_off_and_reset_after_success(monkeypatch: pytest.MonkeyPatch, drain_events) -> None:
    monkeypatch.setattr("pipeline.retry.random.uniform", lambda _a, _b: 0.0)
    source = SimulatedSource(delay_s=0, records_per_fetch=1, limit=2, fail_on={1, 2, 4})
    destination = SimulatedDestination(delay_s=0)
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(base_delay=0.001, backoff_multiplier=2.0, max_delay=1.0),
    )
    q = controller.event_bus.subscribe()

    status = await _run(controller)

    retries = [e for e in drain_events(q) if isinstance(e, FetchRetryScheduled)]
    assert [r.attempt for r in retries] == [1, 2, 1]
    assert [r.delay_s for r in retries] == pytest.approx([0.001, 0.002, 0.001])
    assert [_ids(b) for b in destination.batches] == [[1, 2]]
    assert status.delivered == 2


@pytest.mark.asyncio
async def test_unexpected_destination_exception_is_fatal_and_keeps_records() -> None:
    source = SimulatedSource(delay_s=0, records_per_fetch=3, limit=3)
    destination = SimulatedDestination(delay_s=0, script=[KeyError("bug")])
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(flush_threshold=2),
    )

    with pytest.raises(PipelineFatal) as excinfo:
        await _run(controller)

    assert isinstance(excinfo.value.__cause__, KeyError)
    assert excinfo.value.attempts == 1
    assert _ids(controller.pending_records()) == [1, 2, 3]
    assert controller.status().stop_reason == "fatal"


@pytest.mark.asyncio
async def test_block_policy_holds_fetch_side_until_room_is_made() -> None:
    records = [Record(id=n, value=f"data{n}") for n in range(1, 26)]
    source = _ScriptedSource([records])
    destination = _CapacityProbe()
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(flush_threshold=10, buffer_capacity=12, overflow_policy="block"),
    )
    destination.controller = controller

    status = await _run(controller)

    assert [len(b) for b in destination.batches] == [10, 10, 5]
    assert [r.id for b in destination.batches for r in b] == list(range(1, 26))
    assert all(n <= 12 for n in destination.buffer_lengths)
    assert status.dropped == 0
    assert status.delivered == 25


@pytest.mark.asyncio
async def test_reject_policy_drops_overflow_tail(drain_events) -> None:
    records = [Record(id=n, value=f"data{n}") for n in range(1, 26)]
    source = _ScriptedSource([records])
    destination = SimulatedDestination(delay_s=0)
    controller = PipelineController(
        source=source,
        destination=destination,
        config=_config(flush_threshold=10, buffer_capacity=12, overflow_policy="reject"),
    )
    q = controller.event_bus.subscribe()

    status = await _run(controller)

    assert [_ids(b) for b in destination.batches] == [list(range(1, 11)), [11, 12]]
    assert status.dropped == 13
    assert status.delivered == 12

    overflowed = [e for e in drain_events(q) if isinstance(e, RecordsOverflowed)]
    assert len(overflowed) == 1
    assert overflowed[0].dropped == 13
    assert overflowed[0].record_ids == list(range(13, 26))


@pytest.mark.asyncio
async def test_empty_fetches_are_not_errors() -> None:
    source = _ScriptedSource([[], [Record(id="a", value=b"\x00")], [], []])
    destination = SimulatedDestination(delay_s=0)
    controller = PipelineController(source=source, destination=destination, config=_config())

    status = await _run(controller)

    assert [_ids(b) for b in destination.batches] == [["a"]]
    assert status.delivered == 1
    assert status.stop_reason == "exhausted"


class _BrokenCursor:
    def __iter__(self):
        raise RuntimeError("cursor closed mid-read")


class _BrokenCursorSource:
    async def fetch(self) -> Sequence[Record]:
        return _BrokenCursor()  # type: ignore[return-value]


@pytest.mark.asyncio
async def test_fetch_result_that_fails_to_iterate_is_fatal() -> None:
    controller = PipelineController(
        source=_BrokenCursorSource(),
        destination=SimulatedDestination(delay_s=0),
        config=_config(),
    )

    with pytest.raises(PipelineFatal) as excinfo:
        await _run(controller)

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    status = controller.status()
    assert status.state == "stopped"
    assert status.stop_reason == "fatal"
    assert status.error is not None and "RuntimeError" in status.error
    assert not status.stopped_cleanly
