"""Event fan-out from the pipeline controller to its observers.

Every event the controller emits (state changes, deliveries, rejections,
scheduled retries, overflow drops, fatal failures) goes through
`PipelineEventBus.publish`. Each subscriber gets its own queue; when a
recorder is attached the event is also persisted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from observability.recorder import ObservabilityRecorder

from .models import PipelineEvent, event_kind


class PipelineEventBus:
    """Fan-out bus for `PipelineEvent`s (PipelineController -> subscribers).

    Publishing never waits on a subscriber. A subscriber created with a
    `maxsize` keeps only its newest events: once full, the oldest queued
    event is discarded to make room.
    """

    def __init__(self, *, recorder: ObservabilityRecorder | None = None) -> None:
        self._subscribers: set[asyncio.Queue[PipelineEvent]] = set()
        self._recorder = recorder

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, *, maxsize: int = 0) -> asyncio.Queue[PipelineEvent]:
        """Register and return a queue that receives every event published from now on."""
        q: asyncio.Queue[PipelineEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue[PipelineEvent]) -> None:
        self._subscribers.discard(q)

    async def publish(self, event: PipelineEvent, *, stage: str = "pipeline_event_bus") -> None:
        """Record `event` (if a recorder is attached) and hand it to every subscriber."""
        if self._recorder is not None:
            await self._recorder.record_message(event, kind=event_kind(event), stage=stage)
        for q in list(self._subscribers):
            if q.full():
                q.get_nowait()
            q.put_nowait(event)

    async def publish_many(self, events: Iterable[PipelineEvent], *, stage: str = "pipeline_event_bus") -> None:
        """Publish events one at a time, in order."""
        for event in events:
            await self.publish(event, stage=stage)
