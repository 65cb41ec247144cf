"""Simulated source and destination for demos and end-to-end tests.

Neither touches the network: they sleep to mimic I/O latency and can be
scripted to fail, which makes the controller's retry paths easy to exercise.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable, Sequence

from ..errors import SourceError, SourceExhausted
from ..models import Record


class SimulatedSource:
    """Source that yields `records_per_fetch` sequential records per call.

    Records get integer ids starting at 1 and `"data{id}"` values. After
    `limit` records (if set) the source raises `SourceExhausted`. Fetch calls
    whose 1-based number is in `fail_on` raise `SourceError` instead.
    """

    def __init__(
        self,
        *,
        delay_s: float = 1.0,
        records_per_fetch: int = 2,
        limit: int | None = None,
        fail_on: Iterable[int] = (),
    ) -> None:
        if records_per_fetch < 0:
            raise ValueError(f"records_per_fetch must be >= 0. Got: {records_per_fetch}")
        self._delay_s = delay_s
        self._records_per_fetch = records_per_fetch
        self._limit = limit
        self._fail_on = set(fail_on)

        self.fetch_calls = 0
        self.produced = 0

    async def fetch(self) -> Sequence[Record]:
        """Simulate a slow fetch from an upstream API."""
        self.fetch_calls += 1
        await asyncio.sleep(self._delay_s)

        if self.fetch_calls in self._fail_on:
            raise SourceError(f"simulated fetch failure on call {self.fetch_calls}")

        count = self._records_per_fetch
        if self._limit is not None:
            remaining = self._limit - self.produced
            if remaining <= 0:
                raise SourceExhausted(f"simulated source exhausted after {self.produced} records")
            count = min(count, remaining)

        start = self.produced + 1
        self.produced += count
        return [Record(id=n, value=f"data{n}") for n in range(start, start + count)]


class SimulatedDestination:
    """Destination that records every batch it accepts.

    `script` is consumed one entry per `send` call: `None` means succeed, an
    exception instance is raised for that call. Once the script runs out every
    call succeeds.
    """

    def __init__(
        self,
        *,
        delay_s: float = 0.5,
        script: Iterable[BaseException | None] = (),
        echo: bool = False,
    ) -> None:
        self._delay_s = delay_s
        self._script: deque[BaseException | None] = deque(script)
        self._echo = echo

        self.send_calls = 0
        self.batches: list[tuple[Record, ...]] = []

    @property
    def records(self) -> list[Record]:
        """All accepted records, flattened in delivery order."""
        return [record for batch in self.batches for record in batch]

    async def send(self, batch: Sequence[Record]) -> None:
        """Simulate a slow write to a database."""
        self.send_calls += 1
        await asyncio.sleep(self._delay_s)

        outcome = self._script.popleft() if self._script else None
        if outcome is not None:
            raise outcome

        self.batches.append(tuple(batch))
        if self._echo:
            print(f"Sent data to destination: {[r.id for r in batch]}")
