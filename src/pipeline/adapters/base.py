"""Source/destination interfaces.

The controller depends on these small interfaces so concrete integrations
(REST polling, DB cursors, file tailers, warehouses) can be swapped without
changing controller code.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from ..models import Record


class Source(Protocol):
    async def fetch(self) -> Sequence[Record]:
        """Return the next zero or more records.

        May suspend for an unbounded time and must tolerate cancellation.
        Raise `SourceError` for transient failures and `SourceExhausted`
        at a clean end of input.
        """


class Destination(Protocol):
    async def send(self, batch: Sequence[Record]) -> None:
        """Deliver a non-empty, ordered batch.

        Raise `DestinationError` for transient failures (the batch is resent)
        and `DestinationRejected` when the batch can never be accepted.
        """
