"""Bounded FIFO buffer of pending records.

Batches are always taken from the front so arrival order is preserved within
and across batches. Every operation holds a `threading.Lock`, which makes
`len(buffer)` safe to read from a monitoring thread while the controller loop
mutates the buffer.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable, Sequence

from .errors import BufferFull
from .models import Record


class BatchBuffer:
    """Ordered, bounded accumulator of records awaiting delivery.

    Example:
        buffer = BatchBuffer(capacity=100)
        buffer.append(records)
        batch = buffer.try_extract_batch(10)  # None unless len(buffer) > 10
    """

    def __init__(self, capacity: int) -> None:
        """Create an empty buffer holding at most `capacity` records.

        Raises:
            ValueError: If capacity < 1.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._lock = threading.Lock()
        self._records: deque[Record] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def free_capacity(self) -> int:
        """Number of records that can still be appended."""
        with self._lock:
            return max(0, self._capacity - len(self._records))

    def __len__(self) -> int:
        """Return the current number of buffered records."""
        with self._lock:
            return len(self._records)

    def append(self, records: Sequence[Record]) -> None:
        """Append records to the tail, in order.

        All-or-nothing: if the records do not fit, nothing is appended.

        Raises:
            BufferFull: If `len(records)` exceeds the free capacity.
        """
        with self._lock:
            free = self._capacity - len(self._records)
            if len(records) > free:
                raise BufferFull(requested=len(records), free=max(0, free))
            self._records.extend(records)

    def try_extract_batch(self, threshold: int) -> tuple[Record, ...] | None:
        """Remove and return the first `threshold` records if more than `threshold` are buffered.

        A buffer holding exactly `threshold` records does not flush. Returns
        None (buffer unchanged) otherwise.
        """
        if threshold < 1:
            raise ValueError(f"threshold must be >= 1, got {threshold}")
        with self._lock:
            if len(self._records) <= threshold:
                return None
            return tuple(self._records.popleft() for _ in range(threshold))

    def take(self, count: int) -> tuple[Record, ...]:
        """Remove and return up to `count` records from the front, regardless of threshold."""
        with self._lock:
            n = min(max(0, count), len(self._records))
            return tuple(self._records.popleft() for _ in range(n))

    def requeue(self, records: Iterable[Record]) -> None:
        """Put records back at the front, ahead of anything appended since they were taken.

        Capacity is not enforced here: the records were already accounted for
        when they were first appended.
        """
        with self._lock:
            self._records.extendleft(reversed(list(records)))

    def drain(self) -> tuple[Record, ...]:
        """Remove and return everything currently buffered."""
        with self._lock:
            drained = tuple(self._records)
            self._records.clear()
            return drained

    def snapshot(self) -> tuple[Record, ...]:
        """Return a point-in-time copy of the buffered records (buffer unchanged)."""
        with self._lock:
            return tuple(self._records)
