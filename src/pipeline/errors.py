"""Error taxonomy for the batching pipeline.

- Transient (retried inside the loop): `SourceError`, `DestinationError`.
- Terminal for the input: `SourceExhausted` (clean end of stream).
- Terminal for one batch: `DestinationRejected` (batch dropped, loop continues).
- Fatal for the controller: `PipelineFatal`.
- Programmer error: `InvalidState`.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline or its adapters."""


class SourceError(PipelineError):
    """Transient source failure; the controller retries the fetch after backoff."""


class SourceExhausted(PipelineError):
    """The source has no more input; the controller flushes and stops."""


class DestinationError(PipelineError):
    """Transient destination failure; the batch is requeued and resent."""


class DestinationRejected(PipelineError):
    """The destination refused the batch permanently (e.g. a malformed record)."""


class InvalidState(PipelineError):
    """A control operation was called in a state that does not allow it."""

    def __init__(self, operation: str, state: str) -> None:
        """Create an error describing the rejected operation and current state."""
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation}() while pipeline is {state!r}")


class BufferFull(PipelineError):
    """Raised by the buffer when appended records do not fit in the remaining capacity."""

    def __init__(self, *, requested: int, free: int) -> None:
        """Create an error capturing how many records were offered vs. how many fit."""
        self.requested = requested
        self.free = free
        super().__init__(f"Buffer full: {requested} records offered, {free} slots free")


class PipelineFatal(PipelineError):
    """Send retry budget exhausted (or an unexpected adapter error); the controller stops."""

    def __init__(self, message: str, *, batch_id: str | None = None, attempts: int = 0) -> None:
        """Create a fatal error for the given batch and attempt count."""
        self.batch_id = batch_id
        self.attempts = attempts
        super().__init__(message)
