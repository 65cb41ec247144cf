"""Bounded-batch pipeline controller.

Pulls records from a pluggable `Source`, buffers them, and flushes fixed-size
batches to a pluggable `Destination` until stopped or the source is exhausted.
"""

from .adapters.base import Destination, Source
from .buffer import BatchBuffer
from .bus import PipelineEventBus
from .controller import PipelineController
from .errors import (
    BufferFull,
    DestinationError,
    DestinationRejected,
    InvalidState,
    PipelineError,
    PipelineFatal,
    SourceError,
    SourceExhausted,
)
from .models import PipelineEvent, PipelineStatus, Record

__all__ = [
    "BatchBuffer",
    "BufferFull",
    "Destination",
    "DestinationError",
    "DestinationRejected",
    "InvalidState",
    "PipelineController",
    "PipelineError",
    "PipelineEvent",
    "PipelineEventBus",
    "PipelineFatal",
    "PipelineStatus",
    "Record",
    "Source",
    "SourceError",
    "SourceExhausted",
]
