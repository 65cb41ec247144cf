"""Persisting pipeline events for later inspection.

`ObservabilityRecorder` turns published events into `ObservabilityRecord`s
and writes them through a sink (DuckDB for real runs, in-memory for tests)
off the event loop.
"""

from .models import ObservabilityRecord
from .recorder import ObservabilityRecorder
from .sinks import DuckDBObservabilitySink, InMemoryObservabilitySink, ObservabilitySink

__all__ = [
    "DuckDBObservabilitySink",
    "InMemoryObservabilitySink",
    "ObservabilityRecord",
    "ObservabilityRecorder",
    "ObservabilitySink",
]
