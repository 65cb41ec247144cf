"""Source/destination interfaces and simulated implementations."""

from .base import Destination, Source
from .simulated import SimulatedDestination, SimulatedSource

__all__ = ["Destination", "SimulatedDestination", "SimulatedSource", "Source"]
