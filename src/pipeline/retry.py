"""Exponential backoff used for fetch and send retries."""

from __future__ import annotations

import random

from config import PipelineConfig


class ExponentialBackoff:
    """Stateful delay schedule: `base_delay * multiplier ** (attempt - 1)`, capped at `max_delay`.

    A small random jitter (a fraction of the delay) is added, never pushing the
    delay past the cap. Call `reset()` after a success.
    """

    def __init__(
        self,
        *,
        base_delay: float,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: float = 0.1,
    ) -> None:
        if base_delay < 0:
            raise ValueError(f"base_delay must be >= 0. Got: {base_delay}")
        if multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0. Got: {multiplier}")

        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.attempt = 0

    @classmethod
    def from_config(cls, config: PipelineConfig) -> ExponentialBackoff:
        """Build a schedule from the pipeline's retry settings."""
        return cls(
            base_delay=config.base_delay,
            multiplier=config.backoff_multiplier,
            max_delay=config.max_delay,
            jitter=config.backoff_jitter,
        )

    def next_delay(self) -> float:
        """Advance the attempt counter and return the delay to wait before retrying."""
        self.attempt += 1
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** (self.attempt - 1)))
        delay += random.uniform(0.0, delay * self.jitter)  # small jitter
        return min(self.max_delay, delay)

    def reset(self) -> None:
        """Start the schedule over from `base_delay`."""
        self.attempt = 0
