from __future__ import annotations

from dataclasses import dataclass, field

from .config import BackoffConfig


@dataclass
class ExponentialBackoff:
    """Bounded exponential delay: 1s, 2s, 4s ... capped at ``max_seconds``."""

    config: BackoffConfig = field(default_factory=BackoffConfig)
    attempt: int = field(default=0, init=False)

    def next_delay(self) -> float:
        delay = self.config.initial_seconds * (self.config.multiplier**self.attempt)
        if delay >= self.config.max_seconds:
            return self.config.max_seconds
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0
