"""Exponential reconnect backoff with jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Backoff:
    """Delay schedule for consecutive failed connection cycles.

    ``next_delay()`` returns ``min(cap, base * 2 ** (attempt - 1))`` scaled by a
    random factor in ``[1 - jitter, 1 + jitter]``.
    """

    base: float = 1.0
    cap: float = 60.0
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random, repr=False)
    attempt: int = field(default=0, init=False)

    @classmethod
    def from_settings(cls, settings, rng: Optional[random.Random] = None) -> Backoff:
        return cls(
            base=float(settings.reconnect_base_delay_seconds),
            cap=float(settings.reconnect_max_delay_seconds),
            jitter=float(settings.reconnect_jitter),
            rng=rng or random.Random(),
        )

    def next_delay(self) -> float:
        self.attempt += 1
        delay = min(self.cap, self.base * (2 ** (self.attempt - 1)))
        if self.jitter:
            delay *= self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, delay)

    def reset(self) -> None:
        self.attempt = 0
