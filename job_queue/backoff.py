"""
Jitter and the worker's throttling backoff state.

Normal (current_ms == 0) ⇄ Throttled (current_ms > 0). A rate-limit signal
escalates; the state only drops back to Normal when ``check_reset`` runs
after a full quiet period with no further signals.
"""
from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional


def apply_jitter(base_ms: float, jitter_factor: float, rng: Optional[random.Random] = None) -> int:
    """
    Perturb a delay by ±jitter_factor.

    base=1500, factor=0.5 gives a value in [750, 2250]. Never negative.
    """
    if not jitter_factor:
        return max(0, int(round(base_ms)))
    uniform = (rng or random).uniform(-1.0, 1.0)
    jittered = int(round(base_ms * (1 + uniform * jitter_factor)))
    # rounding must not step outside [b(1-f), b(1+f)]
    low = max(0, math.ceil(base_ms * (1 - jitter_factor)))
    high = max(0, math.floor(base_ms * (1 + jitter_factor)))
    return min(max(jittered, low), high)


@dataclass
class BackoffState:
    """Single-writer backoff owned by one worker."""

    initial_ms: int = 1000
    multiplier: float = 2.0
    max_ms: int = 60000
    reset_after_ms: int = 300000
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    current_ms: int = 0
    last_rate_limit_at: Optional[float] = None

    @classmethod
    def from_config(cls, conf, clock: Callable[[], float] = time.monotonic) -> BackoffState:
        return cls(
            initial_ms=conf.initial_backoff_ms,
            multiplier=conf.backoff_multiplier,
            max_ms=conf.max_backoff_ms,
            reset_after_ms=conf.backoff_reset_ms,
            clock=clock,
        )

    @property
    def throttled(self) -> bool:
        return self.current_ms > 0

    def escalate(self) -> int:
        """Record a rate-limit signal and return the new backoff."""
        self.last_rate_limit_at = self.clock()
        if self.current_ms == 0:
            self.current_ms = min(self.initial_ms, self.max_ms)
        else:
            self.current_ms = min(int(self.current_ms * self.multiplier), self.max_ms)
        return self.current_ms

    def check_reset(self) -> bool:
        """Clear the backoff once the quiet period has elapsed. True if cleared."""
        if self.current_ms == 0 or self.last_rate_limit_at is None:
            return False
        elapsed_ms = (self.clock() - self.last_rate_limit_at) * 1000
        if elapsed_ms > self.reset_after_ms:
            self.current_ms = 0
            return True
        return False

    def clear(self) -> None:
        self.current_ms = 0
        self.last_rate_limit_at = None
