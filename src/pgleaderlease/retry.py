from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from pgleaderlease.models import RetryContext


@runtime_checkable
class RetryStrategy(Protocol):
    """Paces acquisition attempts while a candidate is a follower."""

    def next_delay_s(self, ctx: RetryContext) -> float:
        """Return seconds to wait before the next acquisition attempt."""
        ...


@dataclass(frozen=True, slots=True)
class FixedInterval:
    """Constant delay between attempts: the configured retry period."""

    interval_s: float = 2.0

    def next_delay_s(self, ctx: RetryContext) -> float:
        return self.interval_s


@dataclass(slots=True)
class JitteredInterval:
    """period_s + uniform(0, jitter_factor * period_s).

    Spreads out followers that all notice an expired lease at the same moment.
    """

    period_s: float = 2.0
    jitter_factor: float = 1.2
    _rng: random.Random = field(default_factory=random.Random)

    def next_delay_s(self, ctx: RetryContext) -> float:
        if self.jitter_factor <= 0:
            return self.period_s
        return self.period_s + self._rng.uniform(0.0, self.jitter_factor * self.period_s)
