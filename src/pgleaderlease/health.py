from __future__ import annotations

import time

from pgleaderlease.elector import LeaderElector
from pgleaderlease.errors import LeaseExpiredError


class ElectionWatchdog:
    """Liveness probe for a leading candidate.

    A leader whose loop is stuck (for example behind a callback that blocks the
    event loop) keeps ``is_leader`` true while its lease runs out. ``check``
    flags a leader that has not renewed for longer than the lease duration
    plus ``tolerance_s``. Followers are always healthy.
    """

    def __init__(self, elector: LeaderElector, *, tolerance_s: float = 0.0) -> None:
        if tolerance_s < 0:
            raise ValueError("tolerance_s must not be negative")
        self._elector = elector
        self._tolerance_s = tolerance_s

    @property
    def name(self) -> str:
        return f"leader-election:{self._elector.namespace}/{self._elector.name}"

    def check(self) -> None:
        if not self._elector.is_leader:
            return
        last = self._elector.last_renew
        if last is None:
            return
        age = time.monotonic() - last
        limit = self._elector.config.lease_duration_s + self._tolerance_s
        if age > limit:
            raise LeaseExpiredError(
                f"failed to renew leadership on lease {self._elector.namespace}/"
                f"{self._elector.name}: last renewal {age:.1f}s ago, limit {limit:.1f}s"
            )

    @property
    def healthy(self) -> bool:
        try:
            self.check()
        except LeaseExpiredError:
            return False
        return True
