from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable


class Phase(enum.Enum):
    """Phases of a candidate in the election state machine."""

    FOLLOWER = "follower"
    LEADER = "leader"
    RELEASING = "releasing"


class Decision(enum.Enum):
    """What a candidate may do after reading the lease record."""

    CLAIM = "claim"
    TAKEOVER = "takeover"
    RENEW = "renew"
    FOLLOW = "follow"


class Outcome(enum.Enum):
    """Result of one acquire-or-renew attempt."""

    ACQUIRED = "acquired"
    HELD_BY_OTHER = "held_by_other"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class LeaseRecord:
    """The shared lease as stored in the backend."""

    holder_identity: str
    lease_duration_s: float
    acquire_time: datetime
    renew_time: datetime
    leader_transitions: int = 0

    @property
    def is_held(self) -> bool:
        return bool(self.holder_identity)

    def is_expired(self, now: datetime) -> bool:
        return (now - self.renew_time).total_seconds() > self.lease_duration_s


@dataclass(frozen=True, slots=True)
class VersionedRecord:
    """A lease record together with the backend's concurrency token."""

    record: LeaseRecord
    token: Any


@dataclass(frozen=True, slots=True)
class LeadershipSnapshot:
    """Phase and observed leader, published together."""

    phase: Phase = Phase.FOLLOWER
    observed_leader: str = ""

    @property
    def is_leader(self) -> bool:
        return self.phase is Phase.LEADER


@dataclass(frozen=True, slots=True)
class AttemptResult:
    outcome: Outcome
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class RetryContext:
    """Context passed to RetryStrategy.next_delay_s."""

    attempt: int
    elapsed_s: float
    last_error: Exception | None = None


Callback = Callable[[], Any]
NewLeaderCallback = Callable[[str], Any]
ErrorCallback = Callable[[Exception], Any]
