from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from pgleaderlease.errors import StateTransitionError
from pgleaderlease.models import (
    Decision,
    LeadershipSnapshot,
    LeaseRecord,
    Phase,
    VersionedRecord,
)

# Duration written into a released lease.
RELEASED_LEASE_DURATION_S = 1.0

_ALLOWED: dict[Phase, frozenset[Phase]] = {
    Phase.FOLLOWER: frozenset({Phase.LEADER}),
    Phase.LEADER: frozenset({Phase.RELEASING}),
    Phase.RELEASING: frozenset({Phase.FOLLOWER}),
}


def decide(current: VersionedRecord | None, identity: str, now: datetime) -> Decision:
    """Decide what a candidate may do given the record it just read."""
    if current is None:
        return Decision.CLAIM
    record = current.record
    if not record.is_held or record.is_expired(now):
        return Decision.TAKEOVER
    if record.holder_identity == identity:
        return Decision.RENEW
    return Decision.FOLLOW


class ElectionStateMachine:
    """Phase and lease bookkeeping of one candidate.

    All mutation goes through this object, which publishes phase and observed
    leader as a single immutable LeadershipSnapshot. Replacing the snapshot is
    one attribute store, so other threads read either the old or the new
    snapshot, never a mix.
    """

    def __init__(self, identity: str, lease_duration_s: float) -> None:
        self._identity = identity
        self._lease_duration_s = lease_duration_s
        self._snapshot = LeadershipSnapshot()
        self._observed: VersionedRecord | None = None

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def snapshot(self) -> LeadershipSnapshot:
        return self._snapshot

    @property
    def phase(self) -> Phase:
        return self._snapshot.phase

    @property
    def observed_leader(self) -> str:
        return self._snapshot.observed_leader

    @property
    def observed(self) -> VersionedRecord | None:
        return self._observed

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, new_phase: Phase) -> Phase:
        old = self._snapshot.phase
        if new_phase not in _ALLOWED[old]:
            raise StateTransitionError(f"{old.value} -> {new_phase.value} is not allowed")
        self._snapshot = replace(self._snapshot, phase=new_phase)
        return old

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(self, current: VersionedRecord | None) -> bool:
        """Remember the record just read. Returns True if the holder changed."""
        self._observed = current
        holder = current.record.holder_identity if current is not None else ""
        if holder == self._snapshot.observed_leader:
            return False
        self._snapshot = replace(self._snapshot, observed_leader=holder)
        return True

    def decide(self, now: datetime) -> Decision:
        return decide(self._observed, self._identity, now)

    # ------------------------------------------------------------------
    # Records to write
    # ------------------------------------------------------------------

    def build_record(self, decision: Decision, now: datetime) -> LeaseRecord:
        """The record that claims, takes over or renews the lease for us."""
        if decision is Decision.FOLLOW:
            raise StateTransitionError("cannot write a lease held by another candidate")
        previous = self._observed.record if self._observed is not None else None
        if previous is None:
            return LeaseRecord(
                holder_identity=self._identity,
                lease_duration_s=self._lease_duration_s,
                acquire_time=now,
                renew_time=now,
                leader_transitions=0,
            )
        if previous.holder_identity == self._identity:
            return replace(previous, lease_duration_s=self._lease_duration_s, renew_time=now)
        return LeaseRecord(
            holder_identity=self._identity,
            lease_duration_s=self._lease_duration_s,
            acquire_time=now,
            renew_time=now,
            leader_transitions=previous.leader_transitions + 1,
        )

    def release_record(self, now: datetime) -> LeaseRecord | None:
        """A cleared copy of our lease, or None if we are not its holder."""
        if self._observed is None or self._observed.record.holder_identity != self._identity:
            return None
        return replace(
            self._observed.record,
            holder_identity="",
            lease_duration_s=RELEASED_LEASE_DURATION_S,
            acquire_time=now,
            renew_time=now,
        )

    @property
    def observed_token(self) -> Any:
        return self._observed.token if self._observed is not None else None
