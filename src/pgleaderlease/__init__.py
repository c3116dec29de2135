from pgleaderlease.accessor import LeaseAccessor
from pgleaderlease.config import ElectionConfig, default_identity
from pgleaderlease.dispatch import CallbackDispatcher
from pgleaderlease.elector import LeaderElector
from pgleaderlease.errors import (
    AlreadyExists,
    BackendUnavailable,
    ConfigurationError,
    Conflict,
    LeaderLeaseError,
    LeaseExpiredError,
    StateTransitionError,
)
from pgleaderlease.health import ElectionWatchdog
from pgleaderlease.machine import ElectionStateMachine, decide
from pgleaderlease.models import (
    Callback,
    Decision,
    ErrorCallback,
    LeadershipSnapshot,
    LeaseRecord,
    NewLeaderCallback,
    Phase,
    RetryContext,
    VersionedRecord,
)
from pgleaderlease.postgres import PostgresLeaseStore
from pgleaderlease.retry import FixedInterval, JitteredInterval, RetryStrategy
from pgleaderlease.store import LeaseStore, MemoryLeaseStore

__all__ = [
    "LeaderElector",
    "ElectionConfig",
    "default_identity",
    "ElectionWatchdog",
    "LeaseStore",
    "MemoryLeaseStore",
    "PostgresLeaseStore",
    "LeaseAccessor",
    "ElectionStateMachine",
    "decide",
    "CallbackDispatcher",
    "Phase",
    "Decision",
    "LeaseRecord",
    "VersionedRecord",
    "LeadershipSnapshot",
    "RetryContext",
    "Callback",
    "NewLeaderCallback",
    "ErrorCallback",
    "RetryStrategy",
    "FixedInterval",
    "JitteredInterval",
    "LeaderLeaseError",
    "BackendUnavailable",
    "Conflict",
    "AlreadyExists",
    "ConfigurationError",
    "StateTransitionError",
    "LeaseExpiredError",
]
