class LeaderLeaseError(Exception):
    """Base exception for all pgleaderlease errors."""


class BackendUnavailable(LeaderLeaseError):
    """The lease backend could not be reached or did not answer in time."""


class Conflict(LeaderLeaseError):
    """A conditional update lost: the record changed since it was read."""


class AlreadyExists(LeaderLeaseError):
    """Another candidate created the lease record first."""


class ConfigurationError(LeaderLeaseError):
    """Invalid election configuration."""


class StateTransitionError(LeaderLeaseError):
    """Attempted a phase transition the election state machine does not allow."""


class LeaseExpiredError(LeaderLeaseError):
    """The local leader has not renewed its lease within the tolerated window."""
