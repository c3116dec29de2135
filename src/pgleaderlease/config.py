from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass

from pgleaderlease.errors import ConfigurationError

_TRUE = ("1", "true", "yes", "on")


def default_identity() -> str:
    """hostname_<random suffix>, unique enough for one process per call."""
    return f"{socket.gethostname()}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True, slots=True)
class ElectionConfig:
    """Construction-time settings of one candidate.

    Durations are seconds and must satisfy
    ``retry_period_s < renew_deadline_s < lease_duration_s``.
    ``call_timeout_s`` bounds each backend call and ``release_timeout_s``
    bounds the release write on shutdown; both default to the retry period.
    """

    name: str
    namespace: str
    identity: str
    lease_duration_s: float = 15.0
    renew_deadline_s: float = 10.0
    retry_period_s: float = 2.0
    call_timeout_s: float | None = None
    release_timeout_s: float | None = None
    release_on_cancel: bool = True

    def __post_init__(self) -> None:
        for attr in ("name", "namespace", "identity"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(f"{attr} must be a non-empty string")

        for attr in ("lease_duration_s", "renew_deadline_s", "retry_period_s"):
            if getattr(self, attr) <= 0:
                raise ConfigurationError(f"{attr} must be positive, got {getattr(self, attr)}")

        if not self.renew_deadline_s < self.lease_duration_s:
            raise ConfigurationError(
                f"renew_deadline_s ({self.renew_deadline_s}) must be less than "
                f"lease_duration_s ({self.lease_duration_s})"
            )
        if not self.retry_period_s < self.renew_deadline_s:
            raise ConfigurationError(
                f"retry_period_s ({self.retry_period_s}) must be less than "
                f"renew_deadline_s ({self.renew_deadline_s})"
            )

        # frozen: fill derived defaults through object.__setattr__
        if self.call_timeout_s is None:
            object.__setattr__(self, "call_timeout_s", self.retry_period_s)
        if self.release_timeout_s is None:
            object.__setattr__(self, "release_timeout_s", self.retry_period_s)

        if self.call_timeout_s <= 0:
            raise ConfigurationError(f"call_timeout_s must be positive, got {self.call_timeout_s}")
        if self.call_timeout_s > self.renew_deadline_s:
            raise ConfigurationError(
                f"call_timeout_s ({self.call_timeout_s}) must not exceed "
                f"renew_deadline_s ({self.renew_deadline_s})"
            )
        if self.release_timeout_s <= 0:
            raise ConfigurationError(
                f"release_timeout_s must be positive, got {self.release_timeout_s}"
            )

    @classmethod
    def from_env(cls, prefix: str = "PGLEADERLEASE_") -> ElectionConfig:
        """Build a config from ``<prefix>NAME``, ``<prefix>NAMESPACE`` and friends."""
        env = os.environ

        def _float(key: str, default: float) -> float:
            raw = env.get(prefix + key)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{prefix}{key} is not a number: {raw!r}") from exc

        return cls(
            name=env.get(prefix + "NAME", ""),
            namespace=env.get(prefix + "NAMESPACE", "default"),
            identity=env.get(prefix + "IDENTITY") or default_identity(),
            lease_duration_s=_float("LEASE_DURATION", 15.0),
            renew_deadline_s=_float("RENEW_DEADLINE", 10.0),
            retry_period_s=_float("RETRY_PERIOD", 2.0),
            release_on_cancel=env.get(prefix + "RELEASE_ON_CANCEL", "true").lower() in _TRUE,
        )
