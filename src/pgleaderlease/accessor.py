from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

from pgleaderlease.errors import BackendUnavailable
from pgleaderlease.models import LeaseRecord, VersionedRecord
from pgleaderlease.store import LeaseStore

T = TypeVar("T")


class LeaseAccessor:
    """Reads and writes one named lease record, each call bounded by a timeout.

    Retrying is the caller's business; a timeout surfaces as BackendUnavailable.
    """

    def __init__(self, store: LeaseStore, namespace: str, name: str, *, timeout_s: float) -> None:
        self._store = store
        self._namespace = namespace
        self._name = name
        self._timeout_s = timeout_s

    @property
    def key(self) -> str:
        return f"{self._namespace}/{self._name}"

    async def _bounded(self, op: str, aw: Awaitable[T], timeout_s: float | None) -> T:
        timeout = self._timeout_s if timeout_s is None else timeout_s
        try:
            return await asyncio.wait_for(aw, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise BackendUnavailable(f"{op} {self.key} timed out after {timeout:.3f}s") from exc

    async def fetch(self, *, timeout_s: float | None = None) -> VersionedRecord | None:
        return await self._bounded(
            "fetch", self._store.fetch(self._namespace, self._name), timeout_s
        )

    async def create(self, record: LeaseRecord, *, timeout_s: float | None = None) -> Any:
        return await self._bounded(
            "create", self._store.create(self._namespace, self._name, record), timeout_s
        )

    async def conditional_update(
        self, record: LeaseRecord, expected_token: Any, *, timeout_s: float | None = None
    ) -> Any:
        return await self._bounded(
            "update",
            self._store.conditional_update(self._namespace, self._name, record, expected_token),
            timeout_s,
        )
