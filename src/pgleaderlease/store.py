from __future__ import annotations

import asyncio
import itertools
from typing import Any, Protocol, runtime_checkable

from pgleaderlease.errors import AlreadyExists, BackendUnavailable, Conflict
from pgleaderlease.models import LeaseRecord, VersionedRecord


@runtime_checkable
class LeaseStore(Protocol):
    """Backend holding lease records keyed by (namespace, name).

    Implementations must make ``create`` and ``conditional_update`` atomic:
    for one record, only one write per token generation may succeed.
    """

    async def fetch(self, namespace: str, name: str) -> VersionedRecord | None:
        """Return the record and its token, or None if it does not exist."""
        ...

    async def create(self, namespace: str, name: str, record: LeaseRecord) -> Any:
        """Create the record, returning its token. Raises AlreadyExists."""
        ...

    async def conditional_update(
        self, namespace: str, name: str, record: LeaseRecord, token: Any
    ) -> Any:
        """Replace the record if its token still equals ``token``. Raises Conflict."""
        ...


class MemoryLeaseStore:
    """In-process lease store with the same conditional-write semantics.

    Writes complete without yielding to the event loop, so they are atomic for
    every candidate running on that loop. ``unavailable`` and ``latency_s`` let
    callers simulate an outage or a slow backend.
    """

    def __init__(self, *, latency_s: float = 0.0) -> None:
        self._records: dict[tuple[str, str], VersionedRecord] = {}
        self._tokens = itertools.count(1)
        self.latency_s = latency_s
        self.unavailable = False
        self.writes: int = 0

    async def _io(self) -> None:
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)
        if self.unavailable:
            raise BackendUnavailable("memory store marked unavailable")

    async def fetch(self, namespace: str, name: str) -> VersionedRecord | None:
        await self._io()
        return self._records.get((namespace, name))

    async def create(self, namespace: str, name: str, record: LeaseRecord) -> int:
        await self._io()
        key = (namespace, name)
        if key in self._records:
            raise AlreadyExists(f"lease {namespace}/{name} already exists")
        token = next(self._tokens)
        self._records[key] = VersionedRecord(record, token)
        self.writes += 1
        return token

    async def conditional_update(
        self, namespace: str, name: str, record: LeaseRecord, token: Any
    ) -> int:
        await self._io()
        key = (namespace, name)
        current = self._records.get(key)
        if current is None or current.token != token:
            raise Conflict(f"lease {namespace}/{name} changed since token {token}")
        new_token = next(self._tokens)
        self._records[key] = VersionedRecord(record, new_token)
        self.writes += 1
        return new_token

    def get(self, namespace: str, name: str) -> LeaseRecord | None:
        """Synchronous peek at the stored record."""
        current = self._records.get((namespace, name))
        return current.record if current else None

    def delete(self, namespace: str, name: str) -> None:
        """Out-of-band removal of a lease record."""
        self._records.pop((namespace, name), None)
