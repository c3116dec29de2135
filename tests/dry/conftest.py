from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

import pytest

from pgleaderlease.config import ElectionConfig
from pgleaderlease.elector import LeaderElector
from pgleaderlease.errors import BackendUnavailable
from pgleaderlease.models import LeaseRecord, VersionedRecord
from pgleaderlease.store import MemoryLeaseStore

NAMESPACE = "default"
NAME = "election"

# Fast timings for the loop tests: retry < renew deadline < lease.
LEASE_S = 0.4
RENEW_DEADLINE_S = 0.25
RETRY_S = 0.05


class FakeCursor:
    """Simulates a psycopg cursor returning one scripted row."""

    def __init__(self, row: tuple[Any, ...] | None) -> None:
        self._row = row

    async def fetchone(self) -> tuple[Any, ...] | None:
        return self._row


class FakeConnection:
    """Simulates a psycopg.AsyncConnection with scripted rows."""

    def __init__(self) -> None:
        self._rows: deque[Any] = deque()  # tuple/None/Exception
        self._closed = False
        self.stalled = False
        self.execute_calls: list[tuple[str, tuple | None]] = []

    def script(self, *rows: Any) -> None:
        """Queue results: a row tuple, None for no row, or an Exception to raise."""
        self._rows.extend(rows)

    async def execute(self, sql: str, params: tuple | None = None) -> FakeCursor:
        self.execute_calls.append((sql, params))
        if self.stalled:
            await asyncio.sleep(3600)
        if not self._rows:
            return FakeCursor(None)
        row = self._rows.popleft()
        if isinstance(row, Exception):
            raise row
        return FakeCursor(row)

    async def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


async def sleep_through_cancellation(seconds: float) -> None:
    """Sleep the full time even when cancelled, like a driver waiting out a server-side cancel."""
    loop = asyncio.get_running_loop()
    end = loop.time() + seconds
    while (left := end - loop.time()) > 0:
        try:
            await asyncio.sleep(left)
        except asyncio.CancelledError:
            continue


class CandidateStore:
    """One candidate's view of a shared MemoryLeaseStore.

    ``partitioned`` cuts the candidate off, ``hang`` makes every call block,
    ``fail_updates_with`` makes conditional updates raise the given error and
    ``stall_updates_s`` delays them, cancelled or not, before they land.
    """

    def __init__(self, backend: MemoryLeaseStore) -> None:
        self.backend = backend
        self.partitioned = False
        self.hang = False
        self.fail_updates_with: type[Exception] | None = None
        self.stall_updates_s = 0.0
        self.update_calls = 0

    async def _gate(self) -> None:
        if self.hang:
            await asyncio.sleep(3600)
        if self.partitioned:
            raise BackendUnavailable("partitioned")

    async def fetch(self, namespace: str, name: str) -> VersionedRecord | None:
        await self._gate()
        return await self.backend.fetch(namespace, name)

    async def create(self, namespace: str, name: str, record: LeaseRecord) -> Any:
        await self._gate()
        return await self.backend.create(namespace, name, record)

    async def conditional_update(
        self, namespace: str, name: str, record: LeaseRecord, token: Any
    ) -> Any:
        await self._gate()
        self.update_calls += 1
        if self.fail_updates_with is not None:
            raise self.fail_updates_with("injected failure")
        if self.stall_updates_s:
            await sleep_through_cancellation(self.stall_updates_s)
        return await self.backend.conditional_update(namespace, name, record, token)


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def backend() -> MemoryLeaseStore:
    return MemoryLeaseStore()


@pytest.fixture
def make_config():
    def _make(identity: str = "a", **overrides: Any) -> ElectionConfig:
        params: dict[str, Any] = dict(
            name=NAME,
            namespace=NAMESPACE,
            identity=identity,
            lease_duration_s=LEASE_S,
            renew_deadline_s=RENEW_DEADLINE_S,
            retry_period_s=RETRY_S,
        )
        params.update(overrides)
        return ElectionConfig(**params)

    return _make


@pytest.fixture
def make_elector(backend: MemoryLeaseStore, make_config):
    """Factory for electors sharing one memory backend through CandidateStore views."""

    def _make(identity: str = "a", **overrides: Any) -> tuple[LeaderElector, CandidateStore]:
        store = CandidateStore(backend)
        return LeaderElector(store, make_config(identity, **overrides)), store

    return _make


async def wait_until(predicate, timeout_s: float = 2.0, interval_s: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval_s)
    return predicate()


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until
