from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Self

import psycopg

from pgleaderlease._logging import get_logger
from pgleaderlease.errors import (
    AlreadyExists,
    BackendUnavailable,
    Conflict,
    ConfigurationError,
)
from pgleaderlease.models import LeaseRecord, VersionedRecord

logger = get_logger("pgleaderlease.postgres")

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    namespace          text             NOT NULL,
    name               text             NOT NULL,
    holder_identity    text             NOT NULL DEFAULT '',
    lease_duration_s   double precision NOT NULL,
    acquire_time       timestamptz      NOT NULL,
    renew_time         timestamptz      NOT NULL,
    leader_transitions integer          NOT NULL DEFAULT 0,
    version            bigint           NOT NULL DEFAULT 1,
    PRIMARY KEY (namespace, name)
)
"""

_FETCH = """
SELECT holder_identity, lease_duration_s, acquire_time, renew_time,
       leader_transitions, version
FROM {table}
WHERE namespace = %s AND name = %s
"""

_CREATE = """
INSERT INTO {table} (namespace, name, holder_identity, lease_duration_s,
                     acquire_time, renew_time, leader_transitions, version)
VALUES (%s, %s, %s, %s, %s, %s, %s, 1)
ON CONFLICT (namespace, name) DO NOTHING
RETURNING version
"""

_UPDATE = """
UPDATE {table}
SET holder_identity = %s, lease_duration_s = %s, acquire_time = %s,
    renew_time = %s, leader_transitions = %s, version = version + 1
WHERE namespace = %s AND name = %s AND version = %s
RETURNING version
"""

# Errors that mean the connection, not the statement, is the problem.
_TRANSPORT_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError, OSError)


class PostgresLeaseStore:
    """Lease records as rows of a PostgreSQL table.

    The ``version`` column is the concurrency token: every write bumps it and
    conditional updates only match the version they read.
    """

    def __init__(
        self,
        dsn: str,
        *,
        table: str = "leader_leases",
        connect_fn: Callable[[], Awaitable[psycopg.AsyncConnection[Any]]] | None = None,
        statement_timeout_s: float | None = None,
    ) -> None:
        if not _IDENT.match(table):
            raise ConfigurationError(f"invalid table name: {table!r}")
        if statement_timeout_s is not None and statement_timeout_s <= 0:
            raise ConfigurationError(
                f"statement_timeout_s must be positive, got {statement_timeout_s}"
            )
        self._statement_timeout_s = statement_timeout_s
        self._dsn = dsn
        self._table = table
        self._connect_fn = connect_fn
        self._conn: psycopg.AsyncConnection[Any] | None = None
        self._sql_fetch = _FETCH.format(table=table)
        self._sql_create = _CREATE.format(table=table)
        self._sql_update = _UPDATE.format(table=table)
        self._log = logger.bind(table=table)

    @property
    def table(self) -> str:
        return self._table

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def _connect(self) -> psycopg.AsyncConnection[Any]:
        if self._connect_fn:
            return await self._connect_fn()
        kwargs: dict[str, Any] = {}
        if self._statement_timeout_s is not None:
            # the server aborts a stuck statement itself
            timeout_ms = max(1, round(self._statement_timeout_s * 1000))
            kwargs["options"] = f"-c statement_timeout={timeout_ms}"
        return await psycopg.AsyncConnection.connect(self._dsn, autocommit=True, **kwargs)

    async def _connection(self) -> psycopg.AsyncConnection[Any]:
        if self._conn is None:
            try:
                self._conn = await self._connect()
            except _TRANSPORT_ERRORS as exc:
                self._log.warning("connect_failed", error=str(exc))
                raise BackendUnavailable(f"cannot connect to PostgreSQL: {exc}") from exc
            self._log.debug("connected")
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            except Exception:
                self._log.debug("close_failed")
            self._conn = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _execute(self, query: str, params: tuple[Any, ...]) -> tuple[Any, ...] | None:
        conn = await self._connection()
        try:
            cur = await conn.execute(query, params)
            return await cur.fetchone()
        except asyncio.CancelledError:
            # The server may still be busy with the statement.
            await self.close()
            raise
        except _TRANSPORT_ERRORS as exc:
            # Drop the connection; the next call reconnects.
            await self.close()
            raise BackendUnavailable(str(exc)) from exc
        except psycopg.Error as exc:
            raise self._statement_error(exc) from exc

    def _statement_error(self, exc: psycopg.Error) -> Exception:
        message = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, psycopg.ProgrammingError):
            # missing table, missing privilege, bad SQL: retrying will not help
            self._log.error("statement_rejected", error=message)
            return ConfigurationError(message)
        self._log.error("statement_failed", error=message)
        return BackendUnavailable(message)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def ensure_schema(self) -> None:
        conn = await self._connection()
        try:
            await conn.execute(_SCHEMA.format(table=self._table))
        except _TRANSPORT_ERRORS as exc:
            await self.close()
            raise BackendUnavailable(str(exc)) from exc
        except psycopg.Error as exc:
            raise self._statement_error(exc) from exc
        self._log.info("schema_ready")

    # ------------------------------------------------------------------
    # LeaseStore
    # ------------------------------------------------------------------

    async def fetch(self, namespace: str, name: str) -> VersionedRecord | None:
        row = await self._execute(self._sql_fetch, (namespace, name))
        if row is None:
            return None
        holder, duration, acquired, renewed, transitions, version = row
        record = LeaseRecord(
            holder_identity=holder or "",
            lease_duration_s=float(duration),
            acquire_time=acquired,
            renew_time=renewed,
            leader_transitions=int(transitions),
        )
        return VersionedRecord(record, int(version))

    async def create(self, namespace: str, name: str, record: LeaseRecord) -> int:
        row = await self._execute(self._sql_create, (namespace, name, *_columns(record)))
        if row is None:
            raise AlreadyExists(f"lease {namespace}/{name} already exists")
        return int(row[0])

    async def conditional_update(
        self, namespace: str, name: str, record: LeaseRecord, token: Any
    ) -> int:
        row = await self._execute(
            self._sql_update, (*_columns(record), namespace, name, token)
        )
        if row is None:
            raise Conflict(f"lease {namespace}/{name} no longer at version {token}")
        return int(row[0])


def _columns(record: LeaseRecord) -> tuple[Any, ...]:
    return (
        record.holder_identity,
        record.lease_duration_s,
        record.acquire_time,
        record.renew_time,
        record.leader_transitions,
    )
