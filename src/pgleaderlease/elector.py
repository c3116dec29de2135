from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Self, TypeVar

from pgleaderlease._logging import get_logger
from pgleaderlease.accessor import LeaseAccessor
from pgleaderlease.config import ElectionConfig
from pgleaderlease.dispatch import CallbackDispatcher
from pgleaderlease.errors import AlreadyExists, BackendUnavailable, ConfigurationError, Conflict
from pgleaderlease.machine import ElectionStateMachine
from pgleaderlease.models import (
    AttemptResult,
    Callback,
    Decision,
    ErrorCallback,
    LeadershipSnapshot,
    NewLeaderCallback,
    Outcome,
    Phase,
    RetryContext,
    VersionedRecord,
)
from pgleaderlease.retry import FixedInterval, RetryStrategy
from pgleaderlease.store import LeaseStore

logger = get_logger("pgleaderlease")

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_abandoned() -> None:
    """Stop a call whose caller gave up on it before it touches election state.

    A store call can swallow its cancellation and return late (psycopg waits
    for the server to acknowledge a cancelled query); its result is stale.
    """
    task = asyncio.current_task()
    if task is not None and task.cancelling():
        raise asyncio.CancelledError()


class LeaderElector:
    """Leader election over a single lease record in a conditional-write store.

    One coroutine drives the election. As a follower it periodically tries to
    claim an absent, released or expired lease; as leader it renews the lease
    every retry period and steps down when it cannot renew before the renew
    deadline, even if it cannot tell whether its last write landed.
    """

    def __init__(
        self,
        store: LeaseStore,
        config: ElectionConfig,
        *,
        on_started_leading: Callback | None = None,
        on_stopped_leading: Callback | None = None,
        on_new_leader: NewLeaderCallback | None = None,
        retry_strategy: RetryStrategy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._log = logger.bind(
            namespace=config.namespace, name=config.name, identity=config.identity
        )
        self._accessor = LeaseAccessor(
            store, config.namespace, config.name, timeout_s=config.call_timeout_s
        )
        self._machine = ElectionStateMachine(config.identity, config.lease_duration_s)
        self._dispatcher = CallbackDispatcher(self._log, cancel_timeout_s=config.release_timeout_s)
        self._retry_strategy: RetryStrategy = retry_strategy or FixedInterval(
            interval_s=config.retry_period_s
        )
        self._clock = clock or utcnow

        if on_started_leading is not None:
            self._dispatcher.on_started_leading(on_started_leading)
        if on_stopped_leading is not None:
            self._dispatcher.on_stopped_leading(on_stopped_leading)
        if on_new_leader is not None:
            self._dispatcher.on_new_leader(on_new_leader)

        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._stop_event = asyncio.Event()
        self._cancel_event: asyncio.Event | None = None
        self._leadership_event = asyncio.Event()
        # monotonic start of the last successful acquire/renew attempt
        self._last_renew: float | None = None
        # store calls given up on; kept referenced until they finish
        self._abandoned: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> ElectionConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def namespace(self) -> str:
        return self._config.namespace

    @property
    def identity(self) -> str:
        return self._config.identity

    @property
    def snapshot(self) -> LeadershipSnapshot:
        return self._machine.snapshot

    @property
    def phase(self) -> Phase:
        return self._machine.snapshot.phase

    @property
    def is_leader(self) -> bool:
        return self._machine.snapshot.is_leader

    @property
    def current_leader_identity(self) -> str:
        return self._machine.snapshot.observed_leader

    @property
    def last_renew(self) -> float | None:
        """time.monotonic() at the start of the last successful renewal, if leading."""
        return self._last_renew

    @property
    def running(self) -> bool:
        return self._running

    @property
    def dispatcher(self) -> CallbackDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Event registration decorators
    # ------------------------------------------------------------------

    def on_started_leading(self, fn: Callback) -> Callback:
        return self._dispatcher.on_started_leading(fn)

    def on_stopped_leading(self, fn: Callback) -> Callback:
        return self._dispatcher.on_stopped_leading(fn)

    def on_new_leader(self, fn: NewLeaderCallback) -> NewLeaderCallback:
        return self._dispatcher.on_new_leader(fn)

    def on_error(self, fn: ErrorCallback) -> ErrorCallback:
        return self._dispatcher.on_error(fn)

    # ------------------------------------------------------------------
    # Lifecycle methods
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Take part in the election until ``stop_event`` is set or the task is cancelled."""
        if self._running:
            raise RuntimeError("election is already running")
        self._running = True
        self._cancel_event = stop_event
        self._log.info(
            "election_started",
            lease_duration_s=self._config.lease_duration_s,
            renew_deadline_s=self._config.renew_deadline_s,
            retry_period_s=self._config.retry_period_s,
        )
        try:
            while not self._should_stop():
                if self._machine.phase is Phase.LEADER:
                    await self._renew_loop()
                else:
                    await self._acquire_loop()
        except asyncio.CancelledError:
            self._log.info("election_cancelled")
            raise
        except Exception as exc:
            self._log.exception("lifecycle_error")
            await self._dispatcher.error(exc)
        finally:
            try:
                if self._machine.phase is not Phase.FOLLOWER:
                    await self._step_down("shutdown", release=self._config.release_on_cancel)
                await self._dispatcher.drain(self._config.release_timeout_s)
            finally:
                self._running = False
                self._cancel_event = None
                self._stop_event.clear()
                self._log.info("election_stopped")

    async def start(self, stop_event: asyncio.Event | None = None) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(stop_event))

    async def shutdown(self, timeout_s: float | None = None) -> None:
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout_s)
        except asyncio.TimeoutError:
            self._log.warning("shutdown_timeout_cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        except asyncio.CancelledError:
            pass
        self._task = None

    async def wait_for_leadership(self, timeout_s: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._leadership_event.wait(), timeout=timeout_s)
            return True
        except asyncio.TimeoutError:
            return False

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown(timeout_s=self._config.renew_deadline_s)

    # ------------------------------------------------------------------
    # Stop handling
    # ------------------------------------------------------------------

    def _should_stop(self) -> bool:
        return self._stop_event.is_set() or (
            self._cancel_event is not None and self._cancel_event.is_set()
        )

    async def _interruptible_sleep(self, seconds: float) -> None:
        if seconds <= 0 or self._should_stop():
            return
        waiters = [asyncio.ensure_future(self._stop_event.wait())]
        if self._cancel_event is not None:
            waiters.append(asyncio.ensure_future(self._cancel_event.wait()))
        try:
            await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
                    try:
                        await waiter
                    except asyncio.CancelledError:
                        pass

    # ------------------------------------------------------------------
    # Acquisition loop
    # ------------------------------------------------------------------

    async def _acquire_loop(self) -> None:
        attempt = 0
        started = time.monotonic()
        while not self._should_stop():
            timeout_s = self._config.call_timeout_s
            result = await self._attempt(timeout_s, timeout_s)
            if result.outcome is Outcome.ACQUIRED:
                self._machine.transition(Phase.LEADER)
                self._log.info("started_leading", attempts=attempt + 1)
                await self._dispatcher.started_leading()
                self._leadership_event.set()
                return
            attempt += 1
            ctx = RetryContext(
                attempt=attempt,
                elapsed_s=time.monotonic() - started,
                last_error=result.error,
            )
            await self._interruptible_sleep(self._retry_strategy.next_delay_s(ctx))

    # ------------------------------------------------------------------
    # Renewal loop
    # ------------------------------------------------------------------

    async def _renew_loop(self) -> None:
        assert self._last_renew is not None
        while not self._should_stop():
            deadline = self._last_renew + self._config.renew_deadline_s
            await self._interruptible_sleep(
                min(self._config.retry_period_s, deadline - time.monotonic())
            )
            if self._should_stop():
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._log.warning(
                    "renew_deadline_exceeded", renew_deadline_s=self._config.renew_deadline_s
                )
                await self._step_down("renew_deadline_exceeded", release=False)
                return

            # An attempt still running at the deadline is abandoned; the next
            # pass finds no time left and steps down.
            result = await self._attempt(min(self._config.call_timeout_s, remaining), remaining)
            if result.outcome is Outcome.HELD_BY_OTHER:
                self._log.warning("leadership_lost", leader=self._machine.observed_leader)
                await self._step_down("lease_taken", release=False)
                return
            if result.outcome is not Outcome.ACQUIRED:
                self._log.info(
                    "renew_failed",
                    outcome=result.outcome,
                    remaining_s=round(deadline - time.monotonic(), 3),
                )

    # ------------------------------------------------------------------
    # One acquire-or-renew attempt
    # ------------------------------------------------------------------

    async def _try_acquire_or_renew(self, timeout_s: float) -> AttemptResult:
        started = time.monotonic()
        now = self._clock()
        try:
            current = await self._accessor.fetch(timeout_s=timeout_s)
        except BackendUnavailable as exc:
            self._log.warning("lease_fetch_failed", error=str(exc))
            return AttemptResult(Outcome.UNAVAILABLE, exc)
        _check_abandoned()
        self._observe(current)

        decision = self._machine.decide(now)
        if decision is Decision.FOLLOW:
            self._log.debug("lease_held_by_other", leader=self._machine.observed_leader)
            return AttemptResult(Outcome.HELD_BY_OTHER)

        desired = self._machine.build_record(decision, now)
        remaining = timeout_s - (time.monotonic() - started)
        try:
            if remaining <= 0:
                raise BackendUnavailable("no time left for the lease write")
            if current is None:
                token = await self._accessor.create(desired, timeout_s=remaining)
            else:
                token = await self._accessor.conditional_update(
                    desired, current.token, timeout_s=remaining
                )
        except (Conflict, AlreadyExists) as exc:
            self._log.info("lease_write_conflict", decision=decision, error=str(exc))
            await self._refresh(timeout_s - (time.monotonic() - started))
            if self._machine.decide(self._clock()) is Decision.FOLLOW:
                return AttemptResult(Outcome.HELD_BY_OTHER, exc)
            return AttemptResult(Outcome.CONFLICT, exc)
        except BackendUnavailable as exc:
            self._log.warning("lease_write_failed", decision=decision, error=str(exc))
            return AttemptResult(Outcome.UNAVAILABLE, exc)

        _check_abandoned()
        self._last_renew = started
        self._observe(VersionedRecord(desired, token))
        if decision is Decision.RENEW:
            self._log.debug("lease_renewed")
        else:
            self._log.info(
                "lease_acquired", decision=decision, transitions=desired.leader_transitions
            )
        return AttemptResult(Outcome.ACQUIRED)

    async def _refresh(self, timeout_s: float) -> None:
        """Re-read the record after losing a write, to learn who won."""
        if timeout_s <= 0:
            return
        try:
            current = await self._accessor.fetch(timeout_s=timeout_s)
        except BackendUnavailable as exc:
            self._log.debug("lease_refresh_failed", error=str(exc))
            return
        _check_abandoned()
        self._observe(current)

    def _observe(self, current: VersionedRecord | None) -> None:
        if not self._machine.observe(current):
            return
        leader = self._machine.observed_leader
        if not leader:
            self._log.info("lease_unheld")
            return
        self._log.info("new_leader_observed", leader=leader, is_self=leader == self.identity)
        self._dispatcher.new_leader(leader)

    # ------------------------------------------------------------------
    # Step-down
    # ------------------------------------------------------------------

    async def _step_down(self, reason: str, *, release: bool) -> None:
        if self._machine.phase is Phase.LEADER:
            self._machine.transition(Phase.RELEASING)
        self._leadership_event.clear()
        self._log.info("stopped_leading", reason=reason)
        try:
            await self._dispatcher.stopped_leading()
            if release:
                await self._release()
        finally:
            self._machine.transition(Phase.FOLLOWER)
            self._last_renew = None

    async def _release(self) -> None:
        record = self._machine.release_record(self._clock())
        if record is None:
            self._log.debug("release_skipped_not_holder")
            return
        timeout_s = self._config.release_timeout_s
        try:
            token = await self._within(
                self._accessor.conditional_update(
                    record, self._machine.observed_token, timeout_s=timeout_s
                ),
                timeout_s,
                "release",
            )
        except (Conflict, BackendUnavailable, ConfigurationError) as exc:
            self._log.warning("release_failed", error=str(exc))
            return
        self._observe(VersionedRecord(record, token))
        self._log.info("lease_released")

    # ------------------------------------------------------------------
    # Bounded store calls
    # ------------------------------------------------------------------

    async def _attempt(self, timeout_s: float, bound_s: float) -> AttemptResult:
        """One acquire-or-renew attempt that returns within ``bound_s`` whatever the store does."""
        try:
            return await self._within(self._try_acquire_or_renew(timeout_s), bound_s, "attempt")
        except BackendUnavailable as exc:
            self._log.warning("attempt_abandoned", error=str(exc))
            return AttemptResult(Outcome.UNAVAILABLE, exc)

    async def _within(self, aw: Awaitable[T], timeout_s: float, op: str) -> T:
        """Await ``aw`` in its own task for at most ``timeout_s``.

        A task still running after that is cancelled and left to finish on its
        own; the caller gets BackendUnavailable without waiting for it.
        """
        task = asyncio.ensure_future(aw)
        try:
            done, _ = await asyncio.wait({task}, timeout=max(timeout_s, 0.0))
        except asyncio.CancelledError:
            self._abandon(task)
            raise
        if not done:
            self._abandon(task)
            raise BackendUnavailable(f"{op} {self._accessor.key} abandoned after {timeout_s:.3f}s")
        return task.result()

    def _abandon(self, task: asyncio.Task[Any]) -> None:
        if task.done():
            return
        task.cancel()
        self._abandoned.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task[Any]) -> None:
        self._abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._log.debug("abandoned_call_failed", error=str(task.exception()))
