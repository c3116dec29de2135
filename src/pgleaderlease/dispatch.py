from __future__ import annotations

import asyncio
import inspect
from typing import Any

from pgleaderlease._logging import NDLogger, get_logger
from pgleaderlease.models import Callback, ErrorCallback, NewLeaderCallback


class CallbackDispatcher:
    """Delivers leadership transitions to registered callbacks.

    "started" and "stopped" strictly alternate, beginning with "started": a
    repeated edge is logged and dropped. Callback failures are logged and
    handed to the error callbacks; they never propagate into the election loop.

    Started-leading callbacks are the leader's work and run in their own task,
    so a long coroutine there never holds up renewal. The task is cancelled
    when leadership ends, before the stopped-leading callbacks run.
    New-leader notifications also run off the election loop, one at a time and
    in the order they were observed.
    """

    def __init__(self, log: NDLogger | None = None, *, cancel_timeout_s: float | None = None) -> None:
        self._log = log or get_logger("pgleaderlease")
        self._cancel_timeout_s = cancel_timeout_s
        self._on_started: list[Callback] = []
        self._on_stopped: list[Callback] = []
        self._on_new_leader: list[NewLeaderCallback] = []
        self._on_error: list[ErrorCallback] = []
        self._leading = False
        self._work: asyncio.Task[None] | None = None
        self._notifications: set[asyncio.Task[None]] = set()
        self._last_notification: asyncio.Task[None] | None = None
        self.started_count = 0
        self.stopped_count = 0

    @property
    def leading(self) -> bool:
        return self._leading

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on_started_leading(self, fn: Callback) -> Callback:
        self._on_started.append(fn)
        return fn

    def on_stopped_leading(self, fn: Callback) -> Callback:
        self._on_stopped.append(fn)
        return fn

    def on_new_leader(self, fn: NewLeaderCallback) -> NewLeaderCallback:
        self._on_new_leader.append(fn)
        return fn

    def on_error(self, fn: ErrorCallback) -> ErrorCallback:
        self._on_error.append(fn)
        return fn

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _fire(self, callbacks: list, *args: Any) -> None:
        for cb in list(callbacks):
            try:
                result = cb(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._log.exception("callback_error", callback=getattr(cb, "__name__", repr(cb)))
                if callbacks is not self._on_error:
                    await self._fire(self._on_error, exc)

    async def started_leading(self) -> None:
        """Start the leader's work; returns once the callbacks have begun."""
        if self._leading:
            self._log.error("duplicate_started_leading")
            return
        self._leading = True
        self.started_count += 1
        self._work = asyncio.create_task(self._fire(self._on_started), name="started-leading")
        # one loop pass, so the work task takes its first step before we go on
        await asyncio.sleep(0)

    async def stopped_leading(self) -> None:
        if not self._leading:
            self._log.error("stopped_leading_without_start")
            return
        self._leading = False
        self.stopped_count += 1
        try:
            await self._cancel_work()
        finally:
            await self._fire(self._on_stopped)

    async def _cancel_work(self) -> None:
        work, self._work = self._work, None
        if work is None or work.done():
            return
        work.cancel()
        done, _ = await asyncio.wait({work}, timeout=self._cancel_timeout_s)
        if not done:
            self._log.warning("leader_work_still_running", timeout_s=self._cancel_timeout_s)
        else:
            self._log.debug("leader_work_cancelled")

    def new_leader(self, identity: str) -> None:
        previous = self._last_notification
        task = asyncio.create_task(self._notify(previous, identity), name="new-leader")
        self._last_notification = task
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify(self, previous: asyncio.Task[None] | None, identity: str) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        await self._fire(self._on_new_leader, identity)

    async def drain(self, timeout_s: float | None = None) -> None:
        """Wait for pending new-leader notifications; cancel what is left after ``timeout_s``."""
        if not self._notifications:
            return
        _, pending = await asyncio.wait(set(self._notifications), timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            self._log.warning("new_leader_callbacks_cancelled", count=len(pending))

    async def error(self, exc: Exception) -> None:
        await self._fire(self._on_error, exc)
