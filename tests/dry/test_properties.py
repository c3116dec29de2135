"""Multi-candidate behaviour against one shared MemoryLeaseStore.

Each candidate reaches the store through its own CandidateStore view so that
it can be partitioned away independently of the others.
"""

from __future__ import annotations

import asyncio
import random
import time

LEASE_S = 0.4
RETRY_S = 0.05


async def _stop_all(candidates) -> None:
    for elector, store in candidates:
        store.partitioned = False
    for elector, _ in candidates:
        await elector.shutdown(timeout_s=2.0)


class TestSafety:
    async def test_at_most_one_leader_under_partitions(self, make_elector):
        rng = random.Random(1234)
        candidates = [make_elector(f"c{i}") for i in range(4)]
        for elector, _ in candidates:
            await elector.start()

        loop = asyncio.get_running_loop()
        end = loop.time() + 3.0
        next_shuffle = loop.time() + 0.3
        violations: list[list[str]] = []
        leaders_seen: set[str] = set()

        while loop.time() < end:
            leaders = [e.identity for e, _ in candidates if e.is_leader]
            if len(leaders) > 1:
                violations.append(leaders)
            leaders_seen.update(leaders)

            if loop.time() >= next_shuffle:
                # Cut off whoever leads now, plus some random followers.
                for elector, store in candidates:
                    store.partitioned = elector.is_leader or rng.random() < 0.3
                next_shuffle = loop.time() + 0.7
            await asyncio.sleep(0.002)

        await _stop_all(candidates)
        assert violations == []
        assert len(leaders_seen) >= 2

    async def test_simultaneous_start_elects_one(self, make_elector, backend):
        candidates = [make_elector(f"c{i}") for i in range(6)]
        await asyncio.gather(*(elector.start() for elector, _ in candidates))
        await asyncio.sleep(RETRY_S * 4)

        leaders = [e.identity for e, _ in candidates if e.is_leader]
        assert len(leaders) == 1
        assert backend.get("default", "election").holder_identity == leaders[0]
        for elector, _ in candidates:
            assert elector.current_leader_identity == leaders[0]
        await _stop_all(candidates)


class TestLiveness:
    async def test_follower_takes_over_after_leader_crash(self, make_elector):
        a, _ = make_elector("a", release_on_cancel=False)
        b, _ = make_elector("b")
        await a.start()
        assert await a.wait_for_leadership(timeout_s=2.0)
        await b.start()
        await asyncio.sleep(RETRY_S * 2)
        assert not b.is_leader

        crashed_at = time.monotonic()
        await a.shutdown(timeout_s=2.0)  # stops renewing, lease left behind

        assert await b.wait_for_leadership(timeout_s=LEASE_S + RETRY_S + 0.5)
        assert time.monotonic() - crashed_at <= LEASE_S + RETRY_S + 0.25
        await b.shutdown(timeout_s=2.0)


class TestCallbackAlternation:
    async def test_started_and_stopped_strictly_alternate(self, make_elector):
        candidates = [make_elector(f"c{i}") for i in range(3)]
        events: dict[str, list[str]] = {e.identity: [] for e, _ in candidates}
        for elector, _ in candidates:
            log = events[elector.identity]
            elector.on_started_leading(lambda log=log: log.append("started"))
            elector.on_stopped_leading(lambda log=log: log.append("stopped"))
            await elector.start()

        for _ in range(4):
            await asyncio.sleep(0.5)
            for elector, store in candidates:
                store.partitioned = elector.is_leader
            for log in events.values():
                assert log.count("started") - log.count("stopped") in (0, 1)

        await _stop_all(candidates)

        total_started = 0
        for log in events.values():
            assert log[::2] == ["started"] * len(log[::2])
            assert log[1::2] == ["stopped"] * len(log[1::2])
            assert log.count("started") == log.count("stopped")
            total_started += log.count("started")
        assert total_started >= 2
