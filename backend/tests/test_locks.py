"""
Tests for per-learner locks.

Tests:
- Locks are dropped once nobody holds or waits for them
- Same-learner work is serialized
- Different learners do not contend
"""
import asyncio

import pytest

from core.locks import LearnerLocks


class TestLearnerLocks:
    @pytest.mark.asyncio
    async def test_lock_is_dropped_after_release(self):
        locks = LearnerLocks()
        async with locks.hold("learner-1"):
            assert locks.is_locked("learner-1")
            assert len(locks) == 1
        assert not locks.is_locked("learner-1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_failure_inside_still_drops_the_lock(self):
        locks = LearnerLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("learner-1"):
                raise RuntimeError("boom")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiter_keeps_the_lock_and_runs_after(self):
        locks = LearnerLocks()
        order: list[str] = []
        entered = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with locks.hold("learner-1"):
                order.append("first-in")
                entered.set()
                await release.wait()
                order.append("first-out")

        async def second():
            async with locks.hold("learner-1"):
                order.append("second")

        one = asyncio.create_task(first())
        await entered.wait()
        two = asyncio.create_task(second())
        await asyncio.sleep(0)
        assert len(locks) == 1
        release.set()
        await asyncio.gather(one, two)

        assert order == ["first-in", "first-out", "second"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_learners_do_not_contend(self):
        locks = LearnerLocks()
        async with locks.hold("learner-1"):
            async with locks.hold("learner-2"):
                assert len(locks) == 2
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_many_learners_leave_nothing_behind(self):
        locks = LearnerLocks()

        async def touch(learner_id: str):
            async with locks.hold(learner_id):
                await asyncio.sleep(0)

        await asyncio.gather(*(touch(f"learner-{i}") for i in range(50)))
        assert len(locks) == 0
