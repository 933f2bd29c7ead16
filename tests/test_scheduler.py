"""
Tests for per-cluster attempt scheduling.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from quorum_reconcile.scheduler import ReconcileScheduler, periodic_resync
from quorum_reconcile.state import AttemptResult, ReconciliationContext


def ctx(name="my-cluster", trigger="watch"):
    return ReconciliationContext(namespace="my-ns", name=name, trigger=trigger)


class BlockingAttempt:
    """Attempt that waits for ``release`` and records what it ran."""

    def __init__(self):
        self.release = asyncio.Event()
        self.contexts = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, context):
        self.contexts.append(context)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self.release.wait()
        finally:
            self.running -= 1
        return AttemptResult(context=context, success=True)


class TestSingleFlight:
    """Tests for coalescing triggers of the same cluster."""

    @pytest.mark.asyncio
    async def test_triggers_coalesce(self):
        """Triggers during an attempt should collapse into one follow-up with the latest trigger."""
        attempt = BlockingAttempt()
        scheduler = ReconcileScheduler(attempt)

        task = scheduler.submit(ctx(trigger="first"))
        await asyncio.sleep(0)
        assert scheduler.submit(ctx(trigger="second")) is task
        assert scheduler.submit(ctx(trigger="third")) is task

        attempt.release.set()
        result = await task

        assert [c.trigger for c in attempt.contexts] == ["first", "third"]
        assert result.context.trigger == "third"
        assert not scheduler.in_flight("my-ns", "my-cluster")

    @pytest.mark.asyncio
    async def test_new_task_after_completion(self):
        attempt = AsyncMock(side_effect=lambda c: AttemptResult(context=c, success=True))
        scheduler = ReconcileScheduler(attempt)

        first = await scheduler.submit(ctx())
        second = await scheduler.submit(ctx())

        assert first.success and second.success
        assert attempt.await_count == 2


class TestConcurrency:
    """Tests for the operator-wide cap."""

    @pytest.mark.asyncio
    async def test_distinct_clusters_run_in_parallel(self):
        attempt = BlockingAttempt()
        scheduler = ReconcileScheduler(attempt, max_concurrent=5)

        tasks = [scheduler.submit(ctx(name=f"c{i}")) for i in range(3)]
        await asyncio.sleep(0.01)
        assert attempt.running == 3
        assert scheduler.active == 3

        attempt.release.set()
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_cap_limits_parallel_attempts(self):
        attempt = BlockingAttempt()
        scheduler = ReconcileScheduler(attempt, max_concurrent=1)

        tasks = [scheduler.submit(ctx(name=f"c{i}")) for i in range(3)]
        await asyncio.sleep(0.01)
        assert attempt.running == 1

        attempt.release.set()
        await asyncio.gather(*tasks)
        assert attempt.max_running == 1
        assert len(attempt.contexts) == 3


class TestShutdown:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight(self):
        attempt = BlockingAttempt()
        scheduler = ReconcileScheduler(attempt)
        task = scheduler.submit(ctx())
        await asyncio.sleep(0)

        await scheduler.shutdown()

        assert task.cancelled()
        with pytest.raises(RuntimeError):
            scheduler.submit(ctx())


class TestPeriodicResync:
    """Tests for the resync loop."""

    @pytest.mark.asyncio
    async def test_submits_every_cluster(self, fleet, cluster_resource):
        fleet.add_cluster(cluster_resource())
        other = cluster_resource()
        other["metadata"]["name"] = "other-cluster"
        fleet.add_cluster(other)

        attempt = AsyncMock(side_effect=lambda c: AttemptResult(context=c, success=True))
        scheduler = ReconcileScheduler(attempt)

        loop = asyncio.create_task(periodic_resync(scheduler, fleet.clusters, "my-ns", 60))
        await asyncio.sleep(0.01)
        loop.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop

        names = sorted(call.args[0].name for call in attempt.await_args_list)
        assert names == ["my-cluster", "other-cluster"]
        assert all(call.args[0].trigger == "resync" for call in attempt.await_args_list)
