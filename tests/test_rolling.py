"""
Tests for the rolling restart executor.
"""

from unittest.mock import AsyncMock, call

import pytest

from quorum_reconcile.errors import ReadinessTimeoutError, RollingRestartError
from quorum_reconcile.rolling import RollingRestartExecutor
from quorum_reconcile.state import Pod, Role


def pods(*ordinals, revision="rev-a"):
    return [
        Pod(name=f"my-cluster-coordination-{i}", ordinal=i, role=Role.COORDINATION, revision=revision)
        for i in ordinals
    ]


def flag(*names):
    """Restart predicate flagging the given pod names."""
    return lambda pod: ["Pod has old revision"] if pod.name in names else []


class TestRollingRestart:
    """Tests for ordering and outcome reporting."""

    @pytest.mark.asyncio
    async def test_ascending_ordinal_order(self, context):
        """Pods should be restarted lowest ordinal first regardless of input order."""
        operator = AsyncMock()
        executor = RollingRestartExecutor(operator, poll_interval_ms=5)

        outcome = await executor.roll(context, Role.COORDINATION, pods(2, 0, 1), lambda pod: ["x"])

        assert outcome.restarted == [
            "my-cluster-coordination-0",
            "my-cluster-coordination-1",
            "my-cluster-coordination-2",
        ]
        assert operator.mock_calls[:4] == [
            call.readiness("my-ns", "my-cluster-coordination-1", 5, 1_000),
            call.readiness("my-ns", "my-cluster-coordination-2", 5, 1_000),
            call.restart("my-ns", "my-cluster-coordination-0", 5, 1_000),
            call.readiness("my-ns", "my-cluster-coordination-0", 5, 1_000),
        ]
        assert operator.readiness.await_count == 5

    @pytest.mark.asyncio
    async def test_only_flagged_pods_restarted(self, context):
        operator = AsyncMock()
        executor = RollingRestartExecutor(operator)

        outcome = await executor.roll(
            context, Role.COORDINATION, pods(0, 1, 2), flag("my-cluster-coordination-1")
        )

        assert outcome.restarted == ["my-cluster-coordination-1"]
        assert outcome.reasons == {"my-cluster-coordination-1": ["Pod has old revision"]}
        assert operator.restart.await_count == 1

    @pytest.mark.asyncio
    async def test_healthy_fleet_no_calls(self, context):
        """An empty verdict for every pod should touch nothing."""
        operator = AsyncMock()
        outcome = await RollingRestartExecutor(operator).roll(
            context, Role.COMPUTE, pods(0, 1), lambda pod: []
        )
        assert outcome.restarted == []
        assert operator.mock_calls == []

    @pytest.mark.asyncio
    async def test_failure_stops_roll(self, context):
        """A readiness timeout should stop the roll with the remaining pods pending."""
        operator = AsyncMock()
        operator.readiness.side_effect = [
            None,
            None,
            None,
            ReadinessTimeoutError("my-cluster-coordination-1", 1_000),
        ]
        executor = RollingRestartExecutor(operator)

        with pytest.raises(RollingRestartError) as exc_info:
            await executor.roll(context, Role.COORDINATION, pods(0, 1, 2), lambda pod: ["x"])

        error = exc_info.value
        assert error.restarted == ["my-cluster-coordination-0"]
        assert error.pending == ["my-cluster-coordination-1", "my-cluster-coordination-2"]
        assert operator.restart.await_count == 2
        assert error.to_dict()["pending"] == error.pending


class TestQuorumGuard:
    """Tests for the readiness check of other members before a restart."""

    @pytest.mark.asyncio
    async def test_unready_member_blocks_restart(self, context):
        """An already-rolled member that is still down must stop the next restart."""
        operator = AsyncMock()
        operator.readiness.side_effect = [
            None,
            ReadinessTimeoutError("my-cluster-coordination-1", 1_000),
        ]
        members = pods(0, 1, revision="rev-b") + pods(2)
        executor = RollingRestartExecutor(operator)

        with pytest.raises(RollingRestartError) as exc_info:
            await executor.roll(context, Role.COORDINATION, members, flag("my-cluster-coordination-2"))

        assert operator.restart.await_count == 0
        assert exc_info.value.restarted == []
        assert exc_info.value.pending == ["my-cluster-coordination-2"]
        assert isinstance(exc_info.value.cause, ReadinessTimeoutError)

    @pytest.mark.asyncio
    async def test_members_checked_once(self, context):
        """Members confirmed ready are not polled again for later restarts."""
        operator = AsyncMock()
        executor = RollingRestartExecutor(operator)

        await executor.roll(
            context,
            Role.COORDINATION,
            pods(0, 1, 2),
            flag("my-cluster-coordination-0", "my-cluster-coordination-2"),
        )

        checked = [c.args[1] for c in operator.readiness.await_args_list]
        assert checked == [
            "my-cluster-coordination-1",
            "my-cluster-coordination-2",
            "my-cluster-coordination-0",
            "my-cluster-coordination-2",
        ]

    @pytest.mark.asyncio
    async def test_compute_restarts_without_checking_others(self, context):
        operator = AsyncMock()
        members = [
            Pod(name=f"my-cluster-compute-{i}", ordinal=i, role=Role.COMPUTE, revision="rev-a")
            for i in range(3)
        ]

        await RollingRestartExecutor(operator).roll(
            context, Role.COMPUTE, members, lambda pod: ["x"] if pod.ordinal == 1 else []
        )

        assert [c.args[1] for c in operator.readiness.await_args_list] == ["my-cluster-compute-1"]
