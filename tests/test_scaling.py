"""
Tests for the scaling controller.
"""

from unittest.mock import AsyncMock

import pytest

from quorum_reconcile.errors import ReadinessTimeoutError, ScalingError
from quorum_reconcile.memory import POD_SET
from quorum_reconcile.scaling import ScalingController
from quorum_reconcile.state import ReconcileResult, Role


def controller_for(fleet):
    return ScalingController(fleet.pod_sets, fleet.ordinal_groups, fleet.pods, poll_interval_ms=1)


class TestPodSetScaling:
    """Tests for scaling a pod set against the in-memory platform."""

    @pytest.mark.asyncio
    async def test_grow_one_pod_per_apply(self, fleet, pod_set_builder, cluster_resource, context):
        """Growing 1 -> 3 should check the existing member, then apply sizes 2 and 3."""
        desired = pod_set_builder.build_role(cluster_resource(coordination=3), Role.COORDINATION)
        fleet.seed_fleet(desired, replicas=1)
        current = fleet.pod_set_store[("my-ns", desired.name)]

        outcome = await controller_for(fleet).scale(context, current, desired)

        assert outcome.applied == (2, 3)
        assert outcome.resource.ordinals == [0, 1, 2]
        assert [c.name for c in fleet.history("pod", "readiness")] == [
            "my-cluster-coordination-0",
            "my-cluster-coordination-1",
            "my-cluster-coordination-2",
        ]

    @pytest.mark.asyncio
    async def test_shrink_removes_highest_ordinal(self, fleet, pod_set_builder, cluster_resource, context):
        """Shrinking 5 -> 3 should apply sizes 4 then 3."""
        desired = pod_set_builder.build_role(cluster_resource(coordination=3), Role.COORDINATION)
        fleet.seed_fleet(desired, replicas=5)
        current = fleet.pod_set_store[("my-ns", desired.name)]

        outcome = await controller_for(fleet).scale(context, current, desired)

        assert outcome.applied == (4, 3)
        assert fleet.pod_names("my-ns") == [f"my-cluster-coordination-{i}" for i in range(3)]
        assert fleet.history("pod", "readiness") == []

    @pytest.mark.asyncio
    async def test_equal_size_is_noop(self, fleet, pod_set_builder, cluster_resource, context):
        desired = pod_set_builder.build_role(cluster_resource(coordination=3), Role.COORDINATION)
        fleet.seed_fleet(desired)
        current = fleet.pod_set_store[("my-ns", desired.name)]

        outcome = await controller_for(fleet).scale(context, current, desired)

        assert outcome.steps == 0
        assert outcome.resource is current
        assert fleet.history(POD_SET) == []


class TestOrdinalGroupScaling:
    """Tests for scaling an ordinal group."""

    @pytest.mark.asyncio
    async def test_grow(self, fleet, ordinal_group_builder, cluster_resource, context):
        desired = ordinal_group_builder.build_role(cluster_resource(compute=3), Role.COMPUTE)
        fleet.seed_fleet(desired, replicas=1)
        current = fleet.ordinal_group_store[("my-ns", desired.name)]

        outcome = await controller_for(fleet).grow(context, current, desired)

        assert outcome.applied == (2, 3)
        assert outcome.resource.replicas == 3

    @pytest.mark.asyncio
    async def test_shrink(self, fleet, ordinal_group_builder, cluster_resource, context):
        desired = ordinal_group_builder.build_role(cluster_resource(compute=1), Role.COMPUTE)
        fleet.seed_fleet(desired, replicas=3)
        current = fleet.ordinal_group_store[("my-ns", desired.name)]

        outcome = await controller_for(fleet).shrink(context, current, desired)

        assert outcome.applied == (2, 1)
        assert fleet.pod_names("my-ns") == ["my-cluster-compute-0"]


class TestScalingFailures:
    """Tests for partial progress reporting."""

    @pytest.mark.asyncio
    async def test_readiness_timeout_reports_applied_sizes(self, pod_set_builder, cluster_resource, context):
        """A readiness timeout should stop growth and report what was applied."""
        desired = pod_set_builder.build_role(cluster_resource(coordination=4), Role.COORDINATION)
        pod_sets = AsyncMock()
        pod_sets.reconcile.side_effect = lambda ns, name, ps: ReconcileResult.updated(ps)
        pods = AsyncMock()
        pods.readiness.side_effect = [None, None, ReadinessTimeoutError("my-cluster-coordination-2", 1_000)]
        controller = ScalingController(pod_sets, AsyncMock(), pods, poll_interval_ms=1)

        with pytest.raises(ScalingError) as exc_info:
            await controller.grow(context, desired.build_pod_set(replicas=1), desired)

        assert exc_info.value.applied == [2, 3]
        assert isinstance(exc_info.value.cause, ReadinessTimeoutError)
        assert pod_sets.reconcile.await_count == 2

    @pytest.mark.asyncio
    async def test_apply_failure_reports_nothing_applied(self, fleet, pod_set_builder, cluster_resource, context):
        desired = pod_set_builder.build_role(cluster_resource(coordination=3), Role.COORDINATION)
        fleet.seed_fleet(desired, replicas=5)
        fleet.inject_failure(POD_SET, "apply")
        current = fleet.pod_set_store[("my-ns", desired.name)]

        with pytest.raises(ScalingError) as exc_info:
            await controller_for(fleet).shrink(context, current, desired)

        assert exc_info.value.applied == []
        assert exc_info.value.to_dict()["type"] == "ScalingError"


class TestGrowthReadinessGate:
    """Tests for the readiness check of existing members before growth."""

    @pytest.mark.asyncio
    async def test_unready_coordination_member_blocks_growth(
        self, fleet, pod_set_builder, cluster_resource, context
    ):
        """A member left unready by an earlier attempt must stop the next addition."""
        desired = pod_set_builder.build_role(cluster_resource(coordination=3), Role.COORDINATION)
        fleet.seed_fleet(desired, replicas=2)
        fleet.unready.add("my-cluster-coordination-1")
        current = fleet.pod_set_store[("my-ns", desired.name)]

        with pytest.raises(ScalingError) as exc_info:
            await controller_for(fleet).grow(context, current, desired)

        assert exc_info.value.applied == []
        assert isinstance(exc_info.value.cause, ReadinessTimeoutError)
        assert fleet.history(POD_SET, "apply") == []
        assert "my-cluster-coordination-2" not in fleet.pod_names("my-ns")

    @pytest.mark.asyncio
    async def test_compute_checks_highest_member_only(
        self, fleet, pod_set_builder, cluster_resource, context
    ):
        desired = pod_set_builder.build_role(cluster_resource(compute=4), Role.COMPUTE)
        fleet.seed_fleet(desired, replicas=3)
        fleet.unready.add("my-cluster-compute-0")
        current = fleet.pod_set_store[("my-ns", desired.name)]

        outcome = await controller_for(fleet).grow(context, current, desired)

        assert outcome.applied == (4,)
        assert [c.name for c in fleet.history("pod", "readiness")] == [
            "my-cluster-compute-2",
            "my-cluster-compute-3",
        ]

    @pytest.mark.asyncio
    async def test_no_check_when_not_growing(self, fleet, pod_set_builder, cluster_resource, context):
        desired = pod_set_builder.build_role(cluster_resource(coordination=3), Role.COORDINATION)
        fleet.seed_fleet(desired)
        fleet.unready.add("my-cluster-coordination-0")
        current = fleet.pod_set_store[("my-ns", desired.name)]

        outcome = await controller_for(fleet).grow(context, current, desired)

        assert outcome.applied == ()
        assert fleet.history("pod", "readiness") == []
