"""Incremental scaling.

Fleets grow and shrink one pod per write. Growth waits for the new pod to
report readiness before the next one is added, so a quorum never has more
than one member joining or leaving at a time. Before the first addition the
existing members must be ready too: all of them for a quorum-sensitive role,
the highest ordinal otherwise. A pod left unready by an interrupted attempt
therefore blocks further growth.
"""

import logging

from quorum_reconcile.errors import ReconcileError, ScalingError
from quorum_reconcile.resources import PodOperator, ResourceOperator
from quorum_reconcile.state import (
    DesiredClusterSpec,
    OrdinalGroup,
    PodSet,
    ReconciliationContext,
    ScaleOutcome,
    pod_name,
)
from quorum_tools.metrics import FLEET_APPLIES

logger = logging.getLogger(__name__)

Fleet = PodSet | OrdinalGroup


def fleet_size(fleet: Fleet) -> int:
    if isinstance(fleet, PodSet):
        return fleet.size
    return fleet.replicas


class ScalingController:
    """Converges a fleet's size to the desired replica count."""

    def __init__(
        self,
        pod_sets: ResourceOperator[PodSet],
        ordinal_groups: ResourceOperator[OrdinalGroup],
        pods: PodOperator,
        poll_interval_ms: int = 1_000,
    ):
        self.pod_sets = pod_sets
        self.ordinal_groups = ordinal_groups
        self.pods = pods
        self.poll_interval_ms = poll_interval_ms

    async def scale(
        self, context: ReconciliationContext, current: Fleet, desired: DesiredClusterSpec
    ) -> ScaleOutcome:
        """Shrink or grow ``current`` until it holds ``desired.replicas`` pods."""
        down = await self.shrink(context, current, desired)
        up = await self.grow(context, down.resource, desired)
        return ScaleOutcome(applied=down.applied + up.applied, resource=up.resource)

    async def shrink(
        self, context: ReconciliationContext, current: Fleet, desired: DesiredClusterSpec
    ) -> ScaleOutcome:
        """Remove the highest ordinal, one write at a time."""
        applied: list[int] = []
        try:
            while fleet_size(current) > desired.replicas:
                if isinstance(current, PodSet):
                    removed = current.pods[-1].name
                    target = current.with_pods(current.pods[:-1])
                else:
                    removed = pod_name(desired.cluster, desired.role, current.replicas - 1)
                    target = current.with_replicas(current.replicas - 1)

                logger.info(f"{context}: scaling {desired.name} down, removing {removed}")
                current = await self._apply(context, target, desired, "down")
                applied.append(fleet_size(current))
        except ReconcileError as e:
            raise ScalingError(
                f"Scaling {desired.name} down stopped after {len(applied)} steps: {e}",
                applied,
                e,
            ) from e

        return ScaleOutcome(applied=tuple(applied), resource=current)

    async def grow(
        self, context: ReconciliationContext, current: Fleet, desired: DesiredClusterSpec
    ) -> ScaleOutcome:
        """Add the next ordinal, waiting for it to be ready before the next one."""
        applied: list[int] = []
        try:
            if fleet_size(current) < desired.replicas:
                for name in self._members_to_check(current, desired):
                    await self.pods.readiness(
                        context.namespace,
                        name,
                        self.poll_interval_ms,
                        context.operation_timeout_ms,
                    )

            while fleet_size(current) < desired.replicas:
                if isinstance(current, PodSet):
                    pod = desired.build_pod(current.next_ordinal())
                    added = pod.name
                    target = current.with_pods([*current.pods, pod])
                else:
                    added = pod_name(desired.cluster, desired.role, current.replicas)
                    target = desired.build_ordinal_group(replicas=current.replicas + 1)

                logger.info(f"{context}: scaling {desired.name} up, adding {added}")
                current = await self._apply(context, target, desired, "up")
                applied.append(fleet_size(current))

                await self.pods.readiness(
                    context.namespace,
                    added,
                    self.poll_interval_ms,
                    context.operation_timeout_ms,
                )
        except ReconcileError as e:
            raise ScalingError(
                f"Scaling {desired.name} up stopped after {len(applied)} steps: {e}",
                applied,
                e,
            ) from e

        return ScaleOutcome(applied=tuple(applied), resource=current)

    @staticmethod
    def _members_to_check(current: Fleet, desired: DesiredClusterSpec) -> list[str]:
        """Existing members that must be ready before growth starts."""
        if isinstance(current, PodSet):
            names = [p.name for p in current.pods]
        else:
            names = [pod_name(desired.cluster, desired.role, i) for i in range(current.replicas)]
        if desired.role.quorum_sensitive:
            return names
        return names[-1:]

    async def _apply(
        self,
        context: ReconciliationContext,
        target: Fleet,
        desired: DesiredClusterSpec,
        direction: str,
    ) -> Fleet:
        if isinstance(target, PodSet):
            result = await self.pod_sets.reconcile(context.namespace, target.name, target)
            kind = "pod-set"
        else:
            result = await self.ordinal_groups.reconcile(context.namespace, target.name, target)
            kind = "ordinal-group"

        FLEET_APPLIES.labels(role=desired.role.value, kind=kind, direction=direction).inc()
        return result.resource or target
