"""Migration between the ordinal group and the pod set.

Exactly one of the two representations is authoritative for a role,
selected by the fleet mode. The controller decides which writes move the
observed fleet to that representation and performs them create-before-delete,
so there is never a moment with no authoritative representation.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from quorum_reconcile.errors import MigrationPreconditionError
from quorum_reconcile.resources import ResourceOperator
from quorum_reconcile.state import (
    DesiredClusterSpec,
    FleetMode,
    ObservedState,
    OrdinalGroup,
    Pod,
    PodSet,
    ReconciliationContext,
)
from quorum_tools.metrics import FLEET_APPLIES, MIGRATION_ACTIONS

logger = logging.getLogger(__name__)


class MigrationStep(Enum):
    """Single write performed by a migration plan."""

    CREATE_POD_SET = "create-pod-set"
    CREATE_ORDINAL_GROUP = "create-ordinal-group"
    DELETE_ORDINAL_GROUP = "delete-ordinal-group"
    DELETE_POD_SET = "delete-pod-set"


@dataclass(frozen=True)
class MigrationPlan:
    """Ordered migration writes plus the definitions they create."""

    mode: FleetMode
    steps: tuple[MigrationStep, ...] = ()
    pod_set: PodSet | None = None
    ordinal_group: OrdinalGroup | None = None

    @property
    def is_noop(self) -> bool:
        return not self.steps

    @property
    def actions(self) -> list[str]:
        return [step.value for step in self.steps]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "mode": self.mode.value,
            "actions": self.actions,
            "pod_set": self.pod_set.to_dict() if self.pod_set else None,
            "ordinal_group": self.ordinal_group.to_dict() if self.ordinal_group else None,
        }


def adopt_pod_set(group: OrdinalGroup, pods: list[Pod], desired: DesiredClusterSpec) -> PodSet:
    """
    Pod set taking over the pods of an ordinal group.

    Running pods keep their ordinal and revision so the switch does not
    replace any of them. Ordinals without a running pod get a definition
    built from the ordinal group's own template.
    """
    by_ordinal = {pod.ordinal: pod for pod in pods}

    definitions = []
    for ordinal in range(group.replicas):
        pod = by_ordinal.get(ordinal)
        if pod is None:
            pod = group.build_pod(ordinal)
        definitions.append(pod.definition())

    return PodSet(
        name=desired.name,
        role=desired.role,
        revision=group.revision,
        pods=tuple(definitions),
    )


class MigrationController:
    """Moves a role's fleet to the representation selected by the mode."""

    def __init__(
        self,
        ordinal_groups: ResourceOperator[OrdinalGroup],
        pod_sets: ResourceOperator[PodSet],
    ):
        self.ordinal_groups = ordinal_groups
        self.pod_sets = pod_sets

    def decide(
        self,
        mode: FleetMode,
        observed: ObservedState,
        desired: DesiredClusterSpec,
    ) -> MigrationPlan:
        """Migration plan for the observed representations."""
        if observed.pod_set is not None and not observed.pod_set.is_valid():
            raise MigrationPreconditionError(
                f"Pod set {observed.pod_set.name} has duplicate ordinals {observed.pod_set.ordinals}"
            )

        if mode is FleetMode.POD_SET:
            return self._decide_pod_set(observed, desired)
        return self._decide_ordinal_group(observed, desired)

    def _decide_pod_set(self, observed: ObservedState, desired: DesiredClusterSpec) -> MigrationPlan:
        mode = FleetMode.POD_SET

        if observed.ordinal_group is None:
            if observed.pod_set is not None:
                return MigrationPlan(mode)
            self._check_fresh(observed, desired)
            return MigrationPlan(
                mode,
                steps=(MigrationStep.CREATE_POD_SET,),
                pod_set=desired.build_pod_set(),
            )

        # First reconciliation in declarative mode, or a resumed one
        if observed.pod_set is not None:
            return MigrationPlan(mode, steps=(MigrationStep.DELETE_ORDINAL_GROUP,))
        return MigrationPlan(
            mode,
            steps=(MigrationStep.CREATE_POD_SET, MigrationStep.DELETE_ORDINAL_GROUP),
            pod_set=adopt_pod_set(observed.ordinal_group, observed.pods, desired),
        )

    def _decide_ordinal_group(
        self, observed: ObservedState, desired: DesiredClusterSpec
    ) -> MigrationPlan:
        mode = FleetMode.ORDINAL_GROUP

        if observed.pod_set is None:
            if observed.ordinal_group is not None:
                return MigrationPlan(mode)
            self._check_fresh(observed, desired)
            return MigrationPlan(
                mode,
                steps=(MigrationStep.CREATE_ORDINAL_GROUP,),
                ordinal_group=desired.build_ordinal_group(),
            )

        if observed.ordinal_group is not None:
            return MigrationPlan(mode, steps=(MigrationStep.DELETE_POD_SET,))
        return MigrationPlan(
            mode,
            steps=(MigrationStep.CREATE_ORDINAL_GROUP, MigrationStep.DELETE_POD_SET),
            ordinal_group=desired.build_ordinal_group(replicas=observed.pod_set.size),
        )

    def _check_fresh(self, observed: ObservedState, desired: DesiredClusterSpec) -> None:
        if observed.pods:
            raise MigrationPreconditionError(
                f"{desired.name}: neither pod set nor ordinal group exists but "
                f"{len(observed.pods)} pods match its selector"
            )

    async def execute(
        self,
        context: ReconciliationContext,
        plan: MigrationPlan,
        observed: ObservedState,
        desired: DesiredClusterSpec,
    ) -> PodSet | OrdinalGroup:
        """Perform the plan in order and return the authoritative representation."""
        namespace = context.namespace
        pod_set = observed.pod_set
        ordinal_group = observed.ordinal_group

        for step in plan.steps:
            logger.info(f"{context}: migration step {step.value} for {desired.name}")
            if step is MigrationStep.CREATE_POD_SET:
                result = await self.pod_sets.reconcile(namespace, desired.name, plan.pod_set)
                pod_set = result.resource or plan.pod_set
            elif step is MigrationStep.CREATE_ORDINAL_GROUP:
                result = await self.ordinal_groups.reconcile(
                    namespace, desired.name, plan.ordinal_group
                )
                ordinal_group = result.resource or plan.ordinal_group
            elif step is MigrationStep.DELETE_ORDINAL_GROUP:
                # Orphan the pods so the pod set keeps running them
                await self.ordinal_groups.delete(namespace, desired.name, cascade=False)
                ordinal_group = None
            elif step is MigrationStep.DELETE_POD_SET:
                await self.pod_sets.delete(namespace, desired.name, cascade=False)
                pod_set = None
            MIGRATION_ACTIONS.labels(action=step.value).inc()

        authoritative = pod_set if plan.mode is FleetMode.POD_SET else ordinal_group
        if authoritative is None:
            raise MigrationPreconditionError(
                f"{desired.name}: no {plan.mode.value} exists after migration"
            )
        return authoritative

    async def sync(
        self,
        context: ReconciliationContext,
        current: PodSet | OrdinalGroup,
        desired: DesiredClusterSpec,
    ) -> PodSet | OrdinalGroup:
        """
        Re-apply the authoritative representation at its current size.

        Definitions move to the desired template; running pods are left alone
        and only pick the new template up when they are restarted.
        """
        if isinstance(current, PodSet):
            target = current.with_pods(
                [desired.build_pod(ordinal) for ordinal in current.ordinals],
                revision=desired.revision,
            )
            result = await self.pod_sets.reconcile(context.namespace, desired.name, target)
            kind = "pod-set"
        else:
            target = desired.build_ordinal_group(replicas=current.replicas)
            result = await self.ordinal_groups.reconcile(context.namespace, desired.name, target)
            kind = "ordinal-group"

        if result.changed:
            logger.info(f"{context}: {kind} {desired.name} {result.action.value}")
        FLEET_APPLIES.labels(role=desired.role.value, kind=kind, direction="sync").inc()
        return result.resource or target
