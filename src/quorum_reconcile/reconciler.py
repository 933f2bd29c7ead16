"""Fleet reconciliation state machine.

One attempt runs a fixed list of stages. The first two are shared by both
roles, the remaining six run for the coordination service first and for the
compute cluster second:

    refresh -> describe ->
    fetch_ordinal_group -> fetch_pod_set -> migrate ->
    scale_down -> rolling_restart -> scale_up

Each stage takes the accumulated ``ReconciliationState`` and returns it.
The first ``ReconcileError`` ends the attempt; nothing is rolled back, the
next attempt re-reads the fleet and continues from wherever it stopped.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Protocol

from quorum_reconcile.errors import InvalidDesiredStateError, ReconcileError
from quorum_reconcile.evaluator import RestartEvaluator, RestartSignals
from quorum_reconcile.migration import MigrationController
from quorum_reconcile.model import CaCertificateRefresher, ClusterModelBuilder, DerivedMaterial
from quorum_reconcile.resources import Resources
from quorum_reconcile.rolling import RollingRestartExecutor
from quorum_reconcile.scaling import Fleet, ScalingController, fleet_size
from quorum_reconcile.state import (
    AttemptResult,
    DesiredClusterSpec,
    ObservedState,
    PodSet,
    ReconciliationContext,
    RestartOutcome,
    Role,
)
from quorum_tools.config import OperatorConfig
from quorum_tools.logging_config import reset_reconciliation, set_reconciliation
from quorum_tools.metrics import RECONCILE_ATTEMPTS, RECONCILES_IN_PROGRESS, STAGE_LATENCY

logger = logging.getLogger(__name__)

# Coordination first: the compute cluster depends on a healthy quorum
ROLE_ORDER = (Role.COORDINATION, Role.COMPUTE)


@dataclass
class ReconciliationState:
    """State accumulated by the stages of one attempt."""

    context: ReconciliationContext
    resource: dict[str, Any] | None = None
    derived: DerivedMaterial = field(default_factory=DerivedMaterial)
    desired: dict[Role, DesiredClusterSpec] = field(default_factory=dict)
    observed: dict[Role, ObservedState] = field(default_factory=dict)
    fleets: dict[Role, Fleet] = field(default_factory=dict)
    restarts: dict[Role, RestartOutcome] = field(default_factory=dict)
    migration_actions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StageEvent:
    """Structured record emitted after every stage."""

    context: ReconciliationContext
    stage: str
    role: Role | None
    status: str  # "ok" or "failed"
    duration_s: float
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "reconciliation": str(self.context),
            "stage": self.stage,
            "role": self.role.value if self.role else None,
            "status": self.status,
            "duration_ms": round(self.duration_s * 1000, 2),
            "detail": self.detail,
        }


class StatusWriter(Protocol):
    """Receives the outcome of every attempt."""

    async def write(self, result: AttemptResult) -> None:
        ...


class InMemoryStatusWriter:
    """Keeps the latest attempt result per cluster."""

    def __init__(self):
        self.results: dict[tuple[str, str], AttemptResult] = {}

    async def write(self, result: AttemptResult) -> None:
        self.results[result.context.key] = result

    def get(self, namespace: str, name: str) -> AttemptResult | None:
        return self.results.get((namespace, name))

    def all(self) -> list[AttemptResult]:
        return [self.results[key] for key in sorted(self.results)]


Stage = Callable[[ReconciliationState], Awaitable[ReconciliationState]]
EvaluatorFactory = Callable[[str, RestartSignals], Callable]
Refresher = Callable[[ReconciliationContext], Awaitable[DerivedMaterial]]


class ReconciliationStateMachine:
    """Drives a cluster's fleets toward the desired state, one attempt at a time."""

    def __init__(
        self,
        resources: Resources,
        model_builder: ClusterModelBuilder | None = None,
        migration: MigrationController | None = None,
        scaling: ScalingController | None = None,
        rolling: RollingRestartExecutor | None = None,
        evaluator_factory: EvaluatorFactory = RestartEvaluator,
        refresher: Refresher | None = None,
        status_writer: StatusWriter | None = None,
        on_event: Callable[[StageEvent], None] | None = None,
        poll_interval_ms: int = 1_000,
    ):
        self.resources = resources
        self.model_builder = model_builder or ClusterModelBuilder()
        self.migration = migration or MigrationController(
            resources.ordinal_groups, resources.pod_sets
        )
        self.scaling = scaling or ScalingController(
            resources.pod_sets,
            resources.ordinal_groups,
            resources.pods,
            poll_interval_ms=poll_interval_ms,
        )
        self.rolling = rolling or RollingRestartExecutor(
            resources.pods, poll_interval_ms=poll_interval_ms
        )
        self.evaluator_factory = evaluator_factory
        self.refresher = refresher or CaCertificateRefresher(resources.secrets)
        self.status_writer = status_writer
        self.on_event = on_event

    @classmethod
    def from_config(
        cls, resources: Resources, config: OperatorConfig, **kwargs: Any
    ) -> "ReconciliationStateMachine":
        """State machine wired with the operator configuration."""
        return cls(
            resources,
            model_builder=ClusterModelBuilder(feature_gates=config.gates),
            poll_interval_ms=config.poll_interval_ms,
            **kwargs,
        )

    def stages(self) -> list[tuple[str, Role | None, Stage]]:
        """Ordered stage list for one attempt."""
        stages: list[tuple[str, Role | None, Stage]] = [
            ("refresh", None, self._refresh),
            ("describe", None, self._describe),
        ]
        for role in ROLE_ORDER:
            stages.extend(
                [
                    ("fetch_ordinal_group", role, partial(self._fetch_ordinal_group, role)),
                    ("fetch_pod_set", role, partial(self._fetch_pod_set, role)),
                    ("migrate", role, partial(self._migrate, role)),
                    ("scale_down", role, partial(self._scale_down, role)),
                    ("rolling_restart", role, partial(self._rolling_restart, role)),
                    ("scale_up", role, partial(self._scale_up, role)),
                ]
            )
        return stages

    async def reconcile(self, context: ReconciliationContext) -> AttemptResult:
        """Run one attempt and report its outcome."""
        token = set_reconciliation(str(context))
        state = ReconciliationState(context=context)
        result = AttemptResult(context=context, success=True)
        RECONCILES_IN_PROGRESS.inc()
        logger.info(f"{context}: reconciliation started")

        try:
            for name, role, stage in self.stages():
                label = f"{role.value}/{name}" if role else name
                start = time.monotonic()
                try:
                    state = await stage(state)
                except ReconcileError as e:
                    self._emit(StageEvent(context, name, role, "failed", time.monotonic() - start, e.to_dict()))
                    logger.warning(f"{context}: stage {label} failed: {e}")
                    result.success = False
                    result.failed_stage = label
                    result.error = e.to_dict()
                    break
                self._emit(StageEvent(context, name, role, "ok", time.monotonic() - start))
                result.completed_stages.append(label)
        finally:
            RECONCILES_IN_PROGRESS.dec()
            reset_reconciliation(token)

        self._summarize(state, result)
        RECONCILE_ATTEMPTS.labels(result="success" if result.success else "failure").inc()
        logger.info(
            f"{context}: reconciliation {'succeeded' if result.success else 'failed'} "
            f"after {len(result.completed_stages)} stages"
        )

        if self.status_writer is not None:
            await self.status_writer.write(result)
        return result

    async def preview(self, context: ReconciliationContext) -> dict[str, Any]:
        """
        What an attempt would do right now, per role, without writing anything.

        Runs only the read stages and asks the migration controller and the
        restart evaluator for their decisions. Errors propagate to the caller.
        """
        state = ReconciliationState(context=context)
        state = await self._refresh(state)
        state = await self._describe(state)
        signals = RestartSignals(ca_cert_generation=state.derived.ca_cert_generation)

        roles: dict[str, Any] = {}
        for role in ROLE_ORDER:
            state = await self._fetch_ordinal_group(role, state)
            state = await self._fetch_pod_set(role, state)
            desired = state.desired[role]
            observed = state.observed[role]

            plan = self.migration.decide(desired.mode, observed, desired)
            evaluator = self.evaluator_factory(desired.revision, signals)
            restarts = {pod.name: reasons for pod in observed.pods if (reasons := evaluator(pod))}
            current = observed.pod_set or observed.ordinal_group
            current_replicas = fleet_size(current) if current is not None else len(observed.pods)

            roles[role.value] = {
                "name": desired.name,
                "mode": desired.mode.value,
                "desired_replicas": desired.replicas,
                "current_replicas": current_replicas,
                "revision": desired.revision,
                "migration_actions": plan.actions,
                "restarts": restarts,
                "in_sync": plan.is_noop and not restarts and current_replicas == desired.replicas,
            }
        return roles

    def _emit(self, event: StageEvent) -> None:
        role = event.role.value if event.role else "-"
        STAGE_LATENCY.labels(stage=event.stage, role=role, status=event.status).observe(event.duration_s)
        logger.debug("Stage completed", extra=event.to_dict())
        if self.on_event is not None:
            self.on_event(event)

    def _summarize(self, state: ReconciliationState, result: AttemptResult) -> None:
        for role, observed in state.observed.items():
            fleet = state.fleets.get(role)
            result.replicas[role.value] = fleet_size(fleet) if fleet is not None else len(observed.pods)
        for outcome in state.restarts.values():
            result.restart_reasons.update(outcome.reasons)
        result.migration_actions = list(state.migration_actions)
        result.timestamp = datetime.now(timezone.utc).isoformat()

    # Stages

    async def _refresh(self, state: ReconciliationState) -> ReconciliationState:
        state.derived = await self.refresher(state.context)
        return state

    async def _describe(self, state: ReconciliationState) -> ReconciliationState:
        context = state.context
        resource = await self.resources.clusters.get(context.namespace, context.name)
        if resource is None:
            raise InvalidDesiredStateError(f"Cluster {context.namespace}/{context.name} not found")
        state.resource = resource
        state.desired = self.model_builder.build(resource, state.derived)
        return state

    async def _fetch_ordinal_group(self, role: Role, state: ReconciliationState) -> ReconciliationState:
        desired = state.desired[role]
        group = await self.resources.ordinal_groups.get(state.context.namespace, desired.name)
        state.observed[role] = ObservedState(ordinal_group=group)
        return state

    async def _fetch_pod_set(self, role: Role, state: ReconciliationState) -> ReconciliationState:
        desired = state.desired[role]
        namespace = state.context.namespace
        observed = state.observed[role]
        observed.pod_set = await self.resources.pod_sets.get(namespace, desired.name)
        observed.pods = sorted(
            await self.resources.pods.list(namespace, desired.selector),
            key=lambda p: p.ordinal,
        )
        return state

    async def _migrate(self, role: Role, state: ReconciliationState) -> ReconciliationState:
        desired = state.desired[role]
        observed = state.observed[role]

        plan = self.migration.decide(desired.mode, observed, desired)
        fleet = await self.migration.execute(state.context, plan, observed, desired)
        state.fleets[role] = await self.migration.sync(state.context, fleet, desired)
        state.migration_actions.extend(f"{role.value}/{action}" for action in plan.actions)
        return state

    async def _scale_down(self, role: Role, state: ReconciliationState) -> ReconciliationState:
        desired = state.desired[role]
        fleet = state.fleets[role]
        if fleet_size(fleet) > desired.replicas:
            outcome = await self.scaling.shrink(state.context, fleet, desired)
            state.fleets[role] = outcome.resource
        return state

    async def _rolling_restart(self, role: Role, state: ReconciliationState) -> ReconciliationState:
        desired = state.desired[role]
        fleet = state.fleets[role]
        if isinstance(fleet, PodSet):
            members = set(fleet.ordinals)
        else:
            members = set(range(fleet.replicas))
        pods = [p for p in state.observed[role].pods if p.ordinal in members]

        signals = RestartSignals(ca_cert_generation=state.derived.ca_cert_generation)
        evaluator = self.evaluator_factory(desired.revision, signals)
        state.restarts[role] = await self.rolling.roll(state.context, role, pods, evaluator)
        return state

    async def _scale_up(self, role: Role, state: ReconciliationState) -> ReconciliationState:
        desired = state.desired[role]
        fleet = state.fleets[role]
        if fleet_size(fleet) < desired.replicas:
            outcome = await self.scaling.grow(state.context, fleet, desired)
            state.fleets[role] = outcome.resource
        return state
