"""Rolling restarts.

Pods are evaluated in ascending ordinal order and restarted one at a time.
Each restart waits for the replacement pod to become ready before the next
pod is considered. For a quorum-sensitive role every other member must be
ready before a pod is taken down, including members an interrupted attempt
already restarted.
"""

import logging
from typing import Callable

from quorum_reconcile.errors import ReconcileError, RollingRestartError
from quorum_reconcile.resources import PodOperator
from quorum_reconcile.state import Pod, ReconciliationContext, RestartOutcome, Role
from quorum_tools.metrics import POD_RESTARTS

logger = logging.getLogger(__name__)

RestartPredicate = Callable[[Pod], list[str]]


class RollingRestartExecutor:
    """Applies restart verdicts pod by pod."""

    def __init__(self, pods: PodOperator, poll_interval_ms: int = 1_000):
        self.pods = pods
        self.poll_interval_ms = poll_interval_ms

    async def roll(
        self,
        context: ReconciliationContext,
        role: Role,
        pods: list[Pod],
        needs_restart: RestartPredicate,
    ) -> RestartOutcome:
        """Restart every pod with a non-empty verdict, lowest ordinal first."""
        ordered = sorted(pods, key=lambda p: p.ordinal)
        outcome = RestartOutcome()
        confirmed: set[str] = set()

        for index, pod in enumerate(ordered):
            reasons = needs_restart(pod)
            if not reasons:
                continue

            outcome.reasons[pod.name] = reasons
            logger.info(f"{context}: restarting {pod.name} ({role.value}): {', '.join(reasons)}")
            try:
                if role.quorum_sensitive:
                    for other in ordered:
                        if other.name == pod.name or other.name in confirmed:
                            continue
                        await self.pods.readiness(
                            context.namespace,
                            other.name,
                            self.poll_interval_ms,
                            context.operation_timeout_ms,
                        )
                        confirmed.add(other.name)
                await self.pods.restart(
                    context.namespace,
                    pod.name,
                    self.poll_interval_ms,
                    context.operation_timeout_ms,
                )
                await self.pods.readiness(
                    context.namespace,
                    pod.name,
                    self.poll_interval_ms,
                    context.operation_timeout_ms,
                )
            except ReconcileError as e:
                outcome.pending = [p.name for p in ordered[index:]]
                raise RollingRestartError(
                    f"Rolling restart of {role.value} stopped at {pod.name}: {e}",
                    outcome.restarted,
                    outcome.pending,
                    e,
                ) from e

            outcome.restarted.append(pod.name)
            confirmed.add(pod.name)
            for reason in reasons:
                POD_RESTARTS.labels(role=role.value, reason=reason).inc()

        return outcome
