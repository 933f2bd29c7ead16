"""Restart evaluation.

Pure predicate deciding why a pod needs a restart. An empty verdict means
the pod already matches the desired state.
"""

from dataclasses import dataclass
from typing import Callable

from quorum_reconcile.state import (
    CA_CERT_GENERATION_ANNOTATION,
    MANUAL_RESTART_ANNOTATION,
    Pod,
)

REASON_OLD_REVISION = "Pod has old revision"
REASON_MANUAL_RESTART = "Pod was manually annotated to be rolled"
REASON_CA_CERT_CHANGED = "Cluster CA certificate has changed"

RestartVerdict = list[str]


@dataclass(frozen=True)
class RestartSignals:
    """Inputs besides the revision that can force a restart."""

    ca_cert_generation: int | None = None


RestartCheck = Callable[[Pod, str, RestartSignals], str | None]


def old_revision(pod: Pod, desired_revision: str, signals: RestartSignals) -> str | None:
    if pod.revision != desired_revision:
        return REASON_OLD_REVISION
    return None


def manual_restart(pod: Pod, desired_revision: str, signals: RestartSignals) -> str | None:
    if pod.annotations.get(MANUAL_RESTART_ANNOTATION, "").lower() == "true":
        return REASON_MANUAL_RESTART
    return None


def ca_cert_rotated(pod: Pod, desired_revision: str, signals: RestartSignals) -> str | None:
    if signals.ca_cert_generation is None:
        return None
    current = pod.annotations.get(CA_CERT_GENERATION_ANNOTATION, "0")
    if current != str(signals.ca_cert_generation):
        return REASON_CA_CERT_CHANGED
    return None


DEFAULT_CHECKS: tuple[RestartCheck, ...] = (old_revision, manual_restart, ca_cert_rotated)


def needs_restart(
    pod: Pod,
    desired_revision: str,
    signals: RestartSignals | None = None,
    checks: tuple[RestartCheck, ...] = DEFAULT_CHECKS,
) -> RestartVerdict:
    """Ordered restart reasons for one pod."""
    signals = signals or RestartSignals()
    reasons = []
    for check in checks:
        reason = check(pod, desired_revision, signals)
        if reason:
            reasons.append(reason)
    return reasons


class RestartEvaluator:
    """
    Restart predicate bound to one attempt's desired revision.

    Calling the evaluator with a pod returns its verdict, so it can be
    handed to the rolling restart executor as a plain callable.
    """

    def __init__(
        self,
        desired_revision: str,
        signals: RestartSignals | None = None,
        checks: tuple[RestartCheck, ...] = DEFAULT_CHECKS,
    ):
        self.desired_revision = desired_revision
        self.signals = signals or RestartSignals()
        self.checks = checks

    def __call__(self, pod: Pod) -> RestartVerdict:
        return needs_restart(pod, self.desired_revision, self.signals, self.checks)

    def __repr__(self) -> str:
        return f"RestartEvaluator(revision={self.desired_revision!r}, signals={self.signals!r})"
