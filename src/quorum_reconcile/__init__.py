"""Quorum cluster fleet reconciliation module."""

from quorum_reconcile.errors import ReconcileError
from quorum_reconcile.memory import InMemoryCluster
from quorum_reconcile.reconciler import ReconciliationStateMachine
from quorum_reconcile.scheduler import ReconcileScheduler
from quorum_reconcile.state import DesiredClusterSpec, ReconciliationContext, Role

__all__ = [
    "DesiredClusterSpec",
    "InMemoryCluster",
    "ReconcileError",
    "ReconcileScheduler",
    "ReconciliationContext",
    "ReconciliationStateMachine",
    "Role",
]
