"""
Prometheus Metrics for Fleet Reconciliation

Tracks:
- Reconciliation attempt counts by result
- Per-stage latency
- Pod set / ordinal group applies by direction
- Pod restarts by reason
- Migration actions
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response


# =============================================================================
# Attempt Metrics
# =============================================================================

RECONCILE_ATTEMPTS = Counter(
    "quorum_reconcile_attempts_total",
    "Total reconciliation attempts",
    ["result"]
)

RECONCILES_IN_PROGRESS = Gauge(
    "quorum_reconcile_in_progress",
    "Number of reconciliation attempts currently running"
)

STAGE_LATENCY = Histogram(
    "quorum_reconcile_stage_seconds",
    "Reconciliation stage latency in seconds",
    ["stage", "role", "status"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0]
)


# =============================================================================
# Fleet Metrics
# =============================================================================

# direction is one of sync, up, down
FLEET_APPLIES = Counter(
    "quorum_reconcile_fleet_applies_total",
    "Pod set and ordinal group writes",
    ["role", "kind", "direction"]
)

POD_RESTARTS = Counter(
    "quorum_reconcile_pod_restarts_total",
    "Pods restarted by the rolling restart executor",
    ["role", "reason"]
)

MIGRATION_ACTIONS = Counter(
    "quorum_reconcile_migration_actions_total",
    "Writes performed while migrating between fleet representations",
    ["action"]
)


def metrics_response() -> Response:
    """Prometheus exposition of every registered metric."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
