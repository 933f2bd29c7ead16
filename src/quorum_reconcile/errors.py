"""Error taxonomy for reconciliation attempts.

Every failure an attempt can report derives from ``ReconcileError``. The
state machine turns these into a failed ``AttemptResult``; anything else is
a programming error and propagates.
"""

from typing import Any


class ReconcileError(Exception):
    """Base class for failures that abort a reconciliation attempt."""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"type": type(self).__name__, "message": str(self)}


class TransientError(ReconcileError):
    """Timeout, conflict or temporary unavailability of the platform API."""


class ReadinessTimeoutError(ReconcileError):
    """A pod did not become ready within the operation timeout."""

    def __init__(self, pod_name: str, timeout_ms: int):
        super().__init__(f"Pod {pod_name} did not become ready within {timeout_ms}ms")
        self.pod_name = pod_name
        self.timeout_ms = timeout_ms


class InvalidDesiredStateError(ReconcileError):
    """The desired description is malformed or contradictory."""


class MigrationPreconditionError(ReconcileError):
    """Observed fleet representations do not allow a safe decision."""


class ScalingError(ReconcileError):
    """Scaling stopped part way. ``applied`` holds the sizes already written."""

    def __init__(self, message: str, applied: list[int], cause: Exception | None = None):
        super().__init__(message)
        self.applied = list(applied)
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["applied"] = self.applied
        return data


class RollingRestartError(ReconcileError):
    """A rolling restart stopped part way."""

    def __init__(
        self,
        message: str,
        restarted: list[str],
        pending: list[str],
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.restarted = list(restarted)
        self.pending = list(pending)
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["restarted"] = self.restarted
        data["pending"] = self.pending
        return data
