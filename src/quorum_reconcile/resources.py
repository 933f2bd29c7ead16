"""Resource accessor interfaces consumed by the reconciliation engine.

The engine only talks to the platform through these protocols. Two
implementations ship with the package: ``quorum_reconcile.kube`` (Kubernetes
REST API over httpx) and ``quorum_reconcile.memory`` (an in-memory fleet
simulator).
"""

from typing import Any, Generic, Protocol, TypeVar

from quorum_reconcile.state import OrdinalGroup, Pod, PodSet, ReconcileResult, Secret

T = TypeVar("T")


class ResourceOperator(Protocol, Generic[T]):
    """CRUD operations for one resource kind."""

    async def get(self, namespace: str, name: str) -> T | None:
        ...

    async def reconcile(self, namespace: str, name: str, desired: T | None) -> ReconcileResult:
        """Upsert ``desired``; ``None`` deletes the resource."""
        ...

    async def delete(self, namespace: str, name: str, cascade: bool = False) -> None:
        ...


class PodOperator(ResourceOperator[Pod], Protocol):
    """Pod operations, including readiness polling."""

    async def list(self, namespace: str, selector: dict[str, str]) -> list[Pod]:
        """Pods matching every label in ``selector``, ordered by ordinal."""
        ...

    async def readiness(
        self, namespace: str, name: str, poll_interval_ms: int, timeout_ms: int
    ) -> None:
        """Block until the pod is ready; raise ReadinessTimeoutError on expiry."""
        ...

    async def restart(
        self, namespace: str, name: str, poll_interval_ms: int, timeout_ms: int
    ) -> None:
        """Delete the pod and wait until its controller has recreated it."""
        ...


class ClusterOperator(Protocol):
    """Read access to the cluster custom resources."""

    async def get(self, namespace: str, name: str) -> dict[str, Any] | None:
        ...

    async def list(self, namespace: str) -> list[dict[str, Any]]:
        ...


class Resources(Protocol):
    """Bundle of accessors for every kind the engine touches."""

    clusters: ClusterOperator
    ordinal_groups: ResourceOperator[OrdinalGroup]
    pod_sets: ResourceOperator[PodSet]
    pods: PodOperator
    secrets: ResourceOperator[Secret]
