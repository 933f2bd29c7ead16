"""In-memory fleet simulator.

Implements every resource accessor against plain dictionaries and mimics
the two pod controllers closely enough to drive the reconciliation engine
end to end:

- Applying a pod set creates a pod for every definition that has no running
  pod, adopts orphaned pods it lists and removes owned pods it no longer
  lists. Running pods are never replaced by an apply.
- Applying an ordinal group creates the missing ordinals below ``replicas``
  from its template and removes owned ordinals at or above it.
- Deleting either with ``cascade=False`` orphans its pods.
- Deleting a pod makes its owner recreate it with a new uid.

Every write is recorded in ``calls`` so tests and the ``simulate`` command
can inspect exactly what an attempt did.
"""

import copy
import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from quorum_reconcile.errors import ReadinessTimeoutError, ReconcileError, TransientError
from quorum_reconcile.state import (
    DesiredClusterSpec,
    FleetMode,
    OrdinalGroup,
    Pod,
    PodSet,
    ReconcileResult,
    Secret,
)

logger = logging.getLogger(__name__)

POD_SET = "pod-set"
ORDINAL_GROUP = "ordinal-group"
POD = "pod"
SECRET = "secret"
CLUSTER = "cluster"

Key = tuple[str, str]


@dataclass(frozen=True)
class Call:
    """One recorded operation against the simulator."""

    kind: str
    verb: str
    name: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Failure:
    kind: str
    verb: str
    name: str | None
    error: ReconcileError

    def matches(self, kind: str, verb: str, name: str) -> bool:
        return self.kind == kind and self.verb == verb and self.name in (None, name)


class InMemoryCluster:
    """Simulated platform holding every kind the engine touches."""

    def __init__(self):
        self.cluster_resources: dict[Key, dict[str, Any]] = {}
        self.secret_store: dict[Key, Secret] = {}
        self.pod_set_store: dict[Key, PodSet] = {}
        self.ordinal_group_store: dict[Key, OrdinalGroup] = {}
        self.pod_store: dict[Key, Pod] = {}
        # pod key -> (kind, owner name)
        self.owners: dict[Key, tuple[str, str]] = {}
        self.unready: set[str] = set()
        self.calls: list[Call] = []
        self._failures: list[_Failure] = []
        self._uids = itertools.count(1)

        self.clusters = _ClusterAccessor(self)
        self.secrets = _SecretAccessor(self)
        self.pod_sets = _PodSetAccessor(self)
        self.ordinal_groups = _OrdinalGroupAccessor(self)
        self.pods = _PodAccessor(self)

    # Seeding (not recorded)

    def add_cluster(self, resource: dict[str, Any]) -> None:
        metadata = resource.get("metadata") or {}
        key = (metadata.get("namespace", "default"), metadata["name"])
        self.cluster_resources[key] = copy.deepcopy(resource)

    def add_secret(self, namespace: str, secret: Secret) -> None:
        self.secret_store[(namespace, secret.name)] = secret

    def seed_fleet(
        self,
        spec: DesiredClusterSpec,
        replicas: int | None = None,
        mode: FleetMode | None = None,
    ) -> None:
        """Create a running fleet for ``spec`` as if an earlier attempt had built it."""
        mode = mode or spec.mode
        key = (spec.namespace, spec.name)
        if mode is FleetMode.POD_SET:
            self.pod_set_store[key] = spec.build_pod_set(replicas)
            self._run_pod_set_controller(spec.namespace, spec.name)
        else:
            self.ordinal_group_store[key] = spec.build_ordinal_group(replicas)
            self._run_ordinal_group_controller(spec.namespace, spec.name)

    def annotate_pod(self, namespace: str, name: str, annotations: dict[str, str]) -> None:
        pod = self.pod_store[(namespace, name)]
        self.pod_store[(namespace, name)] = replace(
            pod, annotations={**pod.annotations, **annotations}
        )

    def inject_failure(
        self,
        kind: str,
        verb: str,
        name: str | None = None,
        error: ReconcileError | None = None,
    ) -> None:
        """Fail the next matching operation once."""
        error = error or TransientError(f"Injected failure: {verb} {kind} {name or '*'}")
        self._failures.append(_Failure(kind, verb, name, error))

    # Inspection

    def history(self, kind: str | None = None, verb: str | None = None) -> list[Call]:
        return [
            c for c in self.calls
            if (kind is None or c.kind == kind) and (verb is None or c.verb == verb)
        ]

    def applied_sizes(self, kind: str, name: str | None = None) -> list[int]:
        """Sizes of every apply of ``kind``, in order, noops included."""
        return [
            c.detail["size"] for c in self.history(kind, "apply")
            if name is None or c.name == name
        ]

    def pod_names(self, namespace: str) -> list[str]:
        pods = [p for (ns, _), p in self.pod_store.items() if ns == namespace]
        return [p.name for p in sorted(pods, key=lambda p: (p.role.value, p.ordinal))]

    def snapshot(self) -> dict[str, Any]:
        """Everything currently stored, for printing."""
        return {
            "pod_sets": [p.to_dict() for p in self.pod_set_store.values()],
            "ordinal_groups": [g.to_dict() for g in self.ordinal_group_store.values()],
            "pods": [
                {**p.to_dict(), "uid": p.uid, "ready": p.name not in self.unready}
                for p in sorted(self.pod_store.values(), key=lambda p: (p.role.value, p.ordinal))
            ],
        }

    # Internals shared by the accessors

    def _check(self, kind: str, verb: str, name: str) -> None:
        for failure in self._failures:
            if failure.matches(kind, verb, name):
                self._failures.remove(failure)
                logger.debug(f"Injecting {type(failure.error).__name__} into {verb} {kind} {name}")
                raise failure.error

    def _record(self, kind: str, verb: str, name: str, **detail: Any) -> None:
        self.calls.append(Call(kind, verb, name, detail))

    def _owner_alive(self, namespace: str, owner: tuple[str, str] | None) -> bool:
        if owner is None:
            return False
        kind, name = owner
        store = self.pod_set_store if kind == POD_SET else self.ordinal_group_store
        return (namespace, name) in store

    def _start_pod(self, namespace: str, pod: Pod, owner: tuple[str, str] | None) -> None:
        key = (namespace, pod.name)
        self.pod_store[key] = replace(pod, uid=f"uid-{next(self._uids)}")
        if owner is not None:
            self.owners[key] = owner

    def _adopt(self, namespace: str, pod_name: str, owner: tuple[str, str]) -> None:
        key = (namespace, pod_name)
        if not self._owner_alive(namespace, self.owners.get(key)):
            self.owners[key] = owner

    def _owned_by(self, namespace: str, owner: tuple[str, str]) -> list[Key]:
        return [k for k, o in self.owners.items() if k[0] == namespace and o == owner]

    def _remove_pod(self, key: Key) -> None:
        self.pod_store.pop(key, None)
        self.owners.pop(key, None)

    def _run_pod_set_controller(self, namespace: str, name: str) -> None:
        pod_set = self.pod_set_store[(namespace, name)]
        owner = (POD_SET, name)
        listed = {p.name for p in pod_set.pods}

        for definition in pod_set.pods:
            if (namespace, definition.name) in self.pod_store:
                self._adopt(namespace, definition.name, owner)
            else:
                self._start_pod(namespace, definition, owner)

        for key in self._owned_by(namespace, owner):
            if key[1] not in listed:
                self._remove_pod(key)

    def _run_ordinal_group_controller(self, namespace: str, name: str) -> None:
        group = self.ordinal_group_store[(namespace, name)]
        owner = (ORDINAL_GROUP, name)

        for ordinal in range(group.replicas):
            pod = group.build_pod(ordinal)
            if (namespace, pod.name) in self.pod_store:
                self._adopt(namespace, pod.name, owner)
            else:
                self._start_pod(namespace, pod, owner)

        for key in self._owned_by(namespace, owner):
            if self.pod_store[key].ordinal >= group.replicas:
                self._remove_pod(key)

    def _recreate(self, namespace: str, pod: Pod, owner: tuple[str, str] | None) -> None:
        if not self._owner_alive(namespace, owner):
            return
        kind, name = owner
        if kind == POD_SET:
            pod_set = self.pod_set_store[(namespace, name)]
            definition = next((p for p in pod_set.pods if p.name == pod.name), None)
            if definition is not None:
                self._start_pod(namespace, definition, owner)
        else:
            group = self.ordinal_group_store[(namespace, name)]
            if pod.ordinal < group.replicas:
                self._start_pod(namespace, group.build_pod(pod.ordinal), owner)


class _FleetAccessor:
    """Shared upsert logic for pod sets and ordinal groups."""

    kind = ""

    def __init__(self, cluster: InMemoryCluster):
        self.cluster = cluster

    @property
    def store(self) -> dict:
        raise NotImplementedError

    def _run_controller(self, namespace: str, name: str) -> None:
        raise NotImplementedError

    @staticmethod
    def _size(resource: Any) -> int:
        raise NotImplementedError

    async def get(self, namespace: str, name: str):
        self.cluster._check(self.kind, "get", name)
        return self.store.get((namespace, name))

    async def reconcile(self, namespace: str, name: str, desired) -> ReconcileResult:
        if desired is None:
            existed = (namespace, name) in self.store
            await self.delete(namespace, name, cascade=True)
            return ReconcileResult.deleted() if existed else ReconcileResult.noop(None)

        self.cluster._check(self.kind, "apply", name)
        key = (namespace, name)
        existing = self.store.get(key)
        if existing is None:
            result = ReconcileResult.created(desired)
            self.store[key] = desired
        elif existing.signature() == desired.signature():
            result = ReconcileResult.noop(existing)
        else:
            result = ReconcileResult.updated(desired)
            self.store[key] = desired

        self._run_controller(namespace, name)
        self.cluster._record(
            self.kind, "apply", name, action=result.action.value, size=self._size(result.resource)
        )
        return result

    async def delete(self, namespace: str, name: str, cascade: bool = False) -> None:
        self.cluster._check(self.kind, "delete", name)
        key = (namespace, name)
        if self.store.pop(key, None) is None:
            return

        for pod_key in self.cluster._owned_by(namespace, (self.kind, name)):
            if cascade:
                self.cluster._remove_pod(pod_key)
            else:
                del self.cluster.owners[pod_key]
        self.cluster._record(self.kind, "delete", name, cascade=cascade)


class _PodSetAccessor(_FleetAccessor):
    kind = POD_SET

    @property
    def store(self) -> dict[Key, PodSet]:
        return self.cluster.pod_set_store

    def _run_controller(self, namespace: str, name: str) -> None:
        self.cluster._run_pod_set_controller(namespace, name)

    @staticmethod
    def _size(resource: PodSet) -> int:
        return resource.size


class _OrdinalGroupAccessor(_FleetAccessor):
    kind = ORDINAL_GROUP

    @property
    def store(self) -> dict[Key, OrdinalGroup]:
        return self.cluster.ordinal_group_store

    def _run_controller(self, namespace: str, name: str) -> None:
        self.cluster._run_ordinal_group_controller(namespace, name)

    @staticmethod
    def _size(resource: OrdinalGroup) -> int:
        return resource.replicas


class _PodAccessor:
    def __init__(self, cluster: InMemoryCluster):
        self.cluster = cluster

    async def get(self, namespace: str, name: str) -> Pod | None:
        self.cluster._check(POD, "get", name)
        return self.cluster.pod_store.get((namespace, name))

    async def reconcile(self, namespace: str, name: str, desired: Pod | None) -> ReconcileResult:
        key = (namespace, name)
        if desired is None:
            existed = key in self.cluster.pod_store
            await self.delete(namespace, name)
            return ReconcileResult.deleted() if existed else ReconcileResult.noop(None)

        self.cluster._check(POD, "apply", name)
        existing = self.cluster.pod_store.get(key)
        if existing is not None:
            return ReconcileResult.noop(existing)
        self.cluster._start_pod(namespace, desired, self.cluster.owners.get(key))
        self.cluster._record(POD, "apply", name, action="created")
        return ReconcileResult.created(self.cluster.pod_store[key])

    async def delete(self, namespace: str, name: str, cascade: bool = False) -> None:
        self.cluster._check(POD, "delete", name)
        key = (namespace, name)
        pod = self.cluster.pod_store.pop(key, None)
        if pod is None:
            return
        owner = self.cluster.owners.pop(key, None)
        self.cluster._record(POD, "delete", name)
        self.cluster._recreate(namespace, pod, owner)

    async def readiness(
        self, namespace: str, name: str, poll_interval_ms: int, timeout_ms: int
    ) -> None:
        self.cluster._check(POD, "readiness", name)
        self.cluster._record(POD, "readiness", name)
        if name in self.cluster.unready or (namespace, name) not in self.cluster.pod_store:
            raise ReadinessTimeoutError(name, timeout_ms)

    async def restart(
        self, namespace: str, name: str, poll_interval_ms: int, timeout_ms: int
    ) -> None:
        self.cluster._check(POD, "restart", name)
        key = (namespace, name)
        before = self.cluster.pod_store.get(key)
        if before is not None:
            owner = self.cluster.owners.pop(key, None)
            del self.cluster.pod_store[key]
            self.cluster._recreate(namespace, before, owner)
        self.cluster._record(POD, "restart", name)

        after = self.cluster.pod_store.get(key)
        if after is None or (before is not None and after.uid == before.uid):
            raise ReadinessTimeoutError(name, timeout_ms)

    async def list(self, namespace: str, selector: dict[str, str]) -> list[Pod]:
        self.cluster._check(POD, "list", "")
        pods = [
            pod for (ns, _), pod in self.cluster.pod_store.items()
            if ns == namespace and all(pod.labels.get(k) == v for k, v in selector.items())
        ]
        return sorted(pods, key=lambda p: p.ordinal)


class _SecretAccessor:
    def __init__(self, cluster: InMemoryCluster):
        self.cluster = cluster

    async def get(self, namespace: str, name: str) -> Secret | None:
        self.cluster._check(SECRET, "get", name)
        return self.cluster.secret_store.get((namespace, name))

    async def reconcile(self, namespace: str, name: str, desired: Secret | None) -> ReconcileResult:
        key = (namespace, name)
        existing = self.cluster.secret_store.get(key)
        if desired is None:
            await self.delete(namespace, name)
            return ReconcileResult.deleted() if existing else ReconcileResult.noop(None)
        if existing == desired:
            return ReconcileResult.noop(existing)
        self.cluster.secret_store[key] = desired
        self.cluster._record(SECRET, "apply", name)
        return ReconcileResult.created(desired) if existing is None else ReconcileResult.updated(desired)

    async def delete(self, namespace: str, name: str, cascade: bool = False) -> None:
        if self.cluster.secret_store.pop((namespace, name), None) is not None:
            self.cluster._record(SECRET, "delete", name)


class _ClusterAccessor:
    def __init__(self, cluster: InMemoryCluster):
        self.cluster = cluster

    async def get(self, namespace: str, name: str) -> dict[str, Any] | None:
        self.cluster._check(CLUSTER, "get", name)
        resource = self.cluster.cluster_resources.get((namespace, name))
        return copy.deepcopy(resource) if resource is not None else None

    async def list(self, namespace: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(r) for (ns, _), r in sorted(self.cluster.cluster_resources.items())
            if ns == namespace
        ]
