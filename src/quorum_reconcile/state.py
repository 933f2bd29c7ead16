"""State definitions for fleet reconciliation."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

# Pod metadata keys shared by every resource accessor
CLUSTER_LABEL = "quorum.io/cluster"
ROLE_LABEL = "quorum.io/role"
REVISION_ANNOTATION = "quorum.io/revision"
MANUAL_RESTART_ANNOTATION = "quorum.io/manual-rolling-update"
CA_CERT_GENERATION_ANNOTATION = "quorum.io/ca-cert-generation"


class Role(Enum):
    """Cluster role enumeration."""

    COORDINATION = "coordination"
    COMPUTE = "compute"

    @property
    def quorum_sensitive(self) -> bool:
        """Whether losing more than one member at a time risks the quorum."""
        return self is Role.COORDINATION


class FleetMode(Enum):
    """Pod-management mechanism enumeration."""

    POD_SET = "pod-set"
    ORDINAL_GROUP = "ordinal-group"


class ReconcileAction(Enum):
    """Outcome of a single upsert against the platform."""

    CREATED = "created"
    UPDATED = "updated"
    NOOP = "noop"
    DELETED = "deleted"


def component_name(cluster: str, role: Role) -> str:
    """Name shared by the pod set and ordinal group of one role."""
    return f"{cluster}-{role.value}"


def pod_name(cluster: str, role: Role, ordinal: int) -> str:
    """Pod naming invariant: <cluster>-<role>-<ordinal>."""
    return f"{component_name(cluster, role)}-{ordinal}"


def ordinal_of(name: str) -> int:
    """Parse the ordinal suffix from a pod name."""
    try:
        return int(name.rsplit("-", 1)[1])
    except (IndexError, ValueError):
        raise ValueError(f"Pod name {name!r} has no ordinal suffix") from None


def selector_labels(cluster: str, role: Role) -> dict[str, str]:
    """Label selector matching every pod of one role."""
    return {CLUSTER_LABEL: cluster, ROLE_LABEL: role.value}


@dataclass(frozen=True)
class ReconciliationContext:
    """Identity of one reconciliation attempt."""

    namespace: str
    name: str
    trigger: str = "manual"
    operation_timeout_ms: int = 300_000

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}({self.trigger})"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "namespace": self.namespace,
            "name": self.name,
            "trigger": self.trigger,
            "operation_timeout_ms": self.operation_timeout_ms,
        }


@dataclass(frozen=True)
class Pod:
    """A single pod, either observed or as a pod-set definition."""

    name: str
    ordinal: int
    role: Role
    revision: str
    spec: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    uid: str = ""

    def definition(self) -> "Pod":
        """Copy without the platform-assigned identity."""
        return replace(self, uid="")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "ordinal": self.ordinal,
            "role": self.role.value,
            "revision": self.revision,
            "annotations": dict(self.annotations),
        }


@dataclass(frozen=True)
class PodSet:
    """Declarative per-pod list, ordered by ordinal."""

    name: str
    role: Role
    revision: str
    pods: tuple[Pod, ...] = ()
    annotations: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "pods", tuple(sorted(self.pods, key=lambda p: p.ordinal))
        )

    @property
    def size(self) -> int:
        return len(self.pods)

    @property
    def ordinals(self) -> list[int]:
        return [p.ordinal for p in self.pods]

    def is_valid(self) -> bool:
        """A pod set is valid only if pod count equals distinct ordinals."""
        return len(self.pods) == len(set(self.ordinals))

    def next_ordinal(self) -> int:
        return max(self.ordinals) + 1 if self.pods else 0

    def with_pods(self, pods: list[Pod] | tuple[Pod, ...], revision: str | None = None) -> "PodSet":
        """New pod set with the given definitions."""
        return replace(
            self,
            pods=tuple(p.definition() for p in pods),
            revision=self.revision if revision is None else revision,
        )

    def signature(self) -> tuple[Any, ...]:
        """Fields that decide whether two pod sets differ."""
        return (
            self.revision,
            tuple(
                (p.name, p.revision, tuple(sorted(p.annotations.items())))
                for p in self.pods
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "role": self.role.value,
            "revision": self.revision,
            "pods": [p.to_dict() for p in self.pods],
        }


@dataclass(frozen=True)
class OrdinalGroup:
    """Ordinal-indexed native compute group."""

    name: str
    role: Role
    replicas: int
    revision: str
    template: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    def with_replicas(self, replicas: int) -> "OrdinalGroup":
        return replace(self, replicas=replicas)

    def build_pod(self, ordinal: int) -> Pod:
        """Pod the group's controller creates for one ordinal."""
        name = f"{self.name}-{ordinal}"
        return Pod(
            name=name,
            ordinal=ordinal,
            role=self.role,
            revision=self.revision,
            spec={**self.template, "hostname": name, "subdomain": f"{self.name}-nodes"},
            labels=dict(self.labels),
            annotations=dict(self.annotations),
        )

    def signature(self) -> tuple[Any, ...]:
        """Fields that decide whether two ordinal groups differ."""
        return (self.replicas, self.revision, tuple(sorted(self.annotations.items())))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "role": self.role.value,
            "replicas": self.replicas,
            "revision": self.revision,
        }


@dataclass(frozen=True)
class Secret:
    """A platform secret, reduced to what the engine reads."""

    name: str
    data: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileResult:
    """Tagged outcome of an upsert plus the resulting resource."""

    action: ReconcileAction
    resource: Any = None

    @classmethod
    def created(cls, resource: Any) -> "ReconcileResult":
        return cls(ReconcileAction.CREATED, resource)

    @classmethod
    def updated(cls, resource: Any) -> "ReconcileResult":
        return cls(ReconcileAction.UPDATED, resource)

    @classmethod
    def noop(cls, resource: Any) -> "ReconcileResult":
        return cls(ReconcileAction.NOOP, resource)

    @classmethod
    def deleted(cls) -> "ReconcileResult":
        return cls(ReconcileAction.DELETED, None)

    @property
    def changed(self) -> bool:
        return self.action is not ReconcileAction.NOOP


@dataclass(frozen=True)
class DesiredClusterSpec:
    """Desired state for one role, produced fresh every attempt."""

    cluster: str
    namespace: str
    role: Role
    replicas: int
    template: dict[str, Any]
    revision: str
    mode: FleetMode
    ca_cert_generation: int = 0

    @property
    def name(self) -> str:
        return component_name(self.cluster, self.role)

    @property
    def selector(self) -> dict[str, str]:
        return selector_labels(self.cluster, self.role)

    def pod_annotations(self) -> dict[str, str]:
        return {
            REVISION_ANNOTATION: self.revision,
            CA_CERT_GENERATION_ANNOTATION: str(self.ca_cert_generation),
        }

    def build_pod(self, ordinal: int) -> Pod:
        """Pod definition for one ordinal, built from the desired template."""
        return self.build_ordinal_group().build_pod(ordinal)

    def build_pod_set(self, replicas: int | None = None) -> PodSet:
        """Pod set with ordinals 0..replicas-1 built from the desired template."""
        count = self.replicas if replicas is None else replicas
        return PodSet(
            name=self.name,
            role=self.role,
            revision=self.revision,
            pods=tuple(self.build_pod(i) for i in range(count)),
        )

    def build_ordinal_group(self, replicas: int | None = None) -> OrdinalGroup:
        """Ordinal group definition built from the desired template."""
        return OrdinalGroup(
            name=self.name,
            role=self.role,
            replicas=self.replicas if replicas is None else replicas,
            revision=self.revision,
            template=dict(self.template),
            labels=dict(self.selector),
            annotations=self.pod_annotations(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "cluster": self.cluster,
            "namespace": self.namespace,
            "role": self.role.value,
            "replicas": self.replicas,
            "revision": self.revision,
            "mode": self.mode.value,
            "ca_cert_generation": self.ca_cert_generation,
        }


@dataclass
class ObservedState:
    """Snapshot of one role's fleet, read once per attempt."""

    ordinal_group: OrdinalGroup | None = None
    pod_set: PodSet | None = None
    pods: list[Pod] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.pods = sorted(self.pods, key=lambda p: p.ordinal)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "ordinal_group": self.ordinal_group.to_dict() if self.ordinal_group else None,
            "pod_set": self.pod_set.to_dict() if self.pod_set else None,
            "pods": [p.to_dict() for p in self.pods],
        }


@dataclass(frozen=True)
class ScaleOutcome:
    """Sizes written by one scaling pass, in order, plus the final resource."""

    applied: tuple[int, ...] = ()
    resource: Any = None

    @property
    def steps(self) -> int:
        return len(self.applied)


@dataclass
class RestartOutcome:
    """Result of one rolling restart pass."""

    restarted: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    reasons: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "restarted": self.restarted,
            "pending": self.pending,
            "reasons": self.reasons,
        }


@dataclass
class AttemptResult:
    """Outcome of one reconciliation attempt, handed to the status writer."""

    context: ReconciliationContext
    success: bool
    completed_stages: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error: dict[str, Any] | None = None
    replicas: dict[str, int] = field(default_factory=dict)
    restart_reasons: dict[str, list[str]] = field(default_factory=dict)
    migration_actions: list[str] = field(default_factory=list)
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "context": self.context.to_dict(),
            "success": self.success,
            "completed_stages": self.completed_stages,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "replicas": self.replicas,
            "restart_reasons": self.restart_reasons,
            "migration_actions": self.migration_actions,
            "timestamp": self.timestamp,
        }
