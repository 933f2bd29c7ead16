"""Cluster model builder.

Turns a cluster custom resource into one ``DesiredClusterSpec`` per role.
The custom resource looks like::

    apiVersion: quorum.io/v1beta1
    kind: QuorumCluster
    metadata:
      name: my-cluster
      namespace: my-ns
    spec:
      coordination:
        replicas: 3
        image: quorum/coordination:3.8
        config: {tickTime: 2000}
      compute:
        replicas: 3
        resources: {requests: {memory: 2Gi}}
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from quorum_reconcile.errors import InvalidDesiredStateError
from quorum_reconcile.resources import ResourceOperator
from quorum_reconcile.state import (
    CA_CERT_GENERATION_ANNOTATION,
    DesiredClusterSpec,
    FleetMode,
    ReconciliationContext,
    Role,
    Secret,
)
from quorum_tools.config import FeatureGates

logger = logging.getLogger(__name__)

POD_SETS_GATE = "UsePodSets"

DEFAULT_IMAGES = {
    Role.COORDINATION: "quorum/coordination:latest",
    Role.COMPUTE: "quorum/compute:latest",
}

# A quorum cannot exist with zero members
MIN_REPLICAS = {
    Role.COORDINATION: 1,
    Role.COMPUTE: 0,
}


@dataclass(frozen=True)
class DerivedMaterial:
    """Time-sensitive material recomputed at the start of every attempt."""

    ca_cert_generation: int = 0


def revision_hash(template: dict[str, Any]) -> str:
    """Deterministic content hash of a pod template."""
    canonical = json.dumps(template, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:32]


def ca_cert_secret_name(cluster: str) -> str:
    return f"{cluster}-cluster-ca-cert"


def load_custom_resource(path: str) -> dict[str, Any]:
    """Load a cluster custom resource from a YAML file."""
    with open(Path(path)) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise InvalidDesiredStateError(f"{path} does not contain a custom resource")
    return data


class CaCertificateRefresher:
    """Reads the current cluster CA generation from its secret."""

    def __init__(self, secrets: ResourceOperator[Secret]):
        self.secrets = secrets

    async def __call__(self, context: ReconciliationContext) -> DerivedMaterial:
        secret = await self.secrets.get(context.namespace, ca_cert_secret_name(context.name))
        if secret is None:
            logger.debug(f"{context}: no cluster CA secret, using generation 0")
            return DerivedMaterial()

        raw = secret.annotations.get(CA_CERT_GENERATION_ANNOTATION, "0")
        try:
            generation = int(raw)
        except ValueError:
            raise InvalidDesiredStateError(
                f"Secret {secret.name} has non-numeric CA generation {raw!r}"
            ) from None
        return DerivedMaterial(ca_cert_generation=generation)


class ClusterModelBuilder:
    """Builds desired descriptions from a cluster custom resource."""

    def __init__(
        self,
        feature_gates: FeatureGates | None = None,
        default_images: dict[Role, str] | None = None,
    ):
        self.feature_gates = feature_gates or FeatureGates()
        self.default_images = default_images or DEFAULT_IMAGES

    @property
    def mode(self) -> FleetMode:
        if self.feature_gates.enabled(POD_SETS_GATE):
            return FleetMode.POD_SET
        return FleetMode.ORDINAL_GROUP

    def build(
        self,
        resource: dict[str, Any],
        derived: DerivedMaterial | None = None,
    ) -> dict[Role, DesiredClusterSpec]:
        """Desired spec for every role declared by the custom resource."""
        return {role: self.build_role(resource, role, derived) for role in Role}

    def build_role(
        self,
        resource: dict[str, Any],
        role: Role,
        derived: DerivedMaterial | None = None,
    ) -> DesiredClusterSpec:
        """Desired spec for one role."""
        derived = derived or DerivedMaterial()
        metadata = resource.get("metadata") or {}
        cluster = metadata.get("name")
        namespace = metadata.get("namespace", "default")
        if not cluster or not isinstance(cluster, str):
            raise InvalidDesiredStateError("Custom resource has no metadata.name")

        section = (resource.get("spec") or {}).get(role.value)
        if not isinstance(section, dict):
            raise InvalidDesiredStateError(f"{cluster}: spec.{role.value} is missing")

        replicas = section.get("replicas")
        if not isinstance(replicas, int) or isinstance(replicas, bool):
            raise InvalidDesiredStateError(f"{cluster}: spec.{role.value}.replicas must be an integer")
        if replicas < MIN_REPLICAS[role]:
            raise InvalidDesiredStateError(
                f"{cluster}: spec.{role.value}.replicas must be at least {MIN_REPLICAS[role]}"
            )

        template = self._template(cluster, role, section)
        return DesiredClusterSpec(
            cluster=cluster,
            namespace=namespace,
            role=role,
            replicas=replicas,
            template=template,
            revision=revision_hash(template),
            mode=self.mode,
            ca_cert_generation=derived.ca_cert_generation,
        )

    def _template(self, cluster: str, role: Role, section: dict[str, Any]) -> dict[str, Any]:
        image = section.get("image", self.default_images[role])
        if not isinstance(image, str) or not image:
            raise InvalidDesiredStateError(f"{cluster}: spec.{role.value}.image must be a non-empty string")

        config = section.get("config", {})
        resources = section.get("resources", {})
        if not isinstance(config, dict) or not isinstance(resources, dict):
            raise InvalidDesiredStateError(
                f"{cluster}: spec.{role.value}.config and resources must be mappings"
            )

        env = [
            {"name": "QUORUM_CLUSTER", "value": cluster},
            {"name": "QUORUM_ROLE", "value": role.value},
            {"name": "QUORUM_CONFIG", "value": json.dumps(config, sort_keys=True)},
        ]
        return {
            "containers": [
                {
                    "name": role.value,
                    "image": image,
                    "env": env,
                    "resources": resources,
                }
            ],
        }
