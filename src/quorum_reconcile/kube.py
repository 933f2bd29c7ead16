"""
Kubernetes REST API resource accessors.

Talks to the API server directly over httpx with a bearer token:

- Pods and secrets under /api/v1
- Ordinal groups as StatefulSets under /apis/apps/v1
- Pod sets and cluster custom resources under /apis/quorum.io/v1beta1

Status codes map onto the reconciliation error taxonomy: 404 on a read means
the object is absent, 409/429/5xx and transport failures are transient and
400/422 mean the desired object was rejected.
"""

import asyncio
import logging
import os
import ssl
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from quorum_reconcile.errors import (
    InvalidDesiredStateError,
    ReadinessTimeoutError,
    ReconcileError,
    TransientError,
)
from quorum_reconcile.state import (
    REVISION_ANNOTATION,
    ROLE_LABEL,
    OrdinalGroup,
    Pod,
    PodSet,
    ReconcileResult,
    Role,
    Secret,
    ordinal_of,
)
from quorum_tools.config import OperatorConfig

logger = logging.getLogger(__name__)

CUSTOM_GROUP = "quorum.io/v1beta1"


# =============================================================================
# Manifest conversion
# =============================================================================

def pod_manifest(pod: Pod) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": pod.name,
            "labels": dict(pod.labels),
            "annotations": dict(pod.annotations),
        },
        "spec": dict(pod.spec),
    }


def pod_from_manifest(manifest: Dict[str, Any]) -> Pod:
    metadata = manifest.get("metadata", {})
    labels = metadata.get("labels") or {}
    annotations = metadata.get("annotations") or {}
    return Pod(
        name=metadata["name"],
        ordinal=ordinal_of(metadata["name"]),
        role=Role(labels[ROLE_LABEL]),
        revision=annotations.get(REVISION_ANNOTATION, ""),
        spec=manifest.get("spec") or {},
        labels=labels,
        annotations=annotations,
        uid=metadata.get("uid", ""),
    )


def pod_is_ready(manifest: Dict[str, Any]) -> bool:
    conditions = (manifest.get("status") or {}).get("conditions") or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


def pod_set_manifest(pod_set: PodSet) -> Dict[str, Any]:
    return {
        "apiVersion": CUSTOM_GROUP,
        "kind": "PodSet",
        "metadata": {
            "name": pod_set.name,
            "labels": {ROLE_LABEL: pod_set.role.value},
            "annotations": {**pod_set.annotations, REVISION_ANNOTATION: pod_set.revision},
        },
        "spec": {"pods": [pod_manifest(p) for p in pod_set.pods]},
    }


def pod_set_from_manifest(manifest: Dict[str, Any]) -> PodSet:
    metadata = manifest.get("metadata", {})
    annotations = dict(metadata.get("annotations") or {})
    revision = annotations.pop(REVISION_ANNOTATION, "")
    return PodSet(
        name=metadata["name"],
        role=Role((metadata.get("labels") or {})[ROLE_LABEL]),
        revision=revision,
        pods=tuple(pod_from_manifest(p) for p in (manifest.get("spec") or {}).get("pods", [])),
        annotations=annotations,
    )


def ordinal_group_manifest(group: OrdinalGroup) -> Dict[str, Any]:
    labels = {**group.labels, ROLE_LABEL: group.role.value}
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": group.name,
            "labels": labels,
            "annotations": {REVISION_ANNOTATION: group.revision},
        },
        "spec": {
            "replicas": group.replicas,
            "serviceName": f"{group.name}-nodes",
            "podManagementPolicy": "Parallel",
            # Restarts are driven by the rolling restart executor
            "updateStrategy": {"type": "OnDelete"},
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels, "annotations": dict(group.annotations)},
                "spec": dict(group.template),
            },
        },
    }


def ordinal_group_from_manifest(manifest: Dict[str, Any]) -> OrdinalGroup:
    metadata = manifest.get("metadata", {})
    spec = manifest.get("spec") or {}
    template = spec.get("template") or {}
    labels = (spec.get("selector") or {}).get("matchLabels") or {}
    return OrdinalGroup(
        name=metadata["name"],
        role=Role((metadata.get("labels") or labels)[ROLE_LABEL]),
        replicas=spec.get("replicas", 0),
        revision=(metadata.get("annotations") or {}).get(REVISION_ANNOTATION, ""),
        template=template.get("spec") or {},
        labels=labels,
        annotations=(template.get("metadata") or {}).get("annotations") or {},
    )


def secret_manifest(secret: Secret) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": secret.name, "annotations": dict(secret.annotations)},
        "data": dict(secret.data),
    }


def secret_from_manifest(manifest: Dict[str, Any]) -> Secret:
    metadata = manifest.get("metadata", {})
    return Secret(
        name=metadata["name"],
        data=manifest.get("data") or {},
        annotations=metadata.get("annotations") or {},
    )


# =============================================================================
# HTTP client
# =============================================================================

class KubeClient:
    """
    Thin async client for the Kubernetes REST API.

    Usage:
        client = KubeClient("https://kubernetes.default.svc", token="...")
        manifest = await client.request("GET", "/api/v1/namespaces/ns/pods/p", allow_missing=True)
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        verify: Any = True,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.verify = verify
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                verify=self.verify,
                transport=self.transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        allow_missing: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Send one request and decode the JSON response.

        Returns None for a 404 when ``allow_missing`` is set.

        Raises:
            TransientError: transport failure, 409, 429 or 5xx
            InvalidDesiredStateError: 400 or 422
            ReconcileError: any other error status
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=body, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Kubernetes API {method} {path} failed: {e}")
            raise TransientError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status == 404 and allow_missing:
            return None
        if status in (409, 429) or status >= 500:
            raise TransientError(f"{method} {path} returned {status}: {_message(response)}")
        if status in (400, 422):
            raise InvalidDesiredStateError(f"{method} {path} rejected: {_message(response)}")
        if status >= 400:
            raise ReconcileError(f"{method} {path} returned {status}: {_message(response)}")
        return response.json() if response.content else {}


def _message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", response.text)
    except ValueError:
        return response.text


# =============================================================================
# Accessors
# =============================================================================

class _KubeAccessor:
    """get / reconcile / delete for one namespaced kind."""

    def __init__(
        self,
        client: KubeClient,
        prefix: str,
        plural: str,
        to_manifest: Callable[[Any], Dict[str, Any]],
        from_manifest: Callable[[Dict[str, Any]], Any],
        unchanged: Optional[Callable[[Any, Any], bool]] = None,
    ):
        self.client = client
        self.prefix = prefix
        self.plural = plural
        self.to_manifest = to_manifest
        self.from_manifest = from_manifest
        self.unchanged = unchanged or (lambda current, desired: current == desired)

    def path(self, namespace: str, name: Optional[str] = None) -> str:
        base = f"{self.prefix}/namespaces/{namespace}/{self.plural}"
        return f"{base}/{name}" if name else base

    async def get(self, namespace: str, name: str):
        manifest = await self.client.request("GET", self.path(namespace, name), allow_missing=True)
        return self.from_manifest(manifest) if manifest is not None else None

    async def reconcile(self, namespace: str, name: str, desired) -> ReconcileResult:
        current_manifest = await self.client.request(
            "GET", self.path(namespace, name), allow_missing=True
        )

        if desired is None:
            if current_manifest is None:
                return ReconcileResult.noop(None)
            await self.delete(namespace, name, cascade=True)
            return ReconcileResult.deleted()

        body = self.to_manifest(desired)
        if current_manifest is None:
            created = await self.client.request("POST", self.path(namespace), body=body)
            logger.debug(f"Created {self.plural} {namespace}/{name}")
            return ReconcileResult.created(self.from_manifest(created))

        current = self.from_manifest(current_manifest)
        if self.unchanged(current, desired):
            return ReconcileResult.noop(current)

        body["metadata"]["resourceVersion"] = current_manifest["metadata"].get("resourceVersion")
        updated = await self.client.request("PUT", self.path(namespace, name), body=body)
        logger.debug(f"Updated {self.plural} {namespace}/{name}")
        return ReconcileResult.updated(self.from_manifest(updated))

    async def delete(self, namespace: str, name: str, cascade: bool = False) -> None:
        policy = "Foreground" if cascade else "Orphan"
        await self.client.request(
            "DELETE",
            self.path(namespace, name),
            body={"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": policy},
            allow_missing=True,
        )


def _same_signature(current, desired) -> bool:
    return current.signature() == desired.signature()


class KubePodAccessor(_KubeAccessor):
    """Pods, with readiness polling and delete-and-wait restarts."""

    def __init__(self, client: KubeClient):
        super().__init__(
            client,
            "/api/v1",
            "pods",
            pod_manifest,
            pod_from_manifest,
            unchanged=lambda current, desired: True,
        )

    async def readiness(
        self, namespace: str, name: str, poll_interval_ms: int, timeout_ms: int
    ) -> None:
        await self._poll(
            namespace,
            name,
            lambda manifest: manifest is not None and pod_is_ready(manifest),
            poll_interval_ms,
            timeout_ms,
        )

    async def restart(
        self, namespace: str, name: str, poll_interval_ms: int, timeout_ms: int
    ) -> None:
        before = await self.client.request("GET", self.path(namespace, name), allow_missing=True)
        old_uid = before["metadata"].get("uid") if before else None
        await self.delete(namespace, name, cascade=True)

        def recreated(manifest: Optional[Dict[str, Any]]) -> bool:
            return manifest is not None and manifest["metadata"].get("uid") != old_uid

        await self._poll(namespace, name, recreated, poll_interval_ms, timeout_ms)

    async def _poll(
        self,
        namespace: str,
        name: str,
        done: Callable[[Optional[Dict[str, Any]]], bool],
        poll_interval_ms: int,
        timeout_ms: int,
    ) -> None:
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            manifest = await self.client.request(
                "GET", self.path(namespace, name), allow_missing=True
            )
            if done(manifest):
                return
            if time.monotonic() >= deadline:
                raise ReadinessTimeoutError(name, timeout_ms)
            await asyncio.sleep(poll_interval_ms / 1000)

    async def list(self, namespace: str, selector: Dict[str, str]) -> List[Pod]:
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        data = await self.client.request(
            "GET", self.path(namespace), params={"labelSelector": label_selector}
        )
        pods = [pod_from_manifest(item) for item in data.get("items", [])]
        return sorted(pods, key=lambda p: p.ordinal)


class KubeClusterAccessor:
    """Read access to QuorumCluster custom resources."""

    def __init__(self, client: KubeClient):
        self.client = client

    def path(self, namespace: str, name: Optional[str] = None) -> str:
        base = f"/apis/{CUSTOM_GROUP}/namespaces/{namespace}/quorumclusters"
        return f"{base}/{name}" if name else base

    async def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return await self.client.request("GET", self.path(namespace, name), allow_missing=True)

    async def list(self, namespace: str) -> List[Dict[str, Any]]:
        data = await self.client.request("GET", self.path(namespace))
        return data.get("items", [])


class KubeResources:
    """Every accessor the engine needs, sharing one HTTP client."""

    def __init__(self, client: KubeClient):
        self.client = client
        self.clusters = KubeClusterAccessor(client)
        self.pods = KubePodAccessor(client)
        self.secrets = _KubeAccessor(
            client, "/api/v1", "secrets", secret_manifest, secret_from_manifest
        )
        self.ordinal_groups = _KubeAccessor(
            client,
            "/apis/apps/v1",
            "statefulsets",
            ordinal_group_manifest,
            ordinal_group_from_manifest,
            unchanged=_same_signature,
        )
        self.pod_sets = _KubeAccessor(
            client,
            f"/apis/{CUSTOM_GROUP}",
            "podsets",
            pod_set_manifest,
            pod_set_from_manifest,
            unchanged=_same_signature,
        )

    @classmethod
    def from_config(cls, config: OperatorConfig, **kwargs: Any) -> "KubeResources":
        """Accessors authenticated with the service account from ``config``."""
        verify: Any = True
        if os.path.exists(config.ca_path):
            verify = ssl.create_default_context(cafile=config.ca_path)
        client = KubeClient(
            config.api_server_url,
            token=config.read_token(),
            verify=verify,
            **kwargs,
        )
        return cls(client)

    async def close(self) -> None:
        await self.client.close()

    async def __aenter__(self) -> "KubeResources":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
