"""
Pytest configuration and fixtures for quorum operator tests
"""

import os
import sys
import pytest
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from quorum_reconcile.memory import InMemoryCluster  # noqa: E402
from quorum_reconcile.model import ClusterModelBuilder  # noqa: E402
from quorum_reconcile.reconciler import (  # noqa: E402
    InMemoryStatusWriter,
    ReconciliationStateMachine,
)
from quorum_reconcile.state import ReconciliationContext  # noqa: E402
from quorum_tools.config import FeatureGates  # noqa: E402

NAMESPACE = "my-ns"
CLUSTER = "my-cluster"


@pytest.fixture
def mock_env():
    """Fixture restoring environment variables changed by a test."""
    original_env = os.environ.copy()

    for key in list(os.environ):
        if key.startswith("QUORUM_"):
            del os.environ[key]

    yield os.environ

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def cluster_resource():
    """Factory for QuorumCluster custom resources."""

    def make(coordination: int = 3, compute: int = 3, version: str = "3.8"):
        return {
            "apiVersion": "quorum.io/v1beta1",
            "kind": "QuorumCluster",
            "metadata": {"name": CLUSTER, "namespace": NAMESPACE},
            "spec": {
                "coordination": {
                    "replicas": coordination,
                    "image": f"quorum/coordination:{version}",
                    "config": {"tickTime": 2000},
                },
                "compute": {
                    "replicas": compute,
                    "image": f"quorum/compute:{version}",
                    "resources": {"requests": {"memory": "2Gi"}},
                },
            },
        }

    return make


@pytest.fixture
def pod_set_builder():
    """Model builder with the pod set feature gate enabled."""
    return ClusterModelBuilder(feature_gates=FeatureGates("+UsePodSets"))


@pytest.fixture
def ordinal_group_builder():
    """Model builder with the default (ordinal group) fleet mode."""
    return ClusterModelBuilder(feature_gates=FeatureGates("-UsePodSets"))


@pytest.fixture
def context():
    """Reconciliation context with a short operation timeout."""
    return ReconciliationContext(
        namespace=NAMESPACE,
        name=CLUSTER,
        trigger="test",
        operation_timeout_ms=1_000,
    )


@pytest.fixture
def fleet():
    """Empty in-memory platform."""
    return InMemoryCluster()


@pytest.fixture
def make_machine(fleet):
    """Factory for a state machine wired to the in-memory platform."""

    def make(builder: ClusterModelBuilder, **kwargs):
        kwargs.setdefault("status_writer", InMemoryStatusWriter())
        return ReconciliationStateMachine(
            fleet,
            model_builder=builder,
            poll_interval_ms=1,
            **kwargs,
        )

    return make

