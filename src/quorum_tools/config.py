"""
Quorum Operator Configuration

Central configuration for the operator process: platform API access,
reconciliation timing and feature gates.
Override with environment variables for flexibility.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional


# Feature gates known to the operator and their defaults
KNOWN_FEATURE_GATES: Dict[str, bool] = {
    "UsePodSets": False,
}


class FeatureGates:
    """
    Parsed feature gate list.

    Format is a comma separated list of gate names, each prefixed with
    "+" to enable or "-" to disable, e.g. "+UsePodSets".
    """

    def __init__(self, spec: str = ""):
        self.spec = spec or ""
        self._gates = dict(KNOWN_FEATURE_GATES)

        for item in self.spec.split(","):
            item = item.strip()
            if not item:
                continue
            if item[0] not in "+-" or len(item) < 2:
                raise ValueError(f"Feature gate {item!r} must start with '+' or '-'")
            name = item[1:]
            if name not in KNOWN_FEATURE_GATES:
                raise ValueError(f"Unknown feature gate: {name}")
            self._gates[name] = item[0] == "+"

    def enabled(self, name: str) -> bool:
        return self._gates.get(name, False)

    def __repr__(self) -> str:
        return f"FeatureGates({self.spec!r})"


@dataclass
class OperatorConfig:
    """Configuration for the quorum operator."""

    # Kubernetes API
    api_server_url: str = "https://kubernetes.default.svc"
    token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    ca_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    namespace: str = "default"

    # Reconciliation timing
    operation_timeout_ms: int = 300_000
    poll_interval_ms: int = 1_000
    resync_interval_s: int = 120
    max_concurrent_reconciliations: int = 10

    # Fleet management
    feature_gates: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Status API
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    gates: Optional[FeatureGates] = field(default=None, repr=False)

    def __post_init__(self):
        # Load from environment variables
        self.api_server_url = os.getenv("QUORUM_API_SERVER_URL", self.api_server_url)
        self.token_path = os.getenv("QUORUM_TOKEN_PATH", self.token_path)
        self.ca_path = os.getenv("QUORUM_CA_PATH", self.ca_path)
        self.namespace = os.getenv("QUORUM_NAMESPACE", self.namespace)
        self.operation_timeout_ms = int(
            os.getenv("QUORUM_OPERATION_TIMEOUT_MS", self.operation_timeout_ms)
        )
        self.poll_interval_ms = int(os.getenv("QUORUM_POLL_INTERVAL_MS", self.poll_interval_ms))
        self.resync_interval_s = int(os.getenv("QUORUM_RESYNC_INTERVAL_S", self.resync_interval_s))
        self.max_concurrent_reconciliations = int(
            os.getenv("QUORUM_MAX_CONCURRENT_RECONCILIATIONS", self.max_concurrent_reconciliations)
        )
        self.feature_gates = os.getenv("QUORUM_FEATURE_GATES", self.feature_gates)
        self.log_level = os.getenv("QUORUM_LOG_LEVEL", self.log_level)
        self.log_json = os.getenv("QUORUM_LOG_JSON", str(self.log_json)).lower() == "true"
        self.api_host = os.getenv("QUORUM_API_HOST", self.api_host)
        self.api_port = int(os.getenv("QUORUM_API_PORT", self.api_port))

        if self.operation_timeout_ms <= 0 or self.poll_interval_ms <= 0:
            raise ValueError("Operation timeout and poll interval must be positive")
        if self.max_concurrent_reconciliations < 1:
            raise ValueError("At least one concurrent reconciliation is required")

        self.gates = FeatureGates(self.feature_gates)

    def read_token(self) -> Optional[str]:
        """Service account token, or None outside a cluster."""
        if not os.path.exists(self.token_path):
            return None
        with open(self.token_path) as f:
            return f.read().strip()


# Global configuration instance, created on first use
config: Optional[OperatorConfig] = None


def get_config() -> OperatorConfig:
    """Get the global configuration instance."""
    global config
    if config is None:
        config = OperatorConfig()
    return config
