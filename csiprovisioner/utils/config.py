"""
Configuration for the provisioner sidecar.

Sources are layered in this order, later ones winning:
config/default.yaml, an optional operator file, the pod's downward-API
environment, then command-line flags (applied by main). The merged tree
is frozen into a ProvisionerSettings instance which every component
receives by reference.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

import yaml

from csiprovisioner.errors import FatalConfigurationError
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "default.yaml"

# Environment variable -> configuration key
ENV_KEYS = {
    "NODE_NAME": "identity.node_name",
    "NAMESPACE": "identity.namespace",
    "POD_NAME": "identity.pod_name",
    "KUBECONFIG": "kube.kubeconfig",
    "LOG_LEVEL": "logging.level",
}


def merge_trees(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Return base with override merged in, recursing into nested sections."""
    result = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, Mapping):
            result[key] = merge_trees(result[key], value)
        else:
            result[key] = value
    return result


def _dotted_keys(tree: Mapping[str, Any], prefix: str = "") -> Iterator[str]:
    for key, value in tree.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping):
            yield from _dotted_keys(value, f"{path}.")
        else:
            yield path


def read_yaml(path: str) -> Dict[str, Any]:
    """
    Read one configuration file.

    Raises:
        FatalConfigurationError: If the file is unreadable or not a mapping
    """
    try:
        with open(path, "r") as f:
            tree = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise FatalConfigurationError(f"cannot load configuration {path}: {e}") from e
    if not isinstance(tree, dict):
        raise FatalConfigurationError(f"configuration {path} must be a mapping")
    return tree


class Config:
    """Layered configuration tree addressed with dotted keys."""

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        """
        Load defaults, the optional operator file and the environment.

        Args:
            config_file: Operator-supplied YAML file
            environ: Environment to read, os.environ when None
        """
        self._tree: Dict[str, Any] = {}
        if DEFAULT_CONFIG_PATH.exists():
            self._tree = read_yaml(str(DEFAULT_CONFIG_PATH))

        if config_file:
            overlay = read_yaml(config_file)
            known = set(_dotted_keys(self._tree))
            for key in _dotted_keys(overlay):
                if key not in known:
                    logger.warning("Ignoring unknown configuration key", key=key, file=config_file)
            self._tree = merge_trees(self._tree, overlay)

        env = os.environ if environ is None else environ
        for name, key in ENV_KEYS.items():
            if env.get(name):
                self.set(key, env[name])

    def get(self, key: str, default: Any = None) -> Any:
        node: Any = self._tree
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        *parents, leaf = key.split(".")
        node = self._tree
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value


@dataclass(frozen=True)
class ProvisionerSettings:
    """
    Immutable settings shared by every component.

    Durations are in seconds.
    """
    csi_address: str = "/run/csi/socket"
    operation_timeout: float = 10.0

    kube_master: str = ""
    kubeconfig: str = ""
    kube_api_qps: float = 5.0
    kube_api_burst: int = 10
    resync_period: float = 600.0

    volume_name_prefix: str = "pvc"
    volume_name_uuid_length: int = -1
    retry_interval_start: float = 1.0
    retry_interval_max: float = 300.0
    worker_threads: int = 100
    finalizer_threads: int = 1
    strict_topology: bool = False
    immediate_topology: bool = True
    extra_create_metadata: bool = False
    default_fstype: str = ""
    cache_sync_timeout: float = 120.0

    enable_capacity: bool = False
    capacity_threads: int = 1
    capacity_immediate_binding: bool = False
    capacity_poll_interval: float = 60.0
    capacity_ownerref_level: int = 1

    enable_node_deployment: bool = False
    node_deployment_immediate_binding: bool = True
    node_deployment_base_delay: float = 20.0
    node_deployment_max_delay: float = 60.0

    enable_leader_election: bool = False
    leader_election_namespace: str = ""
    lease_duration: float = 15.0
    renew_deadline: float = 10.0
    retry_period: float = 5.0
    leader_health_timeout: float = 20.0

    metrics_address: str = ""
    http_endpoint: str = ""
    metrics_path: str = "/metrics"

    node_name: str = ""
    namespace: str = ""
    pod_name: str = ""

    @classmethod
    def from_config(cls, config: Config) -> "ProvisionerSettings":
        """
        Freeze a merged Config into settings.

        Args:
            config: Merged configuration

        Returns:
            Validated settings

        Raises:
            FatalConfigurationError: If the combination of values is invalid
        """
        defaults = cls()

        def value(key: str, attr: str, kind: type) -> Any:
            raw = config.get(key, getattr(defaults, attr))
            if kind is bool and isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes")
            try:
                return kind(raw)
            except (TypeError, ValueError) as e:
                raise FatalConfigurationError(f"invalid value for {key}: {raw!r}") from e

        settings = cls(
            csi_address=value("csi.address", "csi_address", str),
            operation_timeout=value("csi.timeout", "operation_timeout", float),
            kube_master=value("kube.master", "kube_master", str),
            kubeconfig=value("kube.kubeconfig", "kubeconfig", str),
            kube_api_qps=value("kube.api_qps", "kube_api_qps", float),
            kube_api_burst=value("kube.api_burst", "kube_api_burst", int),
            resync_period=value("kube.resync_period", "resync_period", float),
            volume_name_prefix=value("provisioner.volume_name_prefix", "volume_name_prefix", str),
            volume_name_uuid_length=value(
                "provisioner.volume_name_uuid_length", "volume_name_uuid_length", int
            ),
            retry_interval_start=value(
                "provisioner.retry_interval_start", "retry_interval_start", float
            ),
            retry_interval_max=value("provisioner.retry_interval_max", "retry_interval_max", float),
            worker_threads=value("provisioner.worker_threads", "worker_threads", int),
            finalizer_threads=value("provisioner.finalizer_threads", "finalizer_threads", int),
            strict_topology=value("provisioner.strict_topology", "strict_topology", bool),
            immediate_topology=value("provisioner.immediate_topology", "immediate_topology", bool),
            extra_create_metadata=value(
                "provisioner.extra_create_metadata", "extra_create_metadata", bool
            ),
            default_fstype=value("provisioner.default_fstype", "default_fstype", str),
            cache_sync_timeout=value("provisioner.cache_sync_timeout", "cache_sync_timeout", float),
            enable_capacity=value("capacity.enabled", "enable_capacity", bool),
            capacity_threads=value("capacity.threads", "capacity_threads", int),
            capacity_immediate_binding=value(
                "capacity.immediate_binding", "capacity_immediate_binding", bool
            ),
            capacity_poll_interval=value("capacity.poll_interval", "capacity_poll_interval", float),
            capacity_ownerref_level=value("capacity.ownerref_level", "capacity_ownerref_level", int),
            enable_node_deployment=value("node_deployment.enabled", "enable_node_deployment", bool),
            node_deployment_immediate_binding=value(
                "node_deployment.immediate_binding", "node_deployment_immediate_binding", bool
            ),
            node_deployment_base_delay=value(
                "node_deployment.base_delay", "node_deployment_base_delay", float
            ),
            node_deployment_max_delay=value(
                "node_deployment.max_delay", "node_deployment_max_delay", float
            ),
            enable_leader_election=value("leader_election.enabled", "enable_leader_election", bool),
            leader_election_namespace=value(
                "leader_election.namespace", "leader_election_namespace", str
            ),
            lease_duration=value("leader_election.lease_duration", "lease_duration", float),
            renew_deadline=value("leader_election.renew_deadline", "renew_deadline", float),
            retry_period=value("leader_election.retry_period", "retry_period", float),
            leader_health_timeout=value(
                "leader_election.health_timeout", "leader_health_timeout", float
            ),
            metrics_address=value("http.metrics_address", "metrics_address", str),
            http_endpoint=value("http.endpoint", "http_endpoint", str),
            metrics_path=value("http.metrics_path", "metrics_path", str),
            node_name=value("identity.node_name", "node_name", str),
            namespace=value("identity.namespace", "namespace", str),
            pod_name=value("identity.pod_name", "pod_name", str),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """
        Reject contradictory or incomplete settings.

        Runs before any backend RPC is issued.

        Raises:
            FatalConfigurationError: On the first violated rule
        """
        if self.enable_node_deployment and not self.node_name:
            raise FatalConfigurationError(
                "The NODE_NAME environment variable must be set when using node deployment"
            )

        if self.metrics_address and self.http_endpoint:
            raise FatalConfigurationError(
                "only one of metrics_address and http_endpoint can be set"
            )

        if self.enable_capacity:
            if not self.namespace:
                raise FatalConfigurationError(
                    "need NAMESPACE env variable for CSIStorageCapacity objects"
                )
            if self.capacity_ownerref_level >= 0 and not self.pod_name:
                raise FatalConfigurationError(
                    "need POD_NAME env variable to determine CSIStorageCapacity owner"
                )

        if self.volume_name_uuid_length < -1:
            raise FatalConfigurationError(
                f"volume name uuid length must be >= -1, got {self.volume_name_uuid_length}"
            )

        if self.capacity_ownerref_level < -1:
            raise FatalConfigurationError(
                f"capacity ownerref level must be >= -1, got {self.capacity_ownerref_level}"
            )

        if self.retry_interval_start <= 0 or self.retry_interval_start > self.retry_interval_max:
            raise FatalConfigurationError(
                "retry interval start must be positive and not exceed retry interval max"
            )

        for name in ("worker_threads", "finalizer_threads", "capacity_threads"):
            if getattr(self, name) < 1:
                raise FatalConfigurationError(f"{name} must be at least 1")

        if self.operation_timeout <= 0:
            raise FatalConfigurationError("operation timeout must be positive")

    @property
    def diagnostics_address(self) -> str:
        """Address of the diagnostics HTTP server, empty when disabled."""
        return self.metrics_address or self.http_endpoint
