#!/usr/bin/env python3
"""
Main entry point for running the provisioner sidecar.

Usage:
    # Cluster-wide, with leader election
    csi-provisioner --csi-address /csi/csi.sock --leader-election

    # Node-local, publishing capacity
    NODE_NAME=node-1 NAMESPACE=kube-system POD_NAME=csi-0 \\
        csi-provisioner --node-deployment --enable-capacity
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from csiprovisioner import __version__
from csiprovisioner.coordinator import ExecutionCoordinator, ExitCode
from csiprovisioner.errors import ProvisionerError
from csiprovisioner.utils.config import Config, ProvisionerSettings
from csiprovisioner.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

# Flag destination -> configuration key
FLAG_KEYS = {
    "csi_address": "csi.address",
    "timeout": "csi.timeout",
    "master": "kube.master",
    "kubeconfig": "kube.kubeconfig",
    "kube_api_qps": "kube.api_qps",
    "kube_api_burst": "kube.api_burst",
    "resync_period": "kube.resync_period",
    "volume_name_prefix": "provisioner.volume_name_prefix",
    "volume_name_uuid_length": "provisioner.volume_name_uuid_length",
    "retry_interval_start": "provisioner.retry_interval_start",
    "retry_interval_max": "provisioner.retry_interval_max",
    "worker_threads": "provisioner.worker_threads",
    "finalizer_threads": "provisioner.finalizer_threads",
    "strict_topology": "provisioner.strict_topology",
    "immediate_topology": "provisioner.immediate_topology",
    "extra_create_metadata": "provisioner.extra_create_metadata",
    "default_fstype": "provisioner.default_fstype",
    "cache_sync_timeout": "provisioner.cache_sync_timeout",
    "enable_capacity": "capacity.enabled",
    "capacity_threads": "capacity.threads",
    "capacity_for_immediate_binding": "capacity.immediate_binding",
    "capacity_poll_interval": "capacity.poll_interval",
    "capacity_ownerref_level": "capacity.ownerref_level",
    "node_deployment": "node_deployment.enabled",
    "node_deployment_immediate_binding": "node_deployment.immediate_binding",
    "node_deployment_base_delay": "node_deployment.base_delay",
    "node_deployment_max_delay": "node_deployment.max_delay",
    "leader_election": "leader_election.enabled",
    "leader_election_namespace": "leader_election.namespace",
    "leader_election_lease_duration": "leader_election.lease_duration",
    "leader_election_renew_deadline": "leader_election.renew_deadline",
    "leader_election_retry_period": "leader_election.retry_period",
    "leader_election_health_timeout": "leader_election.health_timeout",
    "metrics_address": "http.metrics_address",
    "http_endpoint": "http.endpoint",
    "metrics_path": "http.metrics_path",
    "log_level": "logging.level",
    "verbosity": "logging.level",
    "log_format": "logging.format",
}


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments; unset flags leave the configuration untouched."""
    parser = argparse.ArgumentParser(
        prog="csi-provisioner",
        description="Provisions volumes for claims through a CSI driver",
        argument_default=argparse.SUPPRESS,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=str, default=None, help="YAML configuration file")

    # Backend
    parser.add_argument("--csi-address", type=str, help="Address of the CSI driver socket")
    parser.add_argument("--timeout", type=float, help="Timeout in seconds of backend calls")

    # Cluster
    parser.add_argument("--master", type=str, help="API server address (only outside a cluster)")
    parser.add_argument("--kubeconfig", type=str, help="Path to a kubeconfig (only outside a cluster)")
    parser.add_argument("--kube-api-qps", type=float, help="Sustained API request rate")
    parser.add_argument("--kube-api-burst", type=int, help="API request burst")
    parser.add_argument("--resync-period", type=float, help="Informer resync period in seconds")

    # Provisioning
    parser.add_argument("--volume-name-prefix", type=str, help="Prefix of created volume names")
    parser.add_argument("--volume-name-uuid-length", type=int, help="Truncate the claim UID in volume names")
    parser.add_argument("--retry-interval-start", type=float, help="Initial retry interval of failed items")
    parser.add_argument("--retry-interval-max", type=float, help="Maximum retry interval of failed items")
    parser.add_argument("--worker-threads", type=int, help="Concurrent provisioning workers")
    parser.add_argument("--finalizer-threads", type=int, help="Concurrent cloning protection workers")
    parser.add_argument("--strict-topology", type=_bool, help="Only the selected node's topology")
    parser.add_argument("--immediate-topology", type=_bool, help="Topology hints for immediate binding")
    parser.add_argument("--extra-create-metadata", type=_bool, help="Pass claim/volume names to the driver")
    parser.add_argument("--default-fstype", type=str, help="Filesystem type when the class sets none")
    parser.add_argument("--cache-sync-timeout", type=float, help="Seconds to wait for informer caches")

    # Capacity
    parser.add_argument("--enable-capacity", type=_bool, nargs="?", const=True, help="Publish storage capacity")
    parser.add_argument("--capacity-threads", type=int, help="Concurrent capacity workers")
    parser.add_argument("--capacity-for-immediate-binding", type=_bool, help="Also publish for immediate binding")
    parser.add_argument("--capacity-poll-interval", type=float, help="Seconds between capacity refreshes")
    parser.add_argument("--capacity-ownerref-level", type=int, help="Owner level of capacity objects, -1 for none")

    # Node deployment
    parser.add_argument("--node-deployment", type=_bool, nargs="?", const=True, help="Run one instance per node")
    parser.add_argument("--node-deployment-immediate-binding", type=_bool, help="Own claims without a node")
    parser.add_argument("--node-deployment-base-delay", type=float, help="Minimum wait before owning a claim")
    parser.add_argument("--node-deployment-max-delay", type=float, help="Maximum wait before owning a claim")

    # Leader election
    parser.add_argument("--leader-election", type=_bool, nargs="?", const=True, help="Enable leader election")
    parser.add_argument("--leader-election-namespace", type=str, help="Namespace of the lease")
    parser.add_argument("--leader-election-lease-duration", type=float, help="Lease duration in seconds")
    parser.add_argument("--leader-election-renew-deadline", type=float, help="Renew deadline in seconds")
    parser.add_argument("--leader-election-retry-period", type=float, help="Retry period in seconds")
    parser.add_argument("--leader-election-health-timeout", type=float, help="Lease renewal tolerance")

    # Diagnostics
    parser.add_argument("--metrics-address", type=str, help="Metrics listen address (deprecated)")
    parser.add_argument("--http-endpoint", type=str, help="Diagnostics listen address")
    parser.add_argument("--metrics-path", type=str, help="Path of the metrics endpoint")

    # Logging
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument("--log-format", type=str, choices=["json", "console"], help="Log output format")
    parser.add_argument(
        "-v", "--v", dest="verbosity", type=int, help="klog-style verbosity, overrides --log-level"
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    """Overlay explicitly given flags onto file and environment configuration."""
    config = Config(getattr(args, "config", None))
    for dest, key in FLAG_KEYS.items():
        if hasattr(args, dest):
            config.set(key, getattr(args, dest))
    return config


async def run(settings: ProvisionerSettings) -> ExitCode:
    """Run the coordinator until SIGTERM/SIGINT or a fatal error."""
    cancel = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, cancel.set)

    coordinator = ExecutionCoordinator(settings)
    try:
        return await coordinator.run(cancel)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    try:
        configure_logging(
            log_level=config.get("logging.level", "INFO"),
            log_format=config.get("logging.format", "json"),
        )
    except ValueError as e:
        print(f"csi-provisioner: {e}", file=sys.stderr)
        sys.exit(ExitCode.FATAL)

    logger.info("Starting CSI provisioner", version=__version__)

    try:
        settings = ProvisionerSettings.from_config(config)
    except ProvisionerError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(ExitCode.FATAL)

    code = asyncio.run(run(settings))
    logger.info("Exiting", code=int(code))
    sys.exit(int(code))


if __name__ == "__main__":
    main()
