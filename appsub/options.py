"""Command-line options of the manager."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from dataclasses import dataclass


@dataclass
class ManagerOptions:
    metrics_addr: str = ""
    cluster_name: str = ""
    cluster_namespace: str = ""
    hub_config_file_path_name: str = ""
    sync_interval: int = 60


def _parser() -> argparse.ArgumentParser:
    defaults = ManagerOptions()
    parser = argparse.ArgumentParser(prog="appsub-manager")
    parser.add_argument(
        "--metrics-addr",
        dest="metrics_addr",
        default=defaults.metrics_addr,
        help="The address the metric endpoint binds to.",
    )
    parser.add_argument(
        "--hub-cluster-configfile",
        dest="hub_config_file_path_name",
        default=defaults.hub_config_file_path_name,
        help="Configuration file pathname to hub kubernetes cluster",
    )
    parser.add_argument(
        "--cluster-name",
        dest="cluster_name",
        default=defaults.cluster_name,
        help="Name of this endpoint.",
    )
    parser.add_argument(
        "--cluster-namespace",
        dest="cluster_namespace",
        default=defaults.cluster_namespace,
        help="Cluster Namespace of this endpoint in hub.",
    )
    parser.add_argument(
        "--sync-interval",
        dest="sync_interval",
        type=int,
        default=defaults.sync_interval,
        help="The interval of housekeeping in seconds.",
    )
    return parser


def parse_options(argv: Sequence[str] | None = None) -> ManagerOptions:
    """Parse command-line flags into ManagerOptions."""
    namespace = _parser().parse_args(argv)
    return ManagerOptions(**vars(namespace))