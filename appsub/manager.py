"""Controller manager: wires the hub controllers to a client and runs their work queues."""

from __future__ import annotations

import logging
import os
import platform
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

from .client import EventRecorder, MemoryClient, add_to_scheme
from .mcmhub_controller import CONTROLLER_NAME, ReconcileRequest, ReconcileResult, SubscriptionReconciler
from .options import ManagerOptions, parse_options
from .types import NamespacedName

log = logging.getLogger(__name__)

METRICS_HOST = "0.0.0.0"
METRICS_PORT = 8383
OPERATOR_METRICS_PORT = 8686
WATCH_NAMESPACE_ENV = "WATCH_NAMESPACE"
DEFAULT_RETRY_SECONDS = 1.0


class Reconciler(Protocol):
    def reconcile(self, request: ReconcileRequest) -> ReconcileResult: ...


Outcome = tuple[str, ReconcileRequest, ReconcileResult]


class Manager:
    """Holds shared dependencies and a work queue per registered controller."""

    def __init__(
        self,
        client: MemoryClient,
        namespace: str = "",
        cluster: NamespacedName | None = None,
        hub_config_path: str = "",
        sync_interval: int = 60,
    ) -> None:
        self.client = client
        self.scheme = client.scheme
        self.event_recorder = EventRecorder()
        self.namespace = namespace
        self.cluster = cluster if cluster is not None else NamespacedName()
        self.hub_config_path = hub_config_path
        self.sync_interval = sync_interval
        self.metrics_address = f"{METRICS_HOST}:{METRICS_PORT}"
        self._controllers: dict[str, Reconciler] = {}
        self._pending: dict[str, dict[ReconcileRequest, None]] = {}

    @property
    def controllers(self) -> Mapping[str, Reconciler]:
        return MappingProxyType(self._controllers)

    def add_controller(self, name: str, reconciler: Reconciler) -> None:
        """Register a reconciler under a unique controller name."""
        if name in self._controllers:
            raise ValueError(f"controller {name!r} is already registered")
        self._controllers[name] = reconciler
        self._pending[name] = {}

    def enqueue(self, request: ReconcileRequest) -> None:
        """Queue a request for every controller; a request already queued is kept once."""
        for queue in self._pending.values():
            queue.setdefault(request, None)

    def run_once(self) -> list[Outcome]:
        """Reconcile every queued request once; requests asking to be retried are queued again."""
        batch = self._pending
        self._pending = {name: {} for name in self._controllers}
        outcomes: list[Outcome] = []
        for name, requests in batch.items():
            reconciler = self._controllers[name]
            for request in requests:
                try:
                    result = reconciler.reconcile(request)
                except Exception as err:
                    log.error("controller %s failed to reconcile %s: %s", name, request.namespaced_name, err)
                    result = ReconcileResult(requeue=True)
                if result.requeue or result.requeue_after > 0:
                    self._pending[name].setdefault(request, None)
                outcomes.append((name, request, result))
        return outcomes


def _new_hub_reconciler(manager: Manager) -> Reconciler:
    return SubscriptionReconciler(manager.client, manager.event_recorder)


_CONTROLLER_FACTORIES: tuple[tuple[str, Callable[[Manager], Reconciler]], ...] = (
    (CONTROLLER_NAME, _new_hub_reconciler),
)


def add_to_manager(manager: Manager) -> None:
    """Add all controllers to the manager."""
    for name, factory in _CONTROLLER_FACTORIES:
        manager.add_controller(name, factory(manager))


def _version_info() -> dict[str, str]:
    """Describe the runtime the manager runs on."""
    return {
        "Python version": platform.python_version(),
        "OS/Arch": f"{platform.system().lower()}/{platform.machine()}",
    }


def build_manager(options: ManagerOptions, client: MemoryClient | None = None) -> Manager:
    """Create a manager from options, with the scheme and all controllers set up."""
    for label, value in _version_info().items():
        log.info("%s: %s", label, value)

    namespace = os.environ.get(WATCH_NAMESPACE_ENV)
    if namespace is None:
        raise RuntimeError(f"{WATCH_NAMESPACE_ENV} must be set")

    if client is None:
        client = MemoryClient()

    if options.hub_config_file_path_name:
        # Read once so a missing or unreadable hub configuration fails early.
        Path(options.hub_config_file_path_name).read_text(encoding="utf-8")

    cluster = NamespacedName(name=options.cluster_name, namespace=options.cluster_namespace)
    log.info("Starting ... Registering Components for cluster: %s", cluster)

    add_to_scheme(client.scheme)

    manager = Manager(
        client,
        namespace=namespace,
        cluster=cluster,
        hub_config_path=options.hub_config_file_path_name,
        sync_interval=options.sync_interval,
    )
    add_to_manager(manager)
    return manager


def _run(manager: Manager) -> None:
    while True:
        outcomes = manager.run_once()
        retries = [result for _, _, result in outcomes if result.requeue or result.requeue_after > 0]
        if not retries:
            return
        delay = min(result.requeue_after or DEFAULT_RETRY_SECONDS for result in retries)
        time.sleep(delay)


def main(argv: Sequence[str] | None = None) -> int:
    """Start the manager and reconcile the subscriptions it watches."""
    logging.basicConfig(level=logging.INFO)
    options = parse_options(argv)
    try:
        manager = build_manager(options, MemoryClient())
    except (OSError, RuntimeError, ValueError) as err:
        log.error("failed to start manager: %s", err)
        return 1

    for sub in manager.client.list("Subscription", manager.namespace, None):
        manager.enqueue(ReconcileRequest(sub.key))

    log.info("Starting the manager.")
    try:
        _run(manager)
    except KeyboardInterrupt:
        log.info("manager interrupted")
    return 0