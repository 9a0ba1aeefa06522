"""Reconciler for subscriptions on the hub cluster."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .client import EventRecorder, MemoryClient, NotFoundError
from .hub import HubReconciler, VersionMatcher
from .types import Deployable, NamespacedName, Subscription, SubscriptionPhase

log = logging.getLogger(__name__)

CONTROLLER_NAME = "mcmhub-subscription-controller"
STATUS_RETRY_SECONDS = 1.0


@dataclass(frozen=True)
class ReconcileRequest:
    """Identifies the object to reconcile."""

    namespaced_name: NamespacedName

    @property
    def name(self) -> str:
        return self.namespaced_name.name

    @property
    def namespace(self) -> str:
        return self.namespaced_name.namespace


@dataclass
class ReconcileResult:
    """Outcome of a reconcile: whether and when to try again."""

    requeue: bool = False
    requeue_after: float = 0.0


def deployable_status_changed(old: Deployable, new: Deployable) -> bool:
    """Tell whether an update of a deployable changed its status."""
    return old.status != new.status


def _is_hub_placement(sub: Subscription) -> bool:
    placement = sub.spec.placement
    return placement is not None and (
        placement.placement_ref is not None
        or placement.clusters is not None
        or placement.cluster_selector is not None
    )


class SubscriptionReconciler(HubReconciler):
    """Reconciles subscriptions on the hub and keeps their status current."""

    def __init__(
        self,
        client: MemoryClient,
        event_recorder: EventRecorder | None = None,
        version_matcher: VersionMatcher | None = None,
    ) -> None:
        super().__init__(client, event_recorder, version_matcher)

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """Bring the subscription named by request to its desired state on the hub."""
        key = request.namespaced_name
        log.info("MCM Hub reconciling subscription: %s", key)

        try:
            instance = self.client.get("Subscription", key)
        except NotFoundError:
            log.info("subscription %s is gone", key)
            return ReconcileResult()

        original_status = copy.deepcopy(instance.status)

        if _is_hub_placement(instance):
            try:
                self.do_mcm_hub_reconcile(instance)
            except Exception as err:
                instance.status.phase = SubscriptionPhase.FAILED
                instance.status.reason = str(err)
            else:
                instance.status.phase = SubscriptionPhase.PROPAGATED
        else:
            status = instance.status
            if status.phase not in (SubscriptionPhase.FAILED, SubscriptionPhase.SUBSCRIBED):
                status.phase = SubscriptionPhase.UNKNOWN
                status.message = ""
                status.reason = ""
            local_key = str(NamespacedName())
            for cluster in [k for k in status.statuses if k != local_key]:
                del status.statuses[cluster]

        result = ReconcileResult()

        if original_status != instance.status:
            log.info("MCM Hub updating subscription status of %s to %s", key, instance.status)
            instance.status.last_update_time = datetime.now(timezone.utc).replace(microsecond=0)
            try:
                self.client.update_status(instance)
            except Exception as err:
                log.error(
                    "failed to update status for mcm hub subscription %s with error: %s, retry after 1 seconds",
                    key,
                    err,
                )
                result.requeue_after = STATUS_RETRY_SECONDS

        return result