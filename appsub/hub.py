"""Hub-side handling of subscriptions: distribute them to clusters through deployables."""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .client import EventRecorder, MemoryClient, NotFoundError
from .types import (
    ANNOTATION_CHANNEL_GENERATION,
    ANNOTATION_DEPLOYABLE_VERSION,
    ANNOTATION_DEPLOYABLES,
    ANNOTATION_IS_GENERATED,
    ANNOTATION_LOCAL,
    ANNOTATION_ROLLING_UPDATE_TARGET,
    ANNOTATION_SUBSCRIPTION,
    API_VERSION,
    DEPLOYABLE_DEPLOYED,
    DEPLOYABLE_FAILED,
    Channel,
    ClusterOverrides,
    Deployable,
    DeployableSpec,
    NamespacedName,
    ObjectMeta,
    OwnerReference,
    Placement,
    Subscription,
    SubscriptionPerClusterStatus,
    SubscriptionPhase,
    SubscriptionStatus,
)

log = logging.getLogger(__name__)

VersionMatcher = Callable[[str, str], bool]

_VERSION_PART = re.compile(r"^(\d+|[xX*])$")


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _match_version(constraint: str, version: str) -> bool:
    """Match a version against a filter such as "1.2.3" or "1.2.x"."""
    if not version:
        return False
    wanted = constraint.strip().lstrip("vV").split(".")
    actual = version.strip().lstrip("vV").split("-", 1)[0].split(".")
    if not all(_VERSION_PART.match(part) for part in wanted):
        return False
    for index, part in enumerate(wanted):
        if part in ("x", "X", "*"):
            return True
        have = actual[index] if index < len(actual) else "0"
        if not have.isdigit() or int(have) != int(part):
            return False
    return all(not part.isdigit() or int(part) == 0 for part in actual[len(wanted):])


def _split_channel(sub: Subscription) -> tuple[str, str]:
    if not sub.spec.channel:
        return "", ""
    parts = sub.spec.channel.split("/")
    if len(parts) == 2:
        return parts[0], parts[1]
    return sub.metadata.namespace, ""


def _set_path(target: dict[str, Any], path: str, value: Any) -> None:
    keys = [key for key in path.split(".") if key]
    if not keys:
        raise ValueError(f"invalid override path {path!r}")
    node = target
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = copy.deepcopy(value)


def _override_template(template: dict[str, Any], overrides: list[dict[str, Any]]) -> dict[str, Any]:
    result = copy.deepcopy(template)
    for override in overrides:
        try:
            path = override["path"]
        except (KeyError, TypeError):
            raise ValueError(f"override without path: {override!r}") from None
        _set_path(result, path, override.get("value"))
    return result


def _set_controller_reference(owner: Subscription, obj: Deployable) -> None:
    for ref in obj.metadata.owner_references:
        if ref.controller and ref.uid != owner.metadata.uid:
            raise ValueError(f"object {obj.key} is already owned by another controller {ref.name}")
    refs = [ref for ref in obj.metadata.owner_references if ref.uid != owner.metadata.uid]
    refs.append(
        OwnerReference(
            api_version=owner.api_version,
            kind=owner.kind,
            name=owner.metadata.name,
            uid=owner.metadata.uid,
            controller=True,
        )
    )
    obj.metadata.owner_references = refs


def _template_annotations(template: dict[str, Any] | None) -> dict[str, str]:
    if not isinstance(template, dict):
        return {}
    metadata = template.get("metadata")
    if not isinstance(metadata, dict):
        return {}
    annotations = metadata.get("annotations")
    return dict(annotations) if isinstance(annotations, dict) else {}


def check_deployable_by_subscription_package_filter(
    sub: Subscription,
    dpl: Deployable,
    version_matcher: VersionMatcher | None = None,
) -> bool:
    """Tell whether a deployable passes the subscription's package filter."""
    package_filter = sub.spec.package_filter
    if package_filter is None:
        return True

    if sub.spec.package and sub.spec.package != dpl.metadata.name:
        log.debug("name does not match, skipping: %s|%s", sub.spec.package, dpl.metadata.name)
        return False

    dpl_annotations = dict(dpl.metadata.annotations)
    for key, value in _template_annotations(dpl.spec.template).items():
        if not dpl_annotations.get(key):
            dpl_annotations[key] = value

    deployable_version = dpl.metadata.annotations.get(ANNOTATION_DEPLOYABLE_VERSION, "")

    for key, value in package_filter.annotations.items():
        if dpl_annotations.get(key, "") != value:
            return False

    if package_filter.version:
        matcher = version_matcher or _match_version
        matched = matcher(package_filter.version, deployable_version)
        log.debug(
            "version check is %s; filter %s, deployable version %s",
            matched,
            package_filter.version,
            deployable_version,
        )
        if not matched:
            return False

    return True


class HubReconciler:
    """Turns hub subscriptions into deployables and folds their status back."""

    def __init__(
        self,
        client: MemoryClient,
        event_recorder: EventRecorder | None = None,
        version_matcher: VersionMatcher | None = None,
    ) -> None:
        self.client = client
        self.event_recorder = event_recorder if event_recorder is not None else EventRecorder()
        self.version_matcher = version_matcher

    def _record_create(self, sub: Subscription, obj: Deployable, message: str) -> None:
        try:
            self.client.create(obj)
        except Exception as err:
            self.event_recorder.record_event(sub, "Deploy", message, err)
            raise
        self.event_recorder.record_event(sub, "Deploy", message, None)

    def _record_update(self, sub: Subscription, obj: Deployable, message: str) -> None:
        try:
            self.client.update(obj)
        except Exception as err:
            self.event_recorder.record_event(sub, "Deploy", message, err)
            raise
        self.event_recorder.record_event(sub, "Deploy", message, None)

    @staticmethod
    def _mark_generated(found: Deployable) -> None:
        annotations = dict(found.metadata.annotations)
        annotations[ANNOTATION_IS_GENERATED] = "true"
        annotations[ANNOTATION_LOCAL] = "false"
        found.metadata.annotations = annotations

    def do_mcm_hub_reconcile(self, sub: Subscription) -> None:
        """Create or update the deployable that carries the subscription to clusters."""
        if self.update_deployables_annotation(sub):
            return

        if sub.spec.placement is None:
            self.stop_deploy_subscription(sub)
            return

        dpl = self.prepare_deployable_for_subscription(sub, None)

        target_dpl = self.create_target_dpl_for_rolling_update(sub)
        if target_dpl is not None:
            annotations = dict(dpl.metadata.annotations)
            annotations[ANNOTATION_ROLLING_UPDATE_TARGET] = target_dpl.metadata.name
            dpl.metadata.annotations = annotations

        key = dpl.key
        try:
            found = self.client.get("Deployable", key)
        except NotFoundError:
            log.debug("creating deployable %s", key)
            self._record_create(
                sub,
                dpl,
                f"Depolyable {key} created in the subscription namespace for deploying the subscription to managed clusters",
            )
            return

        if dpl.spec.template != found.spec.template:
            log.debug("updating deployable %s", key)
            found.spec = copy.deepcopy(dpl.spec)
            self._mark_generated(found)
            self._record_update(
                sub,
                found,
                f"Depolyable {key} updated in the subscription namespace for deploying the subscription to managed clusters",
            )
        else:
            self.update_subscription_status(sub, found)

    def get_channel_namespace_type(self, sub: Subscription) -> tuple[str, str]:
        """Return the channel namespace and, if the channel exists, its type."""
        namespace, name = _split_channel(sub)
        try:
            channel = self.client.get("Channel", NamespacedName(name=name, namespace=namespace))
        except NotFoundError:
            return namespace, ""
        return namespace, channel.spec.type if isinstance(channel, Channel) else ""

    def get_channel_generation(self, sub: Subscription) -> str:
        """Return the generation of the subscription's channel; raise if it is missing."""
        namespace, name = _split_channel(sub)
        channel = self.client.get("Channel", NamespacedName(name=name, namespace=namespace))
        return str(channel.metadata.generation)

    def update_deployables_annotation(self, sub: Subscription) -> bool:
        """Record the subscribed deployables in an annotation; tell whether they changed."""
        current = sub.metadata.annotations.get(ANNOTATION_DEPLOYABLES, "")
        recorded = set(current.split(",")) if current else set()

        all_dpls = self.get_subscription_deployables(sub) or {}

        if set(all_dpls) == recorded:
            log.debug("subscription update, same spec, skipping %s", sub.key)
            return False

        dpl_str = ",".join(all_dpls)
        log.info("subscription updated for %s new deployables: %s", sub.key, dpl_str)

        annotations = dict(sub.metadata.annotations)
        annotations[ANNOTATION_DEPLOYABLES] = dpl_str
        sub.metadata.annotations = annotations

        try:
            self.client.update(sub)
        except Exception as err:
            log.info("updating subscription deployables annotation failed for %s: %s", sub.key, err)
        return True

    def _delete_owned(self, sub: Subscription, name: str) -> None:
        try:
            dpl = self.client.get("Deployable", NamespacedName(name=name, namespace=sub.metadata.namespace))
        except NotFoundError:
            return
        for owner in dpl.metadata.owner_references:
            if owner.uid == sub.metadata.uid:
                self.client.delete(dpl)
                return

    def stop_deploy_subscription(self, sub: Subscription) -> None:
        """Remove generated deployables and clear the hub status of the subscription."""
        self._delete_owned(sub, sub.metadata.name + "-deployable")
        self._delete_owned(sub, sub.metadata.name + "-target-deployable")

        saved = copy.deepcopy(sub.status)

        sub.status.statuses.clear()
        if sub.status.phase == SubscriptionPhase.PROPAGATED:
            sub.status.phase = SubscriptionPhase.UNKNOWN
            sub.status.message = ""
            sub.status.reason = ""

        if saved != sub.status:
            sub.status.last_update_time = _now()
            self.client.update_status(sub)

    def prepare_deployable_for_subscription(
        self, sub: Subscription, root_sub: Subscription | None = None
    ) -> Deployable:
        """Build the deployable whose template is a local copy of the subscription."""
        subep = sub.deep_copy()
        subep.spec.placement = Placement(local=True)
        subep.spec.overrides = []
        subep.metadata.resource_version = ""
        subep.metadata.uid = ""
        subep.metadata.creation_timestamp = None
        subep.metadata.generation = 1
        subep.metadata.self_link = ""

        annotations: dict[str, str] = {}
        if root_sub is None:
            subep.metadata.name = sub.metadata.name
            annotations[ANNOTATION_SUBSCRIPTION] = f"{subep.metadata.namespace}/{subep.metadata.name}"
        else:
            subep.metadata.name = root_sub.metadata.name
            annotations[ANNOTATION_SUBSCRIPTION] = f"{root_sub.metadata.namespace}/{root_sub.metadata.name}"

        if subep.spec.channel:
            try:
                annotations[ANNOTATION_CHANNEL_GENERATION] = self.get_channel_generation(subep)
            except NotFoundError:
                pass

        subep.metadata.annotations = annotations
        subep.kind = "Subscription"
        subep.api_version = API_VERSION
        subep.status = SubscriptionStatus()

        dpl = Deployable(
            metadata=ObjectMeta(
                name=sub.metadata.name + "-deployable",
                namespace=sub.metadata.namespace,
                annotations={ANNOTATION_LOCAL: "false", ANNOTATION_IS_GENERATED: "true"},
            ),
            spec=DeployableSpec(
                template=subep.to_dict(),
                placement=copy.deepcopy(sub.spec.placement),
            ),
        )
        _set_controller_reference(sub, dpl)

        for override in sub.spec.overrides:
            if override.cluster_name == "/":
                dpl.spec.template = _override_template(dpl.spec.template or {}, override.cluster_overrides)
            else:
                dpl.spec.overrides.append(
                    ClusterOverrides(
                        cluster_name=override.cluster_name,
                        cluster_overrides=copy.deepcopy(override.cluster_overrides),
                    )
                )
        return dpl

    def update_subscription_status(self, sub: Subscription, found: Deployable) -> None:
        """Aggregate per-cluster statuses from the deployable into the subscription."""
        new_status = SubscriptionStatus(phase=SubscriptionPhase.PROPAGATED)

        if found.status.phase != DEPLOYABLE_FAILED:
            for cluster, unit in found.status.propagated_status.items():
                cluster_status: SubscriptionPerClusterStatus | None = SubscriptionPerClusterStatus()
                if unit.phase == DEPLOYABLE_DEPLOYED:
                    remote = SubscriptionStatus()
                    if unit.resource_status is not None:
                        remote = SubscriptionStatus.from_dict(unit.resource_status)
                    cluster_status = remote.statuses.get("/")
                new_status.statuses[cluster] = cluster_status

        new_status.last_update_time = sub.status.last_update_time

        if new_status != sub.status:
            sub.status = copy.deepcopy(new_status)
            sub.status.last_update_time = _now()
            try:
                self.client.update_status(sub)
            except Exception as err:
                log.info("failed to update hub subscription status of %s: %s", sub.key, err)

    def get_subscription_deployables(self, sub: Subscription) -> dict[str, Deployable] | None:
        """Return the channel deployables that pass the subscription's filter, keyed by namespace/name."""
        namespace, _ = self.get_channel_namespace_type(sub)

        selector = None
        if sub.spec.package_filter is not None and sub.spec.package_filter.label_selector is not None:
            selector = sub.spec.package_filter.label_selector

        try:
            items = self.client.list("Deployable", namespace, selector)
        except Exception as err:
            log.error("failed to list deployables for subscription %s: %s", sub.key, err)
            return None

        return {
            str(dpl.key): dpl.deep_copy()
            for dpl in items
            if check_deployable_by_subscription_package_filter(sub, dpl, self.version_matcher)
        }

    def create_target_dpl_for_rolling_update(self, sub: Subscription) -> Deployable | None:
        """Create or refresh the deployable holding the rolling-update target subscription."""
        target_name = sub.metadata.annotations.get(ANNOTATION_ROLLING_UPDATE_TARGET, "")
        if not target_name:
            return None

        target_key = NamespacedName(name=target_name, namespace=sub.metadata.namespace)
        try:
            target_sub = self.client.get("Subscription", target_key)
        except NotFoundError:
            log.info("target subscription is gone: %s", target_key)
            return None

        target_dpl = self.prepare_deployable_for_subscription(target_sub, sub)
        target_dpl.metadata.name = sub.metadata.name + "-target-deployable"
        target_dpl.metadata.namespace = sub.metadata.namespace

        self.update_target_subscription_deployable(sub, target_dpl)
        return target_dpl

    def update_target_subscription_deployable(self, sub: Subscription, target_dpl: Deployable) -> None:
        """Create the target deployable, or update it when its template or overrides changed."""
        key = target_dpl.key
        try:
            found = self.client.get("Deployable", key)
        except NotFoundError:
            log.info("creating target deployable %s", key)
            self._record_create(sub, target_dpl, f"target Depolyable {key} created in the subscription namespace")
            return

        if target_dpl.spec.template != found.spec.template or target_dpl.spec.overrides != found.spec.overrides:
            found.spec = copy.deepcopy(target_dpl.spec)
            self._mark_generated(found)
            self._record_update(sub, found, f"target Depolyable {key} updated in the subscription namespace")