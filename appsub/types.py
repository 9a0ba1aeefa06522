"""Resource model for subscriptions, channels and deployables."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

GROUP = "app.ibm.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

ANNOTATION_SYNC_SOURCE = GROUP + "/sync-source"
ANNOTATION_ROLLING_UPDATE_TARGET = GROUP + "/rollingupdate-target"
ANNOTATION_DEPLOYABLES = GROUP + "/deployables"
ANNOTATION_HOSTING = GROUP + "/hosting-subscription"
ANNOTATION_CHANNEL_GENERATION = GROUP + "/channel-generation"

ANNOTATION_LOCAL = GROUP + "/local"
ANNOTATION_IS_GENERATED = GROUP + "/is-generated"
ANNOTATION_SUBSCRIPTION = GROUP + "/subscription"
ANNOTATION_DEPLOYABLE_VERSION = GROUP + "/deployable-version"

DEFAULT_ROLLING_UPDATE_MAX_UNAVAILABLE_PERCENTAGE = 25

DEPLOYABLE_DEPLOYED = "Deployed"
DEPLOYABLE_FAILED = "Failed"
DEPLOYABLE_PROPAGATED = "Propagated"

CHANNEL_TYPE_NAMESPACE = "namespace"
CHANNEL_TYPE_HELM_REPO = "helmrepo"
CHANNEL_TYPE_OBJECT_BUCKET = "objectbucket"


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(text: str | None) -> datetime | None:
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


@dataclass(frozen=True)
class NamespacedName:
    """Name and namespace identifying an object."""

    name: str = ""
    namespace: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool = False


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    creation_timestamp: datetime | None = None
    self_link: str = ""


@dataclass
class LabelSelector:
    """Label selector with equality labels and set-based expressions."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[dict[str, Any]] = field(default_factory=list)

    def matches(self, labels: dict[str, str] | None) -> bool:
        labels = labels or {}
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        for expression in self.match_expressions:
            key = expression["key"]
            operator = expression["operator"]
            values = expression.get("values") or []
            if operator == "In":
                ok = key in labels and labels[key] in values
            elif operator == "NotIn":
                ok = key not in labels or labels[key] not in values
            elif operator == "Exists":
                ok = key in labels
            elif operator == "DoesNotExist":
                ok = key not in labels
            else:
                raise ValueError(f"unknown label selector operator {operator!r}")
            if not ok:
                return False
        return True


@dataclass
class Resource:
    """An object stored in the cluster; `data` holds untyped content."""

    kind: str = ""
    api_version: str = ""
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(name=self.metadata.name, namespace=self.metadata.namespace)

    def deep_copy(self) -> Resource:
        return copy.deepcopy(self)


@dataclass
class PackageFilter:
    label_selector: LabelSelector | None = None
    annotations: dict[str, str] = field(default_factory=dict)
    version: str = ""
    filter_ref: str | None = None


@dataclass
class PackageOverride:
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class Overrides:
    package_name: str = ""
    package_overrides: list[PackageOverride] = field(default_factory=list)


@dataclass
class HourRange:
    start: str = ""
    end: str = ""


@dataclass
class TimeWindow:
    window_type: str = ""
    location: str = ""
    weekdays: list[str] = field(default_factory=list)
    hours: list[HourRange] = field(default_factory=list)


@dataclass
class Placement:
    local: bool | None = None
    clusters: list[str] | None = None
    cluster_selector: LabelSelector | None = None
    placement_ref: str | None = None


@dataclass
class ClusterOverrides:
    cluster_name: str = ""
    cluster_overrides: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SubscriptionSpec:
    channel: str = ""
    package: str = ""
    package_filter: PackageFilter | None = None
    package_overrides: list[Overrides] = field(default_factory=list)
    placement: Placement | None = None
    overrides: list[ClusterOverrides] = field(default_factory=list)
    time_window: TimeWindow | None = None


class SubscriptionPhase(str, Enum):
    UNKNOWN = ""
    PROPAGATED = "Propagated"
    SUBSCRIBED = "Subscribed"
    FAILED = "Failed"


@dataclass
class SubscriptionUnitStatus:
    phase: SubscriptionPhase = SubscriptionPhase.UNKNOWN
    message: str = ""
    reason: str = ""
    last_update_time: datetime | None = None
    resource_status: dict[str, Any] | None = None


@dataclass
class SubscriptionPerClusterStatus:
    packages: dict[str, SubscriptionUnitStatus | None] = field(default_factory=dict)


@dataclass
class SubscriptionStatus:
    phase: SubscriptionPhase = SubscriptionPhase.UNKNOWN
    message: str = ""
    reason: str = ""
    last_update_time: datetime | None = None
    statuses: dict[str, SubscriptionPerClusterStatus | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        _put_phase_message_reason(out, self.phase, self.message, self.reason)
        out["lastUpdateTime"] = _format_time(self.last_update_time)
        if self.statuses:
            out["statuses"] = {
                cluster: None if per is None else _per_cluster_to_dict(per)
                for cluster, per in self.statuses.items()
            }
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SubscriptionStatus:
        data = data or {}
        statuses = {
            cluster: None if per is None else _per_cluster_from_dict(per)
            for cluster, per in (data.get("statuses") or {}).items()
        }
        return cls(
            phase=SubscriptionPhase(data.get("phase", "")),
            message=data.get("message", ""),
            reason=data.get("reason", ""),
            last_update_time=_parse_time(data.get("lastUpdateTime")),
            statuses=statuses,
        )


@dataclass
class Subscription(Resource):
    kind: str = "Subscription"
    api_version: str = API_VERSION
    spec: SubscriptionSpec = field(default_factory=SubscriptionSpec)
    status: SubscriptionStatus = field(default_factory=SubscriptionStatus)

    def deep_copy(self) -> Subscription:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": _meta_to_dict(self.metadata),
            "spec": _spec_to_dict(self.spec),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subscription:
        return cls(
            kind=data.get("kind", "Subscription"),
            api_version=data.get("apiVersion", API_VERSION),
            metadata=_meta_from_dict(data.get("metadata") or {}),
            spec=_spec_from_dict(data.get("spec") or {}),
            status=SubscriptionStatus.from_dict(data.get("status")),
        )


@dataclass
class SubscriptionList:
    items: list[Subscription] = field(default_factory=list)


@dataclass
class ChannelSpec:
    type: str = ""
    pathname: str = ""
    secret_ref: str | None = None
    config_map_ref: str | None = None


@dataclass
class Channel(Resource):
    kind: str = "Channel"
    api_version: str = API_VERSION
    spec: ChannelSpec = field(default_factory=ChannelSpec)

    def deep_copy(self) -> Channel:
        return copy.deepcopy(self)


@dataclass
class DeployableSpec:
    template: dict[str, Any] | None = None
    placement: Placement | None = None
    overrides: list[ClusterOverrides] = field(default_factory=list)


@dataclass
class ResourceUnitStatus:
    phase: str = ""
    reason: str = ""
    message: str = ""
    last_update_time: datetime | None = None
    resource_status: dict[str, Any] | None = None


@dataclass
class DeployableStatus:
    phase: str = ""
    reason: str = ""
    message: str = ""
    propagated_status: dict[str, ResourceUnitStatus] = field(default_factory=dict)


@dataclass
class Deployable(Resource):
    kind: str = "Deployable"
    api_version: str = API_VERSION
    spec: DeployableSpec = field(default_factory=DeployableSpec)
    status: DeployableStatus = field(default_factory=DeployableStatus)

    def deep_copy(self) -> Deployable:
        return copy.deepcopy(self)


# --- serialisation helpers -------------------------------------------------


def _put_phase_message_reason(out: dict[str, Any], phase, message: str, reason: str) -> None:
    if phase:
        out["phase"] = SubscriptionPhase(phase).value
    if message:
        out["message"] = message
    if reason:
        out["reason"] = reason


def _unit_to_dict(unit: SubscriptionUnitStatus) -> dict[str, Any]:
    out: dict[str, Any] = {}
    _put_phase_message_reason(out, unit.phase, unit.message, unit.reason)
    out["lastUpdateTime"] = _format_time(unit.last_update_time)
    if unit.resource_status is not None:
        out["resourceStatus"] = copy.deepcopy(unit.resource_status)
    return out


def _unit_from_dict(data: dict[str, Any]) -> SubscriptionUnitStatus:
    return SubscriptionUnitStatus(
        phase=SubscriptionPhase(data.get("phase", "")),
        message=data.get("message", ""),
        reason=data.get("reason", ""),
        last_update_time=_parse_time(data.get("lastUpdateTime")),
        resource_status=copy.deepcopy(data.get("resourceStatus")),
    )


def _per_cluster_to_dict(per: SubscriptionPerClusterStatus) -> dict[str, Any]:
    if not per.packages:
        return {}
    return {
        "packages": {
            name: None if unit is None else _unit_to_dict(unit)
            for name, unit in per.packages.items()
        }
    }


def _per_cluster_from_dict(data: dict[str, Any]) -> SubscriptionPerClusterStatus:
    return SubscriptionPerClusterStatus(
        packages={
            name: None if unit is None else _unit_from_dict(unit)
            for name, unit in (data.get("packages") or {}).items()
        }
    )


def _owner_to_dict(owner: OwnerReference) -> dict[str, Any]:
    out: dict[str, Any] = {
        "apiVersion": owner.api_version,
        "kind": owner.kind,
        "name": owner.name,
        "uid": owner.uid,
    }
    if owner.controller:
        out["controller"] = True
    return out


def _owner_from_dict(data: dict[str, Any]) -> OwnerReference:
    return OwnerReference(
        api_version=data.get("apiVersion", ""),
        kind=data.get("kind", ""),
        name=data.get("name", ""),
        uid=data.get("uid", ""),
        controller=bool(data.get("controller", False)),
    )


def _meta_to_dict(meta: ObjectMeta) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if meta.name:
        out["name"] = meta.name
    if meta.namespace:
        out["namespace"] = meta.namespace
    if meta.self_link:
        out["selfLink"] = meta.self_link
    if meta.uid:
        out["uid"] = meta.uid
    if meta.resource_version:
        out["resourceVersion"] = meta.resource_version
    if meta.generation:
        out["generation"] = meta.generation
    out["creationTimestamp"] = _format_time(meta.creation_timestamp)
    if meta.labels:
        out["labels"] = dict(meta.labels)
    if meta.annotations:
        out["annotations"] = dict(meta.annotations)
    if meta.owner_references:
        out["ownerReferences"] = [_owner_to_dict(o) for o in meta.owner_references]
    return out


def _meta_from_dict(data: dict[str, Any]) -> ObjectMeta:
    return ObjectMeta(
        name=data.get("name", ""),
        namespace=data.get("namespace", ""),
        labels=dict(data.get("labels") or {}),
        annotations=dict(data.get("annotations") or {}),
        owner_references=[_owner_from_dict(o) for o in data.get("ownerReferences") or []],
        uid=data.get("uid", ""),
        resource_version=data.get("resourceVersion", ""),
        generation=int(data.get("generation", 0)),
        creation_timestamp=_parse_time(data.get("creationTimestamp")),
        self_link=data.get("selfLink", ""),
    )


def _selector_to_dict(selector: LabelSelector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if selector.match_labels:
        out["matchLabels"] = dict(selector.match_labels)
    if selector.match_expressions:
        out["matchExpressions"] = copy.deepcopy(selector.match_expressions)
    return out


def _selector_from_dict(data: dict[str, Any] | None) -> LabelSelector | None:
    if data is None:
        return None
    return LabelSelector(
        match_labels=dict(data.get("matchLabels") or {}),
        match_expressions=copy.deepcopy(data.get("matchExpressions") or []),
    )


def _filter_to_dict(pf: PackageFilter) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if pf.label_selector is not None:
        out["labelSelector"] = _selector_to_dict(pf.label_selector)
    if pf.annotations:
        out["annotations"] = dict(pf.annotations)
    if pf.version:
        out["version"] = pf.version
    if pf.filter_ref is not None:
        out["filterRef"] = {"name": pf.filter_ref}
    return out


def _filter_from_dict(data: dict[str, Any]) -> PackageFilter:
    ref = data.get("filterRef")
    return PackageFilter(
        label_selector=_selector_from_dict(data.get("labelSelector")),
        annotations=dict(data.get("annotations") or {}),
        version=data.get("version", ""),
        filter_ref=None if ref is None else ref.get("name", ""),
    )


def _placement_to_dict(pl: Placement) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if pl.clusters:
        out["clusters"] = [{"name": name} for name in pl.clusters]
    if pl.cluster_selector is not None:
        out["clusterSelector"] = _selector_to_dict(pl.cluster_selector)
    if pl.placement_ref is not None:
        out["placementRef"] = {"name": pl.placement_ref}
    if pl.local is not None:
        out["local"] = pl.local
    return out


def _placement_from_dict(data: dict[str, Any]) -> Placement:
    clusters = data.get("clusters")
    ref = data.get("placementRef")
    return Placement(
        local=data.get("local"),
        clusters=None if clusters is None else [c.get("name", "") for c in clusters],
        cluster_selector=_selector_from_dict(data.get("clusterSelector")),
        placement_ref=None if ref is None else ref.get("name", ""),
    )


def _time_window_to_dict(tw: TimeWindow) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if tw.window_type:
        out["windowtype"] = tw.window_type
    if tw.location:
        out["location"] = tw.location
    if tw.weekdays:
        out["weekdays"] = list(tw.weekdays)
    if tw.hours:
        out["hours"] = [
            {k: v for k, v in (("start", h.start), ("end", h.end)) if v} for h in tw.hours
        ]
    return out


def _time_window_from_dict(data: dict[str, Any]) -> TimeWindow:
    return TimeWindow(
        window_type=data.get("windowtype", ""),
        location=data.get("location", ""),
        weekdays=list(data.get("weekdays") or []),
        hours=[HourRange(start=h.get("start", ""), end=h.get("end", "")) for h in data.get("hours") or []],
    )


def _spec_to_dict(spec: SubscriptionSpec) -> dict[str, Any]:
    out: dict[str, Any] = {"channel": spec.channel}
    if spec.package:
        out["name"] = spec.package
    if spec.package_filter is not None:
        out["packageFilter"] = _filter_to_dict(spec.package_filter)
    if spec.package_overrides:
        out["packageOverrides"] = [
            {
                "packageName": ov.package_name,
                "packageOverrides": [copy.deepcopy(po.raw) for po in ov.package_overrides],
            }
            for ov in spec.package_overrides
        ]
    if spec.placement is not None:
        out["placement"] = _placement_to_dict(spec.placement)
    if spec.overrides:
        out["overrides"] = [
            {"clusterName": ov.cluster_name, "clusterOverrides": copy.deepcopy(ov.cluster_overrides)}
            for ov in spec.overrides
        ]
    if spec.time_window is not None:
        out["timewindow"] = _time_window_to_dict(spec.time_window)
    return out


def _spec_from_dict(data: dict[str, Any]) -> SubscriptionSpec:
    pf = data.get("packageFilter")
    pl = data.get("placement")
    tw = data.get("timewindow")
    return SubscriptionSpec(
        channel=data.get("channel", ""),
        package=data.get("name", ""),
        package_filter=None if pf is None else _filter_from_dict(pf),
        package_overrides=[
            Overrides(
                package_name=ov.get("packageName", ""),
                package_overrides=[PackageOverride(raw=copy.deepcopy(po)) for po in ov.get("packageOverrides") or []],
            )
            for ov in data.get("packageOverrides") or []
        ],
        placement=None if pl is None else _placement_from_dict(pl),
        overrides=[
            ClusterOverrides(
                cluster_name=ov.get("clusterName", ""),
                cluster_overrides=copy.deepcopy(ov.get("clusterOverrides") or []),
            )
            for ov in data.get("overrides") or []
        ],
        time_window=None if tw is None else _time_window_from_dict(tw),
    )