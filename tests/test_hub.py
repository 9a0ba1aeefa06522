import pytest

from appsub.client import EventRecorder, MemoryClient, NotFoundError
from appsub.hub import HubReconciler, check_deployable_by_subscription_package_filter
from appsub.types import (
    ANNOTATION_CHANNEL_GENERATION,
    ANNOTATION_DEPLOYABLE_VERSION,
    ANNOTATION_DEPLOYABLES,
    ANNOTATION_IS_GENERATED,
    ANNOTATION_LOCAL,
    ANNOTATION_ROLLING_UPDATE_TARGET,
    ANNOTATION_SUBSCRIPTION,
    CHANNEL_TYPE_NAMESPACE,
    DEPLOYABLE_DEPLOYED,
    DEPLOYABLE_FAILED,
    Channel,
    ChannelSpec,
    ClusterOverrides,
    Deployable,
    DeployableSpec,
    NamespacedName,
    ObjectMeta,
    PackageFilter,
    Placement,
    ResourceUnitStatus,
    Subscription,
    SubscriptionPerClusterStatus,
    SubscriptionPhase,
    SubscriptionSpec,
    SubscriptionStatus,
)

CHN_KEY = NamespacedName(name="test-chn", namespace="test-chn-namespace")
SUB_KEY = NamespacedName(name="test-sub", namespace="test-sub-namespace")


@pytest.fixture
def client():
    return MemoryClient()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def reconciler(client, recorder):
    return HubReconciler(client, recorder)


@pytest.fixture
def channel(client):
    chn = Channel(
        metadata=ObjectMeta(name=CHN_KEY.name, namespace=CHN_KEY.namespace),
        spec=ChannelSpec(type=CHANNEL_TYPE_NAMESPACE),
    )
    client.create(chn)
    return chn


def make_sub(placement=None, name=SUB_KEY.name):
    return Subscription(
        metadata=ObjectMeta(name=name, namespace=SUB_KEY.namespace),
        spec=SubscriptionSpec(channel=str(CHN_KEY), placement=placement),
    )


def add_channel_deployable(client, name, annotations=None, template=None):
    dpl = Deployable(
        metadata=ObjectMeta(name=name, namespace=CHN_KEY.namespace, annotations=annotations or {}),
        spec=DeployableSpec(template=template),
    )
    client.create(dpl)
    return dpl


def test_do_mcm_reconcile_without_placement(client, reconciler):
    sub = make_sub()
    client.create(sub)
    reconciler.do_mcm_hub_reconcile(sub)
    with pytest.raises(NotFoundError):
        client.get("Deployable", NamespacedName(name="test-sub-deployable", namespace=SUB_KEY.namespace))


def test_channel_namespace_type(reconciler, channel):
    assert reconciler.get_channel_namespace_type(make_sub()) == (CHN_KEY.namespace, CHANNEL_TYPE_NAMESPACE)


def test_channel_namespace_type_missing_channel(reconciler):
    assert reconciler.get_channel_namespace_type(make_sub()) == (CHN_KEY.namespace, "")
    sub = make_sub()
    sub.spec.channel = "plain"
    assert reconciler.get_channel_namespace_type(sub) == (SUB_KEY.namespace, "")


def test_channel_generation(reconciler, channel):
    assert reconciler.get_channel_generation(make_sub()) == "1"


def test_channel_generation_missing(reconciler):
    with pytest.raises(NotFoundError):
        reconciler.get_channel_generation(make_sub())


def test_prepare_deployable(client, reconciler, channel):
    sub = make_sub(Placement(clusters=["c1"]))
    client.create(sub)
    dpl = reconciler.prepare_deployable_for_subscription(sub, None)

    assert dpl.metadata.name == "test-sub-deployable"
    assert dpl.metadata.namespace == SUB_KEY.namespace
    assert dpl.metadata.annotations == {ANNOTATION_LOCAL: "false", ANNOTATION_IS_GENERATED: "true"}
    assert dpl.spec.placement == Placement(clusters=["c1"])

    template = dpl.spec.template
    assert template["kind"] == "Subscription"
    assert template["apiVersion"] == "app.ibm.com/v1alpha1"
    assert template["spec"]["placement"] == {"local": True}
    assert "uid" not in template["metadata"]
    assert template["metadata"]["annotations"] == {
        ANNOTATION_SUBSCRIPTION: str(SUB_KEY),
        ANNOTATION_CHANNEL_GENERATION: "1",
    }

    owners = dpl.metadata.owner_references
    assert len(owners) == 1
    assert owners[0].controller is True
    assert owners[0].uid == sub.metadata.uid


def test_prepare_deployable_overrides(client, reconciler):
    sub = make_sub(Placement(clusters=["c1"]))
    sub.spec.overrides = [
        ClusterOverrides(cluster_name="/", cluster_overrides=[{"path": "spec.name", "value": "pkg"}]),
        ClusterOverrides(cluster_name="c1", cluster_overrides=[{"path": "spec.name", "value": "other"}]),
    ]
    client.create(sub)
    dpl = reconciler.prepare_deployable_for_subscription(sub, None)
    assert dpl.spec.template["spec"]["name"] == "pkg"
    assert [ov.cluster_name for ov in dpl.spec.overrides] == ["c1"]
    assert "overrides" not in dpl.spec.template["spec"]


def test_package_filter_name_and_annotations():
    sub = make_sub()
    sub.spec.package_filter = PackageFilter(annotations={"tier": "web"})
    dpl = Deployable(
        metadata=ObjectMeta(name="a"),
        spec=DeployableSpec(template={"metadata": {"annotations": {"tier": "web"}}}),
    )
    assert check_deployable_by_subscription_package_filter(sub, dpl) is True

    sub.spec.package_filter.annotations = {"tier": "db"}
    assert check_deployable_by_subscription_package_filter(sub, dpl) is False

    sub.spec.package_filter.annotations = {}
    sub.spec.package = "b"
    assert check_deployable_by_subscription_package_filter(sub, dpl) is False


def test_package_filter_version():
    sub = make_sub()
    sub.spec.package_filter = PackageFilter(version="1.2.x")
    ok = Deployable(metadata=ObjectMeta(name="a", annotations={ANNOTATION_DEPLOYABLE_VERSION: "1.2.5"}))
    bad = Deployable(metadata=ObjectMeta(name="b", annotations={ANNOTATION_DEPLOYABLE_VERSION: "1.3.0"}))
    assert check_deployable_by_subscription_package_filter(sub, ok) is True
    assert check_deployable_by_subscription_package_filter(sub, bad) is False

    calls = []

    def matcher(constraint, version):
        calls.append((constraint, version))
        return True

    assert check_deployable_by_subscription_package_filter(sub, bad, matcher) is True
    assert calls == [("1.2.x", "1.3.0")]


def test_no_package_filter_accepts_everything():
    sub = make_sub()
    sub.spec.package = "other"
    assert check_deployable_by_subscription_package_filter(sub, Deployable(metadata=ObjectMeta(name="a"))) is True


def test_update_deployables_annotation(client, reconciler, channel):
    add_channel_deployable(client, "b")
    add_channel_deployable(client, "a")
    sub = make_sub()
    client.create(sub)

    assert reconciler.update_deployables_annotation(sub) is True
    value = sub.metadata.annotations[ANNOTATION_DEPLOYABLES]
    assert set(value.split(",")) == {f"{CHN_KEY.namespace}/a", f"{CHN_KEY.namespace}/b"}
    stored = client.get("Subscription", SUB_KEY)
    assert stored.metadata.annotations[ANNOTATION_DEPLOYABLES] == value

    assert reconciler.update_deployables_annotation(sub) is False


def test_reconcile_creates_and_then_propagates(client, reconciler, recorder, channel):
    sub = make_sub(Placement(clusters=["c1"]))
    client.create(sub)

    reconciler.do_mcm_hub_reconcile(sub)
    dpl_key = NamespacedName(name="test-sub-deployable", namespace=SUB_KEY.namespace)
    created = client.get("Deployable", dpl_key)
    assert created.spec.template["metadata"]["name"] == SUB_KEY.name
    assert recorder.events[-1]["reason"] == "Deploy"
    assert recorder.events[-1]["type"] == "Normal"

    reconciler.do_mcm_hub_reconcile(sub)
    assert sub.status.phase == SubscriptionPhase.PROPAGATED
    assert client.get("Subscription", SUB_KEY).status.phase == SubscriptionPhase.PROPAGATED


def test_reconcile_updates_changed_template(client, reconciler, channel):
    sub = make_sub(Placement(clusters=["c1"]))
    client.create(sub)
    reconciler.do_mcm_hub_reconcile(sub)

    sub.spec.package = "pkg"
    reconciler.do_mcm_hub_reconcile(sub)
    stored = client.get("Deployable", NamespacedName(name="test-sub-deployable", namespace=SUB_KEY.namespace))
    assert stored.spec.template["spec"]["name"] == "pkg"
    assert stored.metadata.annotations[ANNOTATION_IS_GENERATED] == "true"


def test_update_subscription_status_from_clusters(client, reconciler):
    sub = make_sub(Placement(clusters=["cluster1"]))
    client.create(sub)
    found = Deployable(metadata=ObjectMeta(name="d", namespace=SUB_KEY.namespace))
    found.status.propagated_status = {
        "cluster1": ResourceUnitStatus(
            phase=DEPLOYABLE_DEPLOYED,
            resource_status={
                "phase": "Subscribed",
                "statuses": {"/": {"packages": {"pkg": {"phase": "Subscribed"}}}},
            },
        ),
        "cluster2": ResourceUnitStatus(phase="Propagated"),
    }
    reconciler.update_subscription_status(sub, found)

    assert sub.status.phase == SubscriptionPhase.PROPAGATED
    assert sub.status.statuses["cluster1"].packages["pkg"].phase == SubscriptionPhase.SUBSCRIBED
    assert sub.status.statuses["cluster2"] == SubscriptionPerClusterStatus()
    assert client.get("Subscription", SUB_KEY).status == sub.status


def test_update_subscription_status_failed_deployable(client, reconciler):
    sub = make_sub(Placement(clusters=["c1"]))
    sub.status.statuses = {"c1": SubscriptionPerClusterStatus()}
    client.create(sub)
    found = Deployable(metadata=ObjectMeta(name="d", namespace=SUB_KEY.namespace))
    found.status.phase = DEPLOYABLE_FAILED
    found.status.propagated_status = {"c1": ResourceUnitStatus(phase=DEPLOYABLE_DEPLOYED)}
    reconciler.update_subscription_status(sub, found)
    assert sub.status.statuses == {}
    assert sub.status.phase == SubscriptionPhase.PROPAGATED


def test_update_subscription_status_bad_remote_status(client, reconciler):
    sub = make_sub(Placement(clusters=["c1"]))
    client.create(sub)
    found = Deployable(metadata=ObjectMeta(name="d", namespace=SUB_KEY.namespace))
    found.status.propagated_status = {
        "c1": ResourceUnitStatus(phase=DEPLOYABLE_DEPLOYED, resource_status={"phase": "Bogus"})
    }
    with pytest.raises(ValueError):
        reconciler.update_subscription_status(sub, found)


def test_stop_deploy_subscription(client, reconciler, channel):
    sub = make_sub(Placement(clusters=["c1"]))
    client.create(sub)
    reconciler.do_mcm_hub_reconcile(sub)
    reconciler.do_mcm_hub_reconcile(sub)
    assert sub.status.phase == SubscriptionPhase.PROPAGATED

    sub.spec.placement = None
    reconciler.do_mcm_hub_reconcile(sub)
    with pytest.raises(NotFoundError):
        client.get("Deployable", NamespacedName(name="test-sub-deployable", namespace=SUB_KEY.namespace))
    assert sub.status.phase == SubscriptionPhase.UNKNOWN
    assert client.get("Subscription", SUB_KEY).status.phase == SubscriptionPhase.UNKNOWN


def test_stop_deploy_keeps_foreign_deployable(client, reconciler):
    sub = make_sub()
    client.create(sub)
    foreign = Deployable(metadata=ObjectMeta(name="test-sub-deployable", namespace=SUB_KEY.namespace))
    client.create(foreign)
    reconciler.stop_deploy_subscription(sub)
    assert client.get("Deployable", foreign.key).metadata.name == "test-sub-deployable"


def test_rolling_update_target(client, reconciler, channel):
    target = make_sub(name="target-sub")
    target.spec.package = "pkg"
    client.create(target)
    sub = make_sub(Placement(clusters=["c1"]))
    sub.metadata.annotations = {ANNOTATION_ROLLING_UPDATE_TARGET: "target-sub"}
    client.create(sub)

    target_dpl = reconciler.create_target_dpl_for_rolling_update(sub)
    assert target_dpl.metadata.name == "test-sub-target-deployable"
    stored = client.get("Deployable", target_dpl.key)
    assert stored.spec.template["metadata"]["name"] == SUB_KEY.name
    assert stored.spec.template["spec"]["name"] == "pkg"
    assert stored.spec.template["metadata"]["annotations"][ANNOTATION_SUBSCRIPTION] == str(SUB_KEY)

    reconciler.do_mcm_hub_reconcile(sub)
    dpl = client.get("Deployable", NamespacedName(name="test-sub-deployable", namespace=SUB_KEY.namespace))
    assert dpl.metadata.annotations[ANNOTATION_ROLLING_UPDATE_TARGET] == "test-sub-target-deployable"


def test_rolling_update_target_gone(client, reconciler):
    sub = make_sub(Placement(clusters=["c1"]))
    sub.metadata.annotations = {ANNOTATION_ROLLING_UPDATE_TARGET: "missing"}
    client.create(sub)
    assert reconciler.create_target_dpl_for_rolling_update(sub) is None
    assert client.list("Deployable", SUB_KEY.namespace, None) == []


def test_update_target_deployable_overrides_change(client, reconciler, recorder):
    sub = make_sub(Placement(clusters=["c1"]))
    client.create(sub)
    target_dpl = reconciler.prepare_deployable_for_subscription(sub, None)
    target_dpl.metadata.name = "test-sub-target-deployable"
    reconciler.update_target_subscription_deployable(sub, target_dpl.deep_copy())

    changed = target_dpl.deep_copy()
    changed.spec.overrides = [ClusterOverrides(cluster_name="c1")]
    reconciler.update_target_subscription_deployable(sub, changed)
    stored = client.get("Deployable", changed.key)
    assert stored.spec.overrides == [ClusterOverrides(cluster_name="c1")]
    assert len(recorder.events) == 2
    assert "updated" in recorder.events[-1]["message"]