# appsub

`appsub` models application subscriptions and provides a hub-side reconciler
that distributes them to managed clusters. A subscription names a channel
(`namespace/name`). It may also name a package, a package filter and a
placement. When the placement names clusters, a cluster selector or a placement
reference, the hub wraps the subscription in a deployable called
`<name>-deployable`. It then keeps that deployable and the subscription's
per-cluster status in step.

## Install

```
pip install .
```

To run the tests as well:

```
pip install .[test]
pytest
```

## Modules

- `appsub.types` holds the data model:
  - `Subscription`, `SubscriptionSpec`, `SubscriptionStatus` and `SubscriptionPhase`.
  - `PackageFilter`, `Placement`, `ClusterOverrides` and `TimeWindow`.
  - `Channel` and `Deployable`.
  - `ObjectMeta`, `OwnerReference`, `NamespacedName`, and `LabelSelector` with `matches()`.

  `Subscription` and `SubscriptionStatus` convert to and from plain dictionaries
  with `to_dict()` and `from_dict()`. Resources copy with `deep_copy()`.
- `appsub.client` holds `MemoryClient`, an in-memory object store keyed by kind,
  namespace and name.
  - It provides `get`, `create`, `update`, `update_status`, `delete` and `list`.
  - `list` can filter by namespace and by label selector.
  - It raises `NotFoundError` and `AlreadyExistsError`.
  - `update` keeps the stored status. It raises the generation when the spec
    or data changed.

  The module also holds `Scheme`, `add_to_scheme()` and `EventRecorder`, which
  collects events in its `events` list.
- `appsub.reference` holds `ReferenceManager`, which shares referred objects
  between subscriptions, such as secrets and config maps. It labels each object
  `IsReferredBySub-<name>` and adds owner references.
  - `list_and_deploy_referred_object()` adopts or creates the referred object.
    It also releases stale objects.
  - `delete_referred_objects()` releases objects when a subscription goes away.
- `appsub.hub` holds `HubReconciler`. It builds the deployable for a
  subscription and handles the rolling-update target through the
  `<name>-target-deployable` resource. It records the subscribed deployables in
  an annotation and folds per-cluster status back into the subscription.
  - `check_deployable_by_subscription_package_filter()` applies package name,
    annotation and version filters. A version filter such as `1.2.x` matches
    any `1.2` version; the matcher can be replaced.
- `appsub.mcmhub_controller` holds `SubscriptionReconciler.reconcile()`, which
  takes a `ReconcileRequest` and returns a `ReconcileResult`. If the status
  update fails, it asks to be retried after one second.
  `deployable_status_changed()` tells whether a deployable's status differs
  between two versions.
- `appsub.options` holds `ManagerOptions` and `parse_options()`.
- `appsub.manager` holds `Manager`, which keeps one work queue per controller:
  - `add_controller()` registers a controller.
  - `enqueue()` adds a request to every queue.
  - `run_once()` reconciles each queued request once.

  The module also holds `add_to_manager()`, `build_manager()` and `main()`.

## Example

```python
from appsub.client import MemoryClient
from appsub.mcmhub_controller import ReconcileRequest, SubscriptionReconciler
from appsub.types import NamespacedName, ObjectMeta, Placement, Subscription, SubscriptionSpec

client = MemoryClient()
client.create(
    Subscription(
        metadata=ObjectMeta(name="test-sub", namespace="test-sub-namespace"),
        spec=SubscriptionSpec(
            channel="test-chn-namespace/test-chn",
            placement=Placement(clusters=["cluster1"]),
        ),
    )
)

reconciler = SubscriptionReconciler(client)
reconciler.reconcile(ReconcileRequest(NamespacedName("test-sub", "test-sub-namespace")))

dpl = client.get("Deployable", NamespacedName("test-sub-deployable", "test-sub-namespace"))
sub = client.get("Subscription", NamespacedName("test-sub", "test-sub-namespace"))
print(sub.status.phase)  # SubscriptionPhase.PROPAGATED
```

## Command line

The `WATCH_NAMESPACE` environment variable must be set. An empty value means
all namespaces. If it is not set, the command exits with status 1.

```
WATCH_NAMESPACE= appsub-manager --cluster-name local --cluster-namespace local --sync-interval 60
```

Options:

- `--metrics-addr`: the address the metrics endpoint binds to. The command
  parses this option but does not use it.
- `--hub-cluster-configfile`: the configuration file for the hub cluster. If it
  is given, the command reads it once and fails if the file cannot be read.
- `--cluster-name`: the name of this endpoint.
- `--cluster-namespace`: the cluster namespace of this endpoint in the hub.
- `--sync-interval`: the housekeeping interval, in seconds. The default is 60.

## What it does not do

- The package does not talk to a Kubernetes API server. All objects live in a
  `MemoryClient`, which keeps nothing between runs. The hub configuration file
  is read but not interpreted.
- The command starts with an empty store. It reconciles any subscriptions in
  that store and exits once no request asks to be retried. There are no
  watches, no leader election and no metrics server.
- Subscriptions on managed clusters are not handled. The package does not pull
  packages from namespace, Helm or object-bucket channels, and it does not
  synchronise resources onto an endpoint cluster.