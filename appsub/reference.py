"""Secrets and config maps that subscriptions refer to, copied into the subscription namespace."""

from __future__ import annotations

import logging

from .client import MemoryClient, NotFoundError
from .types import GROUP, VERSION, LabelSelector, NamespacedName, OwnerReference, Resource, Subscription

log = logging.getLogger(__name__)

SECRET_KIND = "Secret"
CONFIG_MAP_KIND = "ConfigMap"
SUBSCRIPTION_GROUP = GROUP
SUBSCRIPTION_VERSION = VERSION
SUBSCRIPTION_KIND = "Subscription"

# Label key prefix that marks an object as referred to by a subscription.
SECRET_REFERRED_MARKER = "IsReferredBySub-"


def _refer_label(subname: str) -> str:
    return SECRET_REFERRED_MARKER + subname


def is_object_owned_by_sub(obj: Resource, subname: str) -> bool:
    """Tell whether any owner reference of obj names the subscription."""
    return any(owner.name == subname for owner in obj.metadata.owner_references)


def add_object_owned_by_sub(obj: Resource, sub: Subscription) -> list[OwnerReference]:
    """Return obj's owner references with the subscription added, unless already present."""
    owners = list(obj.metadata.owner_references)
    if is_object_owned_by_sub(obj, sub.metadata.name):
        return owners
    owners.append(
        OwnerReference(
            api_version=SUBSCRIPTION_VERSION,
            kind=SUBSCRIPTION_KIND,
            name=sub.metadata.name,
            uid=sub.metadata.uid,
        )
    )
    return owners


def delete_sub_from_object_owners_by_name(obj: Resource, subname: str) -> list[OwnerReference]:
    """Return obj's owner references without those naming the subscription."""
    owners = list(obj.metadata.owner_references)
    if not is_object_owned_by_sub(obj, subname):
        return owners
    return [owner for owner in owners if owner.name != subname]


class ReferenceManager:
    """Keeps referred objects in a subscription namespace labelled and owned."""

    def __init__(self, client: MemoryClient) -> None:
        self.client = client

    def list_and_deploy_referred_object(self, instance: Subscription, kind: str, ref_obj: Resource) -> None:
        """Label and own ref_obj in the subscription namespace, releasing stale references.

        An object of the same name already in the namespace gets the reference label
        and an owner reference; other objects still labelled for this subscription are
        released, or deleted when the subscription is their only owner. If no object of
        that name exists, ref_obj is created in the namespace.
        """
        ins_name = instance.metadata.name
        ins_ns = instance.metadata.namespace

        try:
            items = self.client.list(kind, ins_ns, None)
        except NotFoundError:
            items = []
        except Exception:
            log.error("failed to list referred objects of kind %s in %s", kind, ins_ns)
            raise

        found = False
        refer_label = _refer_label(ins_name)

        for obj in items:
            u = obj.deep_copy()
            labels = dict(u.metadata.labels)

            if u.metadata.name == ref_obj.metadata.name:
                found = True
                labels[refer_label] = "true"
                u.metadata.labels = labels
                u.metadata.owner_references = add_object_owned_by_sub(u, instance)
                self.client.update(u)
                continue

            if labels.get(refer_label) == "true":
                del labels[refer_label]
                if len(u.metadata.owner_references) > 1:
                    u.metadata.labels = labels
                    u.metadata.owner_references = delete_sub_from_object_owners_by_name(u, ins_name)
                    self.client.update(u)
                else:
                    self.client.delete(u)

        if not found:
            labels = dict(ref_obj.metadata.labels)
            labels[refer_label] = "true"
            ref_obj.metadata.labels = labels
            ref_obj.metadata.namespace = ins_ns
            ref_obj.metadata.resource_version = ""
            ref_obj.metadata.uid = ""
            ref_obj.metadata.owner_references = add_object_owned_by_sub(ref_obj, instance)
            try:
                self.client.create(ref_obj)
            except Exception as err:
                log.error(
                    "got error %s while creating referred object %s for subscription %s",
                    err,
                    ref_obj.metadata.name,
                    ins_name,
                )

    def delete_referred_objects(self, key: NamespacedName, kind: str) -> None:
        """Release objects labelled for a removed subscription.

        Objects the subscription solely owns are left for owner-based garbage
        collection; the others lose the label and the owner reference.
        """
        refer_label = _refer_label(key.name)
        selector = LabelSelector(match_labels={refer_label: "true"})
        items = self.client.list(kind, key.namespace, selector)

        for obj in items:
            if len(obj.metadata.owner_references) == 1:
                continue
            u = obj.deep_copy()
            labels = dict(u.metadata.labels)
            labels.pop(refer_label, None)
            u.metadata.labels = labels
            u.metadata.owner_references = delete_sub_from_object_owners_by_name(u, key.name)
            try:
                self.client.update(u)
            except Exception as err:
                log.error("failed to release referred object %s: %s", u.key, err)
                return