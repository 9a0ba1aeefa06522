"""Object scheme, in-memory object store and event recording."""

from __future__ import annotations

import copy
import itertools
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from .types import Channel, Deployable, LabelSelector, NamespacedName, Resource, Subscription

log = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Raised when an object does not exist."""

    def __init__(self, kind: str, key: NamespacedName):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class AlreadyExistsError(ValueError):
    """Raised when creating an object that already exists."""

    def __init__(self, kind: str, key: NamespacedName):
        super().__init__(f"{kind} {key} already exists")
        self.kind = kind
        self.key = key


class Scheme:
    """Maps resource classes to kind names."""

    def __init__(self) -> None:
        self._kinds: dict[type, str] = {}
        self._types: dict[str, type] = {}

    def register(self, kind: str, cls: type) -> None:
        existing = self._types.get(kind)
        if existing is not None and existing is not cls:
            raise ValueError(f"kind {kind!r} is already registered to {existing.__name__}")
        self._kinds[cls] = kind
        self._types[kind] = cls

    def kind_of(self, obj: Any) -> str:
        kind = self._kinds.get(type(obj))
        if kind:
            return kind
        if isinstance(obj, Resource) and obj.kind:
            return obj.kind
        raise TypeError(f"{type(obj).__name__} is not registered in the scheme")

    def __contains__(self, kind: str) -> bool:
        return kind in self._types


def add_to_scheme(scheme: Scheme) -> Scheme:
    """Register channel, deployable and subscription kinds."""
    for kind, cls in (("Channel", Channel), ("Deployable", Deployable), ("Subscription", Subscription)):
        scheme.register(kind, cls)
    return scheme


def _content(obj: Resource) -> tuple[Any, Any]:
    return copy.deepcopy(getattr(obj, "spec", None)), copy.deepcopy(obj.data)


class MemoryClient:
    """Object store keyed by kind, namespace and name."""

    def __init__(self, scheme: Scheme | None = None) -> None:
        self.scheme = scheme if scheme is not None else add_to_scheme(Scheme())
        self._objects: dict[tuple[str, str, str], Resource] = {}
        self._versions = itertools.count(1)

    def _key(self, obj: Resource) -> tuple[str, str, str]:
        return self.scheme.kind_of(obj), obj.metadata.namespace, obj.metadata.name

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _stored(self, obj: Resource) -> tuple[tuple[str, str, str], Resource]:
        key = self._key(obj)
        try:
            return key, self._objects[key]
        except KeyError:
            raise NotFoundError(key[0], obj.key) from None

    def get(self, kind: str, key: NamespacedName) -> Resource:
        try:
            stored = self._objects[(kind, key.namespace, key.name)]
        except KeyError:
            raise NotFoundError(kind, key) from None
        return stored.deep_copy()

    def create(self, obj: Resource) -> Resource:
        if not obj.metadata.name:
            raise ValueError("object name is required")
        key = self._key(obj)
        if key in self._objects:
            raise AlreadyExistsError(key[0], obj.key)
        meta = obj.metadata
        if not meta.uid:
            meta.uid = str(uuid.uuid4())
        if meta.creation_timestamp is None:
            meta.creation_timestamp = datetime.now(timezone.utc).replace(microsecond=0)
        meta.generation = 1
        meta.resource_version = self._next_version()
        self._objects[key] = obj.deep_copy()
        return obj

    def update(self, obj: Resource) -> Resource:
        """Update everything but the status; the stored status is copied back into obj."""
        key, stored = self._stored(obj)
        meta = obj.metadata
        meta.uid = stored.metadata.uid
        meta.creation_timestamp = stored.metadata.creation_timestamp
        meta.generation = stored.metadata.generation
        if _content(stored) != _content(obj):
            meta.generation += 1
        meta.resource_version = self._next_version()
        if hasattr(stored, "status"):
            obj.status = copy.deepcopy(stored.status)
        self._objects[key] = obj.deep_copy()
        return obj

    def update_status(self, obj: Resource) -> Resource:
        if not hasattr(obj, "status"):
            raise TypeError(f"{type(obj).__name__} has no status")
        _, stored = self._stored(obj)
        stored.status = copy.deepcopy(obj.status)
        stored.metadata.resource_version = self._next_version()
        obj.metadata.resource_version = stored.metadata.resource_version
        return obj

    def delete(self, obj: Resource) -> None:
        key, _ = self._stored(obj)
        del self._objects[key]

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
    ) -> list[Resource]:
        found = [
            stored.deep_copy()
            for (k, ns, _), stored in self._objects.items()
            if k == kind
            and (not namespace or ns == namespace)
            and (label_selector is None or label_selector.matches(stored.metadata.labels))
        ]
        return sorted(found, key=lambda o: (o.metadata.namespace, o.metadata.name))


class EventRecorder:
    """Collects events about objects."""

    def __init__(self) -> None:
        self.events: list[dict[str, str]] = []

    def record_event(self, obj: Resource, reason: str, message: str, error: BaseException | None = None) -> None:
        event_type = "Normal"
        if error is not None:
            event_type = "Warning"
            message = f"{message}, error: {error}"
        event = {
            "kind": obj.kind,
            "namespace": obj.metadata.namespace,
            "name": obj.metadata.name,
            "type": event_type,
            "reason": reason,
            "message": message,
        }
        self.events.append(event)
        log.info("event %s %s %s/%s: %s", event_type, reason, obj.metadata.namespace, obj.metadata.name, message)