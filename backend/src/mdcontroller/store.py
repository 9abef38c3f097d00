"""
Declarative object store interface and an in-memory implementation.

The controller only ever talks to an ``ObjectStore``. ``KubeClient`` backs it
with the cluster API; ``InMemoryStore`` keeps everything in process and is
what the tests and local simulations run against.
"""
import copy
import logging
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from .errors import ConflictError, NotFoundError, VersionConflictError
from .kube_types import StoredObject

logger = logging.getLogger(__name__)

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

EventHandler = Callable[[str, StoredObject], None]


def matches_selector(labels: Dict[str, str], selector: Optional[Dict[str, str]]) -> bool:
    """Return True if labels carry every key/value pair of an equality selector."""
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


class ObjectStore:
    """
    Generic declarative-state API.

    Writes carry ``metadata.resource_version`` as the optimistic concurrency
    token; a stale token raises ``VersionConflictError``.
    """

    def list(self, kind: str, namespace: str, label_selector: Optional[Dict[str, str]] = None) -> List[StoredObject]:
        raise NotImplementedError

    def get(self, kind: str, namespace: str, name: str) -> StoredObject:
        raise NotImplementedError

    def create(self, obj: StoredObject) -> StoredObject:
        raise NotImplementedError

    def update(self, obj: StoredObject) -> StoredObject:
        raise NotImplementedError

    def update_status(self, obj: StoredObject) -> StoredObject:
        raise NotImplementedError

    def delete(self, kind: str, namespace: str, name: str) -> None:
        raise NotImplementedError

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """
        Register a change handler.

        Args:
            handler: Called with (event_type, object) for every change

        Returns:
            Callable that removes the subscription
        """
        raise NotImplementedError


class InMemoryStore(ObjectStore):
    """Thread-safe store with owner-index cascade deletion."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._lock = threading.RLock()
        self._objects: Dict[Tuple[str, str, str], StoredObject] = {}
        self._children: Dict[str, Set[Tuple[str, str, str]]] = defaultdict(set)
        self._version = 0
        self._subscribers: List[EventHandler] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _key(obj: StoredObject) -> Tuple[str, str, str]:
        return obj.kind, obj.metadata.namespace, obj.metadata.name

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _notify(self, events: List[Tuple[str, StoredObject]]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for event_type, obj in events:
            for handler in subscribers:
                handler(event_type, copy.deepcopy(obj))

    def list(self, kind: str, namespace: str, label_selector: Optional[Dict[str, str]] = None) -> List[StoredObject]:
        with self._lock:
            return [
                copy.deepcopy(obj)
                for (obj_kind, obj_namespace, _), obj in sorted(self._objects.items())
                if obj_kind == kind
                and obj_namespace == namespace
                and matches_selector(obj.metadata.labels, label_selector)
            ]

    def get(self, kind: str, namespace: str, name: str) -> StoredObject:
        with self._lock:
            obj = self._objects.get((kind, namespace, name))
            if obj is None:
                raise NotFoundError(kind, namespace, name)
            return copy.deepcopy(obj)

    def create(self, obj: StoredObject) -> StoredObject:
        with self._lock:
            key = self._key(obj)
            if key in self._objects:
                raise ConflictError(*key)
            stored = copy.deepcopy(obj)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.resource_version = self._next_version()
            stored.metadata.generation = 1
            stored.metadata.creation_timestamp = self._clock()
            self._objects[key] = stored
            if stored.metadata.owner_uid:
                self._children[stored.metadata.owner_uid].add(key)
            result = copy.deepcopy(stored)
        self._notify([(EVENT_ADDED, result)])
        return result

    def _check_version(self, obj: StoredObject) -> StoredObject:
        key = self._key(obj)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(*key)
        if obj.metadata.resource_version != current.metadata.resource_version:
            raise VersionConflictError(
                *key,
                expected=obj.metadata.resource_version,
                actual=current.metadata.resource_version,
            )
        return current

    def update(self, obj: StoredObject) -> StoredObject:
        """Replace metadata and spec; status is kept as stored."""
        with self._lock:
            current = self._check_version(obj)
            stored = copy.deepcopy(obj)
            stored.status = copy.deepcopy(current.status)
            stored.metadata.uid = current.metadata.uid
            stored.metadata.creation_timestamp = current.metadata.creation_timestamp
            stored.metadata.owner_uid = current.metadata.owner_uid
            stored.metadata.owner_name = current.metadata.owner_name
            stored.metadata.generation = current.metadata.generation
            if stored.spec != current.spec:
                stored.metadata.generation += 1
            stored.metadata.resource_version = self._next_version()
            self._objects[self._key(stored)] = stored
            result = copy.deepcopy(stored)
        self._notify([(EVENT_MODIFIED, result)])
        return result

    def update_status(self, obj: StoredObject) -> StoredObject:
        """Replace status only."""
        with self._lock:
            current = self._check_version(obj)
            stored = copy.deepcopy(current)
            stored.status = copy.deepcopy(obj.status)
            stored.metadata.resource_version = self._next_version()
            self._objects[self._key(stored)] = stored
            result = copy.deepcopy(stored)
        self._notify([(EVENT_MODIFIED, result)])
        return result

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Delete an object and, through the owner index, everything it owns."""
        events: List[Tuple[str, StoredObject]] = []
        with self._lock:
            if (kind, namespace, name) not in self._objects:
                raise NotFoundError(kind, namespace, name)
            pending = [(kind, namespace, name)]
            while pending:
                key = pending.pop()
                obj = self._objects.pop(key, None)
                if obj is None:
                    continue
                if obj.metadata.owner_uid:
                    self._children[obj.metadata.owner_uid].discard(key)
                pending.extend(self._children.pop(obj.metadata.uid, set()))
                events.append((EVENT_DELETED, copy.deepcopy(obj)))
        for _, obj in events:
            logger.debug(f"Deleted {obj.kind} {obj.metadata.namespace}/{obj.metadata.name}")
        self._notify(events)

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe
