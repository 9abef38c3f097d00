"""
Read-through cache in front of the object store.
"""
import copy
import logging
import threading
from typing import Dict, List, Optional, Tuple

from .kube_types import StoredObject
from .store import ObjectStore

logger = logging.getLogger(__name__)


class ObjectCache:
    """
    Read-through cache owned by the reconciler.

    Entries are dropped per namespace whenever the event stream reports a
    change there, and after any conflicting write, so the next read goes to
    the store. Reads hand out copies; callers may mutate them freely.

    Every invalidation bumps an epoch. A store read only fills the cache if
    no invalidation touching its namespace happened while it was in flight,
    so an event landing mid-read never leaves the older snapshot behind.
    """

    def __init__(self, store: ObjectStore):
        self.store = store
        self._lock = threading.Lock()
        self._objects: Dict[Tuple[str, str, str], StoredObject] = {}
        self._lists: Dict[Tuple[str, str, Tuple[Tuple[str, str], ...]], List[StoredObject]] = {}
        self._global_epoch = 0
        self._epochs: Dict[str, int] = {}

    def _epoch_locked(self, namespace: str) -> Tuple[int, int]:
        return self._global_epoch, self._epochs.get(namespace, 0)

    def get(self, kind: str, namespace: str, name: str) -> StoredObject:
        key = (kind, namespace, name)
        with self._lock:
            cached = self._objects.get(key)
            epoch = self._epoch_locked(namespace)
        if cached is None:
            cached = self.store.get(kind, namespace, name)
            with self._lock:
                if self._epoch_locked(namespace) == epoch:
                    self._objects[key] = cached
        return copy.deepcopy(cached)

    def list(self, kind: str, namespace: str, label_selector: Optional[Dict[str, str]] = None) -> List[StoredObject]:
        key = (kind, namespace, tuple(sorted((label_selector or {}).items())))
        with self._lock:
            cached = self._lists.get(key)
            epoch = self._epoch_locked(namespace)
        if cached is None:
            cached = self.store.list(kind, namespace, label_selector)
            with self._lock:
                if self._epoch_locked(namespace) == epoch:
                    self._lists[key] = cached
        return copy.deepcopy(cached)

    def invalidate(self, namespace: Optional[str] = None) -> None:
        """Drop cached entries for one namespace, or everything when namespace is None."""
        with self._lock:
            if namespace is None:
                self._global_epoch += 1
                self._objects.clear()
                self._lists.clear()
                return
            self._epochs[namespace] = self._epochs.get(namespace, 0) + 1
            for key in [k for k in self._objects if k[1] == namespace]:
                del self._objects[key]
            for key in [k for k in self._lists if k[1] == namespace]:
                del self._lists[key]
