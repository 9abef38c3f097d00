"""
Kubernetes client backing the controller's object store.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .adapters import object_from_dict, object_to_dict
from .errors import ConflictError, NotFoundError, TransientError, VersionConflictError
from .kube_types import KIND_MACHINE_DEPLOYMENT, KIND_MACHINE_SET, StoredObject
from .store import EventHandler, ObjectStore

logger = logging.getLogger(__name__)

PLURALS = {
    KIND_MACHINE_DEPLOYMENT: "machinedeployments",
    KIND_MACHINE_SET: "machinesets",
}


def format_label_selector(selector: Optional[Dict[str, str]]) -> Optional[str]:
    if not selector:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


class KubeClient(ObjectStore):
    """Object store over the MachineDeployment and MachineSet custom resources."""

    def __init__(
        self,
        namespace: str,
        in_cluster: bool = True,
        context: str | None = None,
        group: str = "cluster.k8s.io",
        version: str = "v1beta1",
        watch_timeout_s: int = 300,
        watch_backoff_s: float = 1.0,
        api: Optional[client.CustomObjectsApi] = None,
    ):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Namespace watched by the controller
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
            group: API group of the machine resources
            version: API version of the machine resources
            watch_timeout_s: Server-side timeout of each watch request
            watch_backoff_s: First delay before re-opening a failed watch
            api: Preconfigured CustomObjectsApi; skips config loading
        """
        self.namespace = namespace
        self.in_cluster = in_cluster
        self.group = group
        self.version = version
        self.watch_timeout_s = watch_timeout_s
        self.watch_backoff_s = watch_backoff_s
        self._watch_stop = threading.Event()
        self._watch_threads: List[threading.Thread] = []

        if api is not None:
            self.custom = api
            return

        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                if context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()

            self.custom = client.CustomObjectsApi()
            logger.info(f"✅ Kubernetes client initialized for namespace: {namespace}")

        except Exception as e:
            logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
            raise

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def _translate(self, e: ApiException, kind: str, namespace: str, name: str, version: str = "") -> Exception:
        if e.status == 404:
            return NotFoundError(kind, namespace, name)
        if e.status == 409:
            if version:
                return VersionConflictError(kind, namespace, name, expected=version)
            return ConflictError(kind, namespace, name)
        return TransientError(f"{kind} {namespace}/{name}: API error {e.status} {e.reason}")

    def list(self, kind: str, namespace: str, label_selector: Optional[Dict[str, str]] = None) -> List[StoredObject]:
        """
        List objects of a kind.

        Args:
            kind: MachineDeployment or MachineSet
            namespace: Namespace to list in
            label_selector: Optional equality selector

        Returns:
            List of typed objects
        """
        kwargs = {}
        selector = format_label_selector(label_selector)
        if selector:
            kwargs["label_selector"] = selector
        try:
            response = self.custom.list_namespaced_custom_object(
                self.group, self.version, namespace, PLURALS[kind], **kwargs
            )
        except ApiException as e:
            logger.error(f"Failed to list {kind} in {namespace}: {e.reason}")
            raise self._translate(e, kind, namespace, "*") from e

        items = []
        for item in response.get("items", []):
            item.setdefault("kind", kind)
            items.append(object_from_dict(item))
        return items

    def get(self, kind: str, namespace: str, name: str) -> StoredObject:
        try:
            raw = self.custom.get_namespaced_custom_object(self.group, self.version, namespace, PLURALS[kind], name)
        except ApiException as e:
            raise self._translate(e, kind, namespace, name) from e
        raw.setdefault("kind", kind)
        return object_from_dict(raw)

    def create(self, obj: StoredObject) -> StoredObject:
        body = object_to_dict(obj, self.api_version)
        body["metadata"].pop("resourceVersion", None)
        body.pop("status", None)
        namespace, name = obj.metadata.namespace, obj.metadata.name
        try:
            raw = self.custom.create_namespaced_custom_object(
                self.group, self.version, namespace, PLURALS[obj.kind], body
            )
        except ApiException as e:
            raise self._translate(e, obj.kind, namespace, name) from e
        raw.setdefault("kind", obj.kind)
        logger.info(f"✅ Created {obj.kind} {namespace}/{name}")
        return object_from_dict(raw)

    def update(self, obj: StoredObject) -> StoredObject:
        body = object_to_dict(obj, self.api_version)
        namespace, name = obj.metadata.namespace, obj.metadata.name
        try:
            raw = self.custom.replace_namespaced_custom_object(
                self.group, self.version, namespace, PLURALS[obj.kind], name, body
            )
        except ApiException as e:
            raise self._translate(e, obj.kind, namespace, name, obj.metadata.resource_version) from e
        raw.setdefault("kind", obj.kind)
        return object_from_dict(raw)

    def update_status(self, obj: StoredObject) -> StoredObject:
        body = object_to_dict(obj, self.api_version)
        namespace, name = obj.metadata.namespace, obj.metadata.name
        try:
            raw = self.custom.replace_namespaced_custom_object_status(
                self.group, self.version, namespace, PLURALS[obj.kind], name, body
            )
        except ApiException as e:
            raise self._translate(e, obj.kind, namespace, name, obj.metadata.resource_version) from e
        raw.setdefault("kind", obj.kind)
        return object_from_dict(raw)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        try:
            self.custom.delete_namespaced_custom_object(
                self.group, self.version, namespace, PLURALS[kind], name,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
        except ApiException as e:
            raise self._translate(e, kind, namespace, name) from e
        logger.info(f"Deleted {kind} {namespace}/{name}")

    def _watch_kind(self, kind: str, handler: EventHandler) -> None:
        backoff_seconds = self.watch_backoff_s
        while not self._watch_stop.is_set():
            watcher = watch.Watch()
            try:
                for event in watcher.stream(
                    self.custom.list_namespaced_custom_object,
                    self.group,
                    self.version,
                    self.namespace,
                    PLURALS[kind],
                    timeout_seconds=self.watch_timeout_s,
                ):
                    if self._watch_stop.is_set():
                        return
                    raw = event["object"]
                    if not isinstance(raw, dict) or event["type"] == "ERROR":
                        continue
                    raw.setdefault("kind", kind)
                    handler(event["type"], object_from_dict(raw))
                backoff_seconds = self.watch_backoff_s
            except ApiException as e:
                logger.warning(f"⚠️ Watch on {PLURALS[kind]} failed: {e.reason}; retrying in {backoff_seconds}s")
                self._watch_stop.wait(backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                logger.exception(f"❌ Unexpected error watching {PLURALS[kind]}; retrying in {backoff_seconds}s")
                self._watch_stop.wait(backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Start one watch thread per kind; the returned callable stops them."""
        self._watch_stop.clear()
        for kind in PLURALS:
            thread = threading.Thread(
                target=self._watch_kind, args=(kind, handler), name=f"watch-{PLURALS[kind]}", daemon=True
            )
            thread.start()
            self._watch_threads.append(thread)

        def unsubscribe() -> None:
            self._watch_stop.set()
            self._watch_threads = []

        return unsubscribe
