"""
Controller runtime: event intake, periodic resync and reconcile workers.
"""
import logging
import threading
from typing import Callable, List, Optional

from .errors import NotFoundError, TransientError
from .kube_types import KIND_MACHINE_DEPLOYMENT, KIND_MACHINE_SET, StoredObject
from .reconciler import MachineDeploymentReconciler
from .store import ObjectStore
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


def key_for_object(obj: StoredObject) -> Optional[str]:
    """
    Map a changed object to the reconcile key of the deployment it concerns.

    MachineSet events map to their owning deployment; unowned MachineSets
    concern nobody.
    """
    if obj.kind == KIND_MACHINE_DEPLOYMENT:
        return f"{obj.metadata.namespace}/{obj.metadata.name}"
    if obj.kind == KIND_MACHINE_SET and obj.metadata.owner_name:
        return f"{obj.metadata.namespace}/{obj.metadata.owner_name}"
    return None


class Controller:
    """
    Runs reconcile workers over a shared work queue.

    Watch events and the periodic resync both just add keys to the queue, so
    they are handled identically. The queue guarantees that a key is never
    reconciled by two workers at once.
    """

    def __init__(
        self,
        store: ObjectStore,
        reconciler: MachineDeploymentReconciler,
        namespace: str = "default",
        queue: Optional[WorkQueue] = None,
        workers: int = 4,
        resync_period: float = 600.0,
    ):
        self.store = store
        self.reconciler = reconciler
        self.namespace = namespace
        self.queue = queue if queue is not None else WorkQueue()
        self.workers = workers
        self.resync_period = resync_period
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def handle_event(self, event_type: str, obj: StoredObject) -> None:
        """Invalidate cached reads and enqueue the affected deployment."""
        self.reconciler.cache.invalidate(obj.metadata.namespace)
        key = key_for_object(obj)
        if key is None:
            return
        logger.debug(f"{event_type} {obj.kind} {obj.metadata.namespace}/{obj.metadata.name} -> {key}")
        self.queue.add(key)

    def enqueue(self, namespace: str, name: str) -> None:
        self.queue.add(f"{namespace}/{name}")

    def resync(self) -> int:
        """
        Enqueue every deployment in the namespace.

        Returns:
            Number of keys enqueued
        """
        self.reconciler.cache.invalidate(self.namespace)
        deployments = self.store.list(KIND_MACHINE_DEPLOYMENT, self.namespace)
        for deployment in deployments:
            self.queue.add(deployment.key)
        logger.debug(f"Resync enqueued {len(deployments)} deployments in {self.namespace}")
        return len(deployments)

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Reconcile one key from the queue.

        Args:
            timeout: Seconds to wait for a key

        Returns:
            False when no key was processed (timeout or shutdown)
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self.process_key(key)
        finally:
            self.queue.done(key)
        return True

    def process_key(self, key: str) -> None:
        try:
            result = self.reconciler.reconcile(key)
        except NotFoundError as e:
            logger.info(f"Reconcile of {key} hit a missing object ({e}); retrying")
            self.queue.add_rate_limited(key)
            return
        except TransientError as e:
            delay = self.queue.add_rate_limited(key)
            logger.warning(f"⚠️ Transient error reconciling {key}: {e}; retrying in {delay:.2f}s")
            return
        except Exception:
            delay = self.queue.add_rate_limited(key)
            logger.exception(f"❌ Failed to reconcile {key}; retrying in {delay:.2f}s")
            return

        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)

    def _worker(self) -> None:
        while not self._stop.is_set():
            if not self.process_next(timeout=1.0) and self.queue.shutting_down:
                return

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.resync_period):
            try:
                self.resync()
            except Exception:
                logger.exception("❌ Periodic resync failed")

    def start(self) -> None:
        """Subscribe to store events, run an initial resync and start threads."""
        self._unsubscribe = self.store.subscribe(self.handle_event)
        self.resync()
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"reconcile-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        resync_thread = threading.Thread(target=self._resync_loop, name="resync", daemon=True)
        resync_thread.start()
        self._threads.append(resync_thread)
        logger.info(f"✅ Controller started with {self.workers} workers for namespace {self.namespace}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.queue.shut_down()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Controller stopped")
