"""
Desired-state reconciler for MachineDeployments.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .cache import ObjectCache
from .errors import HashCollisionError, NotFoundError, StrategyValidationError
from .generations import (
    REVISION_ANNOTATION,
    ensure_generation,
    get_revision,
    split_generations,
    sync_generation,
)
from .kube_types import (
    KIND_MACHINE_DEPLOYMENT,
    KIND_MACHINE_SET,
    MachineDeployment,
    MachineSet,
    split_key,
)
from .pruner import prune_old_generations
from .rolling import plan_scale
from .status import aggregate_status
from .store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass."""
    requeue_after: Optional[float] = None
    mutations: int = 0


class MachineDeploymentReconciler:
    """
    Drives one MachineDeployment a single step toward its spec per call.

    Each pass reads the deployment and its MachineSets, makes sure the new
    generation exists, applies one scaling step, prunes old history and writes
    status. Convergence comes from repeated passes triggered by the changes
    those writes cause.
    """

    def __init__(
        self,
        store: ObjectStore,
        cache: Optional[ObjectCache] = None,
        validation_requeue_secs: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.cache = cache if cache is not None else ObjectCache(store)
        self.validation_requeue_secs = validation_requeue_secs
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def reconcile(self, key: str) -> ReconcileResult:
        """
        Reconcile the deployment named by a ``namespace/name`` key.

        Args:
            key: Reconcile key

        Returns:
            ReconcileResult; a missing or deleting deployment is a no-op

        Raises:
            TransientError: The pass should be retried with backoff
        """
        namespace, name = split_key(key)
        try:
            deployment = self.cache.get(KIND_MACHINE_DEPLOYMENT, namespace, name)
        except NotFoundError:
            logger.info(f"MachineDeployment {key} not found, dropping")
            return ReconcileResult()

        if deployment.metadata.deletion_timestamp is not None:
            logger.debug(f"MachineDeployment {key} is being deleted")
            return ReconcileResult()

        try:
            result = self._sync(deployment)
        except Exception:
            self.cache.invalidate(namespace)
            raise
        if result.mutations:
            self.cache.invalidate(namespace)
        return result

    def owned_machine_sets(self, deployment: MachineDeployment) -> List[MachineSet]:
        machine_sets = self.cache.list(KIND_MACHINE_SET, deployment.metadata.namespace)
        return [ms for ms in machine_sets if ms.metadata.owner_uid == deployment.metadata.uid]

    def _sync(self, deployment: MachineDeployment) -> ReconcileResult:
        result = ReconcileResult()
        machine_sets = self.owned_machine_sets(deployment)

        try:
            created_ms, created = ensure_generation(self.store, deployment, machine_sets)
        except HashCollisionError as e:
            deployment.status.collision_count = (deployment.status.collision_count or 0) + 1
            self.store.update_status(deployment)
            logger.warning(f"⚠️ {e}; bumped collision count of {deployment.key} to {deployment.status.collision_count}")
            raise
        if created:
            machine_sets.append(created_ms)
            result.mutations += 1

        new_ms, old_sets = split_generations(deployment, machine_sets)
        synced = sync_generation(self.store, deployment, new_ms, old_sets)
        if synced is not new_ms:
            new_ms = synced
            result.mutations += 1

        try:
            actions = plan_scale(deployment, new_ms, old_sets)
        except StrategyValidationError as e:
            logger.error(f"❌ Invalid strategy for {deployment.key}: {e}")
            result.mutations += self._write_status(deployment, new_ms, old_sets, validation_error=str(e))
            result.requeue_after = self.validation_requeue_secs
            return result

        updated: Dict[str, MachineSet] = {}
        for action in actions:
            ms = action.machine_set
            logger.info(
                f"Scaling MachineSet {ms.key} {ms.spec.replicas} -> {action.replicas} ({action.reason})"
            )
            ms.spec.replicas = action.replicas
            updated[ms.metadata.uid] = self.store.update(ms)
            result.mutations += 1
        new_ms = updated.get(new_ms.metadata.uid, new_ms)
        old_sets = [updated.get(ms.metadata.uid, ms) for ms in old_sets]

        removed = {ms.metadata.uid for ms in prune_old_generations(self.store, deployment, old_sets)}
        if removed:
            old_sets = [ms for ms in old_sets if ms.metadata.uid not in removed]
            result.mutations += len(removed)

        revision = str(get_revision(new_ms))
        if deployment.metadata.annotations.get(REVISION_ANNOTATION) != revision:
            deployment.metadata.annotations[REVISION_ANNOTATION] = revision
            deployment = self.store.update(deployment)
            result.mutations += 1

        result.mutations += self._write_status(deployment, new_ms, old_sets)
        return result

    def _write_status(
        self,
        deployment: MachineDeployment,
        new_ms: Optional[MachineSet],
        old_sets: List[MachineSet],
        validation_error: Optional[str] = None,
    ) -> int:
        status = aggregate_status(deployment, new_ms, old_sets, self._clock(), validation_error)
        if status == deployment.status:
            return 0
        deployment.status = status
        self.store.update_status(deployment)
        logger.info(
            f"Status of {deployment.key}: {status.phase} "
            f"replicas={status.replicas} updated={status.updated_replicas} available={status.available_replicas}"
        )
        return 1
