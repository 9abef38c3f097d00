"""
Revision history cleanup for old MachineSets.
"""
import logging
from typing import List

from .errors import NotFoundError
from .generations import creation_order_key
from .kube_types import MachineDeployment, MachineSet
from .store import ObjectStore

logger = logging.getLogger(__name__)


def prune_candidates(deployment: MachineDeployment, old_sets: List[MachineSet]) -> List[MachineSet]:
    """
    Pick the old MachineSets that exceed the revision history limit.

    Only generations with a zero target and zero observed replicas qualify;
    they are taken oldest first.
    """
    limit = deployment.spec.revision_history_limit
    if limit is None:
        return []
    excess = len(old_sets) - max(limit, 0)
    if excess <= 0:
        return []
    empty = [ms for ms in old_sets if ms.spec.replicas == 0 and ms.status.replicas == 0]
    empty.sort(key=creation_order_key)
    return empty[:excess]


def prune_old_generations(
    store: ObjectStore, deployment: MachineDeployment, old_sets: List[MachineSet]
) -> List[MachineSet]:
    """
    Delete empty old MachineSets beyond the revision history limit.

    Args:
        store: Object store to delete from
        deployment: Owning deployment
        old_sets: Old generations of the deployment (never the new one)

    Returns:
        MachineSets that are gone after the call
    """
    removed = []
    for ms in prune_candidates(deployment, old_sets):
        try:
            store.delete(ms.kind, ms.metadata.namespace, ms.metadata.name)
            logger.info(f"🗑️ Pruned old MachineSet {ms.key} of {deployment.key}")
        except NotFoundError:
            logger.debug(f"MachineSet {ms.key} already deleted")
        removed.append(ms)
    return removed
