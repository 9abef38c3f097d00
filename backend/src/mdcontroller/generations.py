"""
Generation management: template fingerprints and MachineSet creation.

A MachineDeployment owns one MachineSet per distinct machine template. The
one whose template matches the deployment's current template is the "new"
generation; every other owned MachineSet is "old".
"""
import hashlib
import json
import logging
from typing import List, Optional, Tuple

from .errors import ConflictError, HashCollisionError
from .kube_types import (
    MachineDeployment,
    MachineSet,
    MachineSetSpec,
    MachineTemplate,
    ObjectMeta,
)
from .store import ObjectStore

logger = logging.getLogger(__name__)

TEMPLATE_HASH_LABEL = "machine-template-hash"
REVISION_ANNOTATION = "machinedeployment.clusters.k8s.io/revision"


def _template_payload(template: MachineTemplate) -> dict:
    labels = {k: v for k, v in template.labels.items() if k != TEMPLATE_HASH_LABEL}
    return {
        "labels": labels,
        "annotations": dict(template.annotations),
        "spec": template.spec,
    }


def compute_template_hash(template: MachineTemplate, collision_count: Optional[int] = None) -> str:
    """
    Compute the fingerprint of a machine template.

    Timestamps and the fingerprint label itself do not contribute, so a
    generation's stamped template hashes the same as the template it came from.

    Args:
        template: Machine template to hash
        collision_count: Salt bumped when a derived name is already taken

    Returns:
        10 character hex digest
    """
    digest = hashlib.sha256()
    digest.update(json.dumps(_template_payload(template), sort_keys=True, separators=(",", ":"), default=str).encode())
    if collision_count:
        digest.update(str(collision_count).encode())
    return digest.hexdigest()[:10]


def templates_equal(a: MachineTemplate, b: MachineTemplate) -> bool:
    return compute_template_hash(a) == compute_template_hash(b)


def creation_order_key(machine_set: MachineSet):
    """Sort key: creation time, then name for a deterministic tie-break."""
    created = machine_set.metadata.creation_timestamp
    return (created is None, created.timestamp() if created else 0.0, machine_set.metadata.name)


def get_revision(machine_set: MachineSet) -> int:
    try:
        return int(machine_set.metadata.annotations.get(REVISION_ANNOTATION, "0"))
    except ValueError:
        return 0


def max_revision(machine_sets: List[MachineSet]) -> int:
    return max((get_revision(ms) for ms in machine_sets), default=0)


def find_new_generation(deployment: MachineDeployment, machine_sets: List[MachineSet]) -> Optional[MachineSet]:
    """
    Return the owned MachineSet whose template matches the deployment's.

    More than one match means two writers raced; the oldest wins.
    """
    matches = [ms for ms in machine_sets if templates_equal(ms.spec.template, deployment.spec.template)]
    if not matches:
        return None
    matches.sort(key=creation_order_key)
    if len(matches) > 1:
        logger.warning(
            f"⚠️ {len(matches)} MachineSets match the template of {deployment.key}: "
            f"{', '.join(ms.metadata.name for ms in matches)}; using {matches[0].metadata.name}"
        )
    return matches[0]


def split_generations(
    deployment: MachineDeployment, machine_sets: List[MachineSet]
) -> Tuple[Optional[MachineSet], List[MachineSet]]:
    """
    Split owned MachineSets into the new generation and the old ones.

    Returns:
        (new MachineSet or None, old MachineSets newest first)
    """
    new_ms = find_new_generation(deployment, machine_sets)
    olds = [ms for ms in machine_sets if new_ms is None or ms.metadata.uid != new_ms.metadata.uid]
    olds.sort(key=creation_order_key, reverse=True)
    return new_ms, olds


def build_generation(deployment: MachineDeployment, revision: int) -> MachineSet:
    """Stamp a new MachineSet from the deployment's current template."""
    template_hash = compute_template_hash(deployment.spec.template, deployment.status.collision_count)
    template = MachineTemplate(
        labels={**deployment.spec.template.labels, TEMPLATE_HASH_LABEL: template_hash},
        annotations=dict(deployment.spec.template.annotations),
        spec=json.loads(json.dumps(deployment.spec.template.spec, default=str)),
    )
    return MachineSet(
        metadata=ObjectMeta(
            name=f"{deployment.metadata.name}-{template_hash}",
            namespace=deployment.metadata.namespace,
            labels=dict(template.labels),
            annotations={REVISION_ANNOTATION: str(revision)},
            owner_uid=deployment.metadata.uid,
            owner_name=deployment.metadata.name,
        ),
        spec=MachineSetSpec(
            replicas=0,
            selector={**deployment.spec.selector, TEMPLATE_HASH_LABEL: template_hash},
            template=template,
            min_ready_seconds=deployment.spec.min_ready_seconds,
        ),
    )


def ensure_generation(
    store: ObjectStore, deployment: MachineDeployment, machine_sets: List[MachineSet]
) -> Tuple[MachineSet, bool]:
    """
    Return the new generation, creating it when no template matches.

    Creation happens even for paused deployments. A create that conflicts
    with our own earlier, partially-failed attempt adopts that object.

    Args:
        store: Object store to create in
        deployment: Owning deployment
        machine_sets: MachineSets currently owned by the deployment

    Returns:
        (new MachineSet, whether it was created in this call)

    Raises:
        HashCollisionError: The derived name belongs to a different template
    """
    existing = find_new_generation(deployment, machine_sets)
    if existing is not None:
        return existing, False

    candidate = build_generation(deployment, max_revision(machine_sets) + 1)
    try:
        created = store.create(candidate)
    except ConflictError:
        holder = store.get(candidate.kind, candidate.metadata.namespace, candidate.metadata.name)
        if holder.metadata.owner_uid == deployment.metadata.uid and templates_equal(
            holder.spec.template, deployment.spec.template
        ):
            logger.info(f"Adopting existing MachineSet {holder.key} for {deployment.key}")
            return holder, False
        raise HashCollisionError(
            f"MachineSet name {candidate.metadata.name} is taken by a different template"
        )

    logger.info(
        f"✅ Created MachineSet {created.key} for {deployment.key} "
        f"(revision {get_revision(created)})"
    )
    return created, True


def sync_generation(
    store: ObjectStore, deployment: MachineDeployment, new_ms: MachineSet, olds: List[MachineSet]
) -> MachineSet:
    """
    Bring the new generation's mutable metadata in line with the deployment.

    A generation that becomes new again (template rolled back) gets the next
    revision number; min_ready_seconds follows the deployment.
    """
    wanted_revision = get_revision(new_ms)
    old_max = max_revision(olds)
    if wanted_revision <= old_max:
        wanted_revision = old_max + 1

    if (
        wanted_revision == get_revision(new_ms)
        and new_ms.spec.min_ready_seconds == deployment.spec.min_ready_seconds
    ):
        return new_ms

    new_ms.metadata.annotations[REVISION_ANNOTATION] = str(wanted_revision)
    new_ms.spec.min_ready_seconds = deployment.spec.min_ready_seconds
    updated = store.update(new_ms)
    logger.info(f"Synced MachineSet {updated.key} to revision {wanted_revision}")
    return updated
