"""
Shared builders and a small machine-provisioning simulator for tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from mdcontroller.kube_types import (
    KIND_MACHINE_DEPLOYMENT,
    KIND_MACHINE_SET,
    DeploymentStrategy,
    IntOrPercent,
    MachineDeployment,
    MachineDeploymentSpec,
    MachineSet,
    MachineSetSpec,
    MachineSetStatus,
    MachineTemplate,
    ObjectMeta,
    STRATEGY_ROLLING_UPDATE,
)
from mdcontroller.store import InMemoryStore

LABELS = {"foo": "bar"}


class TickingClock:
    """Clock that advances one second per call."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def make_deployment(
    name: str = "foo",
    namespace: str = "default",
    replicas: int = 2,
    max_surge=1,
    max_unavailable=0,
    strategy_type: str = STRATEGY_ROLLING_UPDATE,
    revision_history_limit: Optional[int] = 0,
    kubelet: str = "1.10.3",
    paused: bool = False,
) -> MachineDeployment:
    return MachineDeployment(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=MachineDeploymentSpec(
            replicas=replicas,
            selector=dict(LABELS),
            template=MachineTemplate(labels=dict(LABELS), spec={"versions": {"kubelet": kubelet}}),
            strategy=DeploymentStrategy(
                type=strategy_type,
                max_surge=IntOrPercent.parse(max_surge),
                max_unavailable=IntOrPercent.parse(max_unavailable),
            ),
            revision_history_limit=revision_history_limit,
            min_ready_seconds=0,
            paused=paused,
        ),
    )


def make_machine_set(
    name: str,
    replicas: int,
    available: Optional[int] = None,
    status_replicas: Optional[int] = None,
    created_minute: int = 0,
    uid: Optional[str] = None,
) -> MachineSet:
    """Detached MachineSet for pure planning tests."""
    available = replicas if available is None else available
    status_replicas = replicas if status_replicas is None else status_replicas
    return MachineSet(
        metadata=ObjectMeta(
            name=name,
            uid=uid or f"uid-{name}",
            creation_timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=created_minute),
            owner_uid="uid-foo",
            owner_name="foo",
        ),
        spec=MachineSetSpec(replicas=replicas, template=MachineTemplate(labels={"gen": name})),
        status=MachineSetStatus(
            replicas=status_replicas,
            ready_replicas=available,
            available_replicas=available,
        ),
    )


def machine_sets(store: InMemoryStore, namespace: str = "default") -> List[MachineSet]:
    return store.list(KIND_MACHINE_SET, namespace)


def get_deployment(store: InMemoryStore, name: str = "foo", namespace: str = "default") -> MachineDeployment:
    return store.get(KIND_MACHINE_DEPLOYMENT, namespace, name)


def update_deployment(store: InMemoryStore, mutate: Callable[[MachineDeployment], None], name: str = "foo") -> MachineDeployment:
    deployment = get_deployment(store, name)
    mutate(deployment)
    return store.update(deployment)


def set_status(store: InMemoryStore, ms: MachineSet, replicas: int, available: Optional[int] = None) -> MachineSet:
    current = store.get(KIND_MACHINE_SET, ms.metadata.namespace, ms.metadata.name)
    available = replicas if available is None else available
    current.status = MachineSetStatus(
        replicas=replicas,
        ready_replicas=available,
        available_replicas=available,
        observed_generation=current.metadata.generation,
    )
    return store.update_status(current)


def remove_machines(store: InMemoryStore, namespace: str = "default") -> bool:
    """Delete machines above each MachineSet's target. Returns True if anything changed."""
    changed = False
    for ms in machine_sets(store, namespace):
        if ms.status.replicas > ms.spec.replicas:
            set_status(store, ms, ms.spec.replicas, min(ms.status.available_replicas, ms.spec.replicas))
            changed = True
    return changed


def add_machines(store: InMemoryStore, namespace: str = "default") -> bool:
    """Bring up machines below each MachineSet's target. Returns True if anything changed."""
    changed = False
    for ms in machine_sets(store, namespace):
        if ms.status.replicas < ms.spec.replicas or ms.status.available_replicas < ms.spec.replicas:
            set_status(store, ms, ms.spec.replicas)
            changed = True
    return changed


def total_targets(store: InMemoryStore, namespace: str = "default") -> int:
    return sum(ms.spec.replicas for ms in machine_sets(store, namespace))


def total_available(store: InMemoryStore, namespace: str = "default") -> int:
    return sum(ms.status.available_replicas for ms in machine_sets(store, namespace))


def settle(
    store: InMemoryStore,
    reconciler,
    key: str = "default/foo",
    max_passes: int = 100,
    after_reconcile: Optional[Callable[[], None]] = None,
    after_provision: Optional[Callable[[], None]] = None,
) -> int:
    """
    Alternate reconcile passes and machine provisioning until nothing changes.

    Machine removals land before additions, which is the order that stresses
    availability the most.

    Returns:
        Number of reconcile passes run
    """
    for passes in range(1, max_passes + 1):
        result = reconciler.reconcile(key)
        if after_reconcile:
            after_reconcile()
        removed = remove_machines(store)
        if after_provision:
            after_provision()
        added = add_machines(store)
        if after_provision:
            after_provision()
        if result.mutations == 0 and not removed and not added:
            return passes
    raise AssertionError(f"{key} did not converge in {max_passes} passes")
