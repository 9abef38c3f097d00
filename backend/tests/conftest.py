import pytest

from helpers import TickingClock
from mdcontroller.reconciler import MachineDeploymentReconciler
from mdcontroller.store import InMemoryStore


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def reconciler(store, clock):
    reconciler = MachineDeploymentReconciler(store, validation_requeue_secs=300.0, clock=clock)
    # same wiring the controller does: every change drops cached reads
    unsubscribe = store.subscribe(lambda event_type, obj: reconciler.cache.invalidate(obj.metadata.namespace))
    yield reconciler
    unsubscribe()
