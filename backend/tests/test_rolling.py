"""
Tests for rolling.py - replica planning.

Tests cover:
- Bound resolution and rounding direction
- Proportional scale-down distribution and its remainder policy
- RollingUpdate, Recreate, direct and paused planning
- Surge/availability bounds over complete simulated rollouts
"""
import pytest

from helpers import (
    TickingClock,
    make_deployment,
    make_machine_set,
    machine_sets,
    settle,
    total_available,
    total_targets,
    update_deployment,
)
from mdcontroller.errors import StrategyValidationError
from mdcontroller.kube_types import STRATEGY_RECREATE
from mdcontroller.reconciler import MachineDeploymentReconciler
from mdcontroller.rolling import distribute_scale_down, plan_scale, resolve_bounds
from mdcontroller.store import InMemoryStore


def _targets(actions):
    return {a.machine_set.metadata.name: a.replicas for a in actions}


class TestResolveBounds:

    def test_absolute_bounds(self):
        assert resolve_bounds(make_deployment(replicas=4, max_surge=2, max_unavailable=1)) == (2, 1)

    def test_percent_surge_rounds_up_unavailable_rounds_down(self):
        deployment = make_deployment(replicas=10, max_surge="25%", max_unavailable="25%")
        assert resolve_bounds(deployment) == (3, 2)

    def test_unavailable_capped_at_replicas(self):
        assert resolve_bounds(make_deployment(replicas=2, max_surge=0, max_unavailable=5)) == (0, 2)

    def test_recreate_allows_neither(self):
        deployment = make_deployment(replicas=4, max_surge=2, max_unavailable=2, strategy_type=STRATEGY_RECREATE)
        assert resolve_bounds(deployment) == (0, 0)


class TestDistributeScaleDown:

    def test_proportional_then_smallest_first(self):
        olds = [make_machine_set("a", 4), make_machine_set("b", 2), make_machine_set("c", 1)]
        assert distribute_scale_down(3, olds) == [1, 1, 1]

    def test_remainder_goes_to_smallest_generation(self):
        olds = [make_machine_set("a", 3), make_machine_set("b", 3), make_machine_set("c", 1)]
        assert distribute_scale_down(2, olds) == [1, 0, 1]

    def test_exact_proportional_split(self):
        olds = [make_machine_set("a", 4), make_machine_set("b", 2)]
        assert distribute_scale_down(3, olds) == [2, 1]

    def test_budget_capped_at_old_total(self):
        olds = [make_machine_set("a", 2), make_machine_set("b", 1)]
        assert distribute_scale_down(10, olds) == [2, 1]

    def test_zero_budget(self):
        assert distribute_scale_down(0, [make_machine_set("a", 2)]) == [0]

    def test_empty_generations_are_skipped(self):
        olds = [make_machine_set("a", 0), make_machine_set("b", 3)]
        assert distribute_scale_down(2, olds) == [0, 2]

    @pytest.mark.parametrize("targets", [[5], [3, 3], [7, 2, 1], [1, 1, 1, 1], [10, 0, 4, 9]])
    def test_decrements_sum_to_budget(self, targets):
        olds = [make_machine_set(f"ms{i}", t) for i, t in enumerate(targets)]
        for budget in range(sum(targets) + 1):
            decrements = distribute_scale_down(budget, olds)
            assert sum(decrements) == budget
            assert all(0 <= d <= t for d, t in zip(decrements, targets))


class TestPlanScale:

    def test_direct_scale_without_rollout(self):
        deployment = make_deployment(replicas=5)
        new_ms = make_machine_set("new", 2)
        assert _targets(plan_scale(deployment, new_ms, [])) == {"new": 5}

    def test_direct_scale_ignores_drained_olds(self):
        deployment = make_deployment(replicas=1)
        new_ms = make_machine_set("new", 3)
        old = make_machine_set("old", 0)
        assert _targets(plan_scale(deployment, new_ms, [old])) == {"new": 1}

    def test_converged_is_noop(self):
        assert plan_scale(make_deployment(replicas=2), make_machine_set("new", 2), []) == []

    def test_paused_never_scales(self):
        deployment = make_deployment(replicas=2, paused=True)
        new_ms = make_machine_set("new", 0)
        old = make_machine_set("old", 2)
        assert plan_scale(deployment, new_ms, [old]) == []

    def test_first_step_surges_new_generation(self):
        deployment = make_deployment(replicas=2, max_surge=1, max_unavailable=0)
        new_ms = make_machine_set("new", 0)
        old = make_machine_set("old", 2)
        assert _targets(plan_scale(deployment, new_ms, [old])) == {"new": 1}

    def test_old_waits_for_new_to_become_available(self):
        deployment = make_deployment(replicas=2, max_surge=1, max_unavailable=0)
        new_ms = make_machine_set("new", 1, available=0, status_replicas=0)
        old = make_machine_set("old", 2)
        assert plan_scale(deployment, new_ms, [old]) == []

    def test_old_scales_down_once_new_is_available(self):
        deployment = make_deployment(replicas=2, max_surge=1, max_unavailable=0)
        new_ms = make_machine_set("new", 1)
        old = make_machine_set("old", 2)
        assert _targets(plan_scale(deployment, new_ms, [old])) == {"old": 1}

    def test_scale_up_and_down_in_one_pass(self):
        deployment = make_deployment(replicas=4, max_surge=1, max_unavailable=2)
        new_ms = make_machine_set("new", 0)
        old = make_machine_set("old", 4)
        # total 5 after the surge, 2 must stay available, 1 new replica is not up yet
        actions = _targets(plan_scale(deployment, new_ms, [old]))
        assert actions == {"new": 1, "old": 2}

    def test_unavailable_only_strategy_progresses(self):
        deployment = make_deployment(replicas=3, max_surge=0, max_unavailable=1)
        new_ms = make_machine_set("new", 0)
        old = make_machine_set("old", 3)
        assert _targets(plan_scale(deployment, new_ms, [old])) == {"old": 2}

    def test_new_above_target_scales_down(self):
        deployment = make_deployment(replicas=2, max_surge=1, max_unavailable=0)
        new_ms = make_machine_set("new", 3)
        old = make_machine_set("old", 1)
        assert _targets(plan_scale(deployment, new_ms, [old]))["new"] == 2

    def test_proportional_across_old_generations(self):
        deployment = make_deployment(replicas=6, max_surge=0, max_unavailable=3)
        new_ms = make_machine_set("new", 0)
        olds = [make_machine_set("b", 4, created_minute=2), make_machine_set("a", 2, created_minute=1)]
        assert _targets(plan_scale(deployment, new_ms, olds)) == {"b": 2, "a": 1}

    def test_no_progress_possible_is_validation_error(self):
        deployment = make_deployment(replicas=2, max_surge=0, max_unavailable=0)
        with pytest.raises(StrategyValidationError):
            plan_scale(deployment, make_machine_set("new", 0), [make_machine_set("old", 2)])

    def test_percent_rounding_to_zero_is_validation_error(self):
        deployment = make_deployment(replicas=5, max_surge="0%", max_unavailable="10%")
        with pytest.raises(StrategyValidationError):
            plan_scale(deployment, make_machine_set("new", 0), [make_machine_set("old", 5)])

    def test_zero_bounds_without_rollout_is_fine(self):
        deployment = make_deployment(replicas=3, max_surge=0, max_unavailable=0)
        assert _targets(plan_scale(deployment, make_machine_set("new", 2), [])) == {"new": 3}

    def test_recreate_scales_old_down_first(self):
        deployment = make_deployment(replicas=2, strategy_type=STRATEGY_RECREATE)
        new_ms = make_machine_set("new", 0)
        olds = [make_machine_set("b", 1), make_machine_set("a", 2)]
        assert _targets(plan_scale(deployment, new_ms, olds)) == {"b": 0, "a": 0}

    def test_recreate_waits_for_old_machines(self):
        deployment = make_deployment(replicas=2, strategy_type=STRATEGY_RECREATE)
        new_ms = make_machine_set("new", 0)
        old = make_machine_set("old", 0, available=1, status_replicas=1)
        assert plan_scale(deployment, new_ms, [old]) == []

    def test_recreate_scales_new_after_drain(self):
        deployment = make_deployment(replicas=2, strategy_type=STRATEGY_RECREATE)
        new_ms = make_machine_set("new", 0)
        old = make_machine_set("old", 0)
        assert _targets(plan_scale(deployment, new_ms, [old])) == {"new": 2}


BOUNDS = [0, 1, 2, "25%", "50%"]


def _rollout_cases():
    for replicas in (1, 2, 3, 5, 10):
        for surge in BOUNDS:
            for unavailable in BOUNDS:
                deployment = make_deployment(replicas=replicas, max_surge=surge, max_unavailable=unavailable)
                if resolve_bounds(deployment) == (0, 0):
                    continue
                yield replicas, surge, unavailable


@pytest.mark.parametrize("replicas,surge,unavailable", list(_rollout_cases()))
def test_rollout_stays_within_bounds(replicas, surge, unavailable):
    clock = TickingClock()
    store = InMemoryStore(clock=clock)
    reconciler = MachineDeploymentReconciler(store, clock=clock)
    store.subscribe(lambda event_type, obj: reconciler.cache.invalidate(obj.metadata.namespace))

    deployment = store.create(make_deployment(replicas=replicas, max_surge=surge, max_unavailable=unavailable))
    settle(store, reconciler)
    max_surge, max_unavailable = resolve_bounds(deployment)

    def check_surge():
        assert total_targets(store) <= replicas + max_surge

    def check_availability():
        assert total_available(store) >= replicas - max_unavailable

    update_deployment(store, lambda d: d.spec.template.spec.update({"versions": {"kubelet": "1.11.0"}}))
    settle(store, reconciler, after_reconcile=check_surge, after_provision=check_availability)

    remaining = machine_sets(store)
    assert len(remaining) == 1
    assert remaining[0].spec.replicas == replicas
    assert remaining[0].spec.template.spec["versions"]["kubelet"] == "1.11.0"


@pytest.mark.parametrize("replicas", [3, 5, 10])
@pytest.mark.parametrize("surge", [1, "25%"])
@pytest.mark.parametrize("unavailable", [0, 1])
def test_second_template_change_mid_rollout_stays_within_bounds(replicas, surge, unavailable):
    clock = TickingClock()
    store = InMemoryStore(clock=clock)
    reconciler = MachineDeploymentReconciler(store, clock=clock)
    store.subscribe(lambda event_type, obj: reconciler.cache.invalidate(obj.metadata.namespace))

    deployment = store.create(make_deployment(replicas=replicas, max_surge=surge, max_unavailable=unavailable))
    settle(store, reconciler)
    max_surge, max_unavailable = resolve_bounds(deployment)
    changed = []

    def check_surge_and_change_template_once():
        assert total_targets(store) <= replicas + max_surge
        if changed:
            return
        changed.append(True)
        update_deployment(store, lambda d: d.spec.template.spec.update({"versions": {"kubelet": "1.12.0"}}))
        # both earlier generations still hold machines when the next template lands
        assert len([ms for ms in machine_sets(store) if ms.spec.replicas > 0]) == 2

    def check_availability():
        assert total_available(store) >= replicas - max_unavailable

    update_deployment(store, lambda d: d.spec.template.spec.update({"versions": {"kubelet": "1.11.0"}}))
    settle(
        store,
        reconciler,
        after_reconcile=check_surge_and_change_template_once,
        after_provision=check_availability,
    )

    remaining = machine_sets(store)
    assert len(remaining) == 1
    assert remaining[0].spec.replicas == replicas
    assert remaining[0].spec.template.spec["versions"]["kubelet"] == "1.12.0"


def test_recreate_never_overlaps():
    clock = TickingClock()
    store = InMemoryStore(clock=clock)
    reconciler = MachineDeploymentReconciler(store, clock=clock)
    store.subscribe(lambda event_type, obj: reconciler.cache.invalidate(obj.metadata.namespace))
    store.create(make_deployment(replicas=3, strategy_type=STRATEGY_RECREATE))
    settle(store, reconciler)

    def check_no_overlap():
        active = [ms for ms in machine_sets(store) if ms.spec.replicas > 0]
        assert len(active) <= 1

    update_deployment(store, lambda d: d.spec.template.labels.update({"updated": "true"}))
    settle(store, reconciler, after_reconcile=check_no_overlap, after_provision=check_no_overlap)

    remaining = machine_sets(store)
    assert [ms.spec.replicas for ms in remaining] == [3]
