"""
Replica planning for MachineDeployment rollouts.

Every call plans one incremental step from the currently observed state and
returns it as a list of ``ScaleAction``. Nothing here waits for machines to
appear or disappear; the next reconcile observes the result and plans the
following step.
"""
import logging
from dataclasses import dataclass
from typing import List, Tuple

from .errors import StrategyValidationError
from .kube_types import MachineDeployment, MachineSet, STRATEGY_RECREATE, STRATEGY_ROLLING_UPDATE

logger = logging.getLogger(__name__)


@dataclass
class ScaleAction:
    """Set the replica target of one MachineSet."""
    machine_set: MachineSet
    replicas: int
    reason: str = ""


def resolve_bounds(deployment: MachineDeployment) -> Tuple[int, int]:
    """
    Resolve maxSurge and maxUnavailable against the target replica count.

    Surge rounds up, unavailable rounds down. Recreate deployments allow
    neither.

    Returns:
        (surge, unavailable) as absolute replica counts
    """
    strategy = deployment.spec.strategy
    if strategy.type != STRATEGY_ROLLING_UPDATE:
        return 0, 0
    replicas = deployment.spec.replicas
    surge = strategy.max_surge.resolve(replicas, round_up=True)
    unavailable = strategy.max_unavailable.resolve(replicas, round_up=False)
    return max(surge, 0), min(max(unavailable, 0), replicas)


def total_replicas(machine_sets: List[MachineSet]) -> int:
    return sum(ms.spec.replicas for ms in machine_sets)


def total_available(machine_sets: List[MachineSet]) -> int:
    return sum(ms.status.available_replicas for ms in machine_sets)


def distribute_scale_down(budget: int, old_sets: List[MachineSet]) -> List[int]:
    """
    Split a scale-down budget across old generations.

    Each generation first gets its truncated proportional share of the budget,
    weighted by its current target. The remainder is handed out one replica at
    a time in ascending order of current target, so the smallest generations
    drain first; ties keep the order of ``old_sets``.

    Args:
        budget: Replicas to remove in this step
        old_sets: Old generations, newest first

    Returns:
        Decrement per generation, aligned with old_sets. The decrements sum to
        ``min(budget, total old target)`` and never exceed a generation's target.
    """
    targets = [max(ms.spec.replicas, 0) for ms in old_sets]
    old_total = sum(targets)
    budget = min(budget, old_total)
    if budget <= 0:
        return [0] * len(old_sets)

    decrements = [budget * target // old_total for target in targets]
    remainder = budget - sum(decrements)
    order = sorted(range(len(old_sets)), key=lambda i: targets[i])
    while remainder > 0:
        for i in order:
            if remainder == 0:
                break
            if targets[i] - decrements[i] > 0:
                decrements[i] += 1
                remainder -= 1
    return decrements


def plan_scale(deployment: MachineDeployment, new_ms: MachineSet, old_sets: List[MachineSet]) -> List[ScaleAction]:
    """
    Plan the next scaling step for a deployment.

    Args:
        deployment: Deployment being reconciled
        new_ms: Generation matching the current template
        old_sets: All other owned generations, newest first

    Returns:
        Actions to apply; empty when nothing should change

    Raises:
        StrategyValidationError: A rolling update with no surge and no
            unavailability allowed has nothing to make progress with
    """
    if deployment.spec.paused:
        logger.debug(f"{deployment.key} is paused; not scaling")
        return []

    replicas = deployment.spec.replicas
    if deployment.spec.strategy.type == STRATEGY_RECREATE:
        return _plan_recreate(replicas, new_ms, old_sets)

    if not any(ms.spec.replicas > 0 for ms in old_sets):
        if new_ms.spec.replicas != replicas:
            return [ScaleAction(new_ms, replicas, reason="scale")]
        return []

    return _plan_rolling_update(deployment, new_ms, old_sets)


def _plan_recreate(replicas: int, new_ms: MachineSet, old_sets: List[MachineSet]) -> List[ScaleAction]:
    actions = [ScaleAction(ms, 0, reason="recreate") for ms in old_sets if ms.spec.replicas > 0]
    if actions:
        return actions
    if any(ms.status.replicas > 0 for ms in old_sets):
        # old machines still draining
        return []
    if new_ms.spec.replicas != replicas:
        return [ScaleAction(new_ms, replicas, reason="recreate")]
    return []


def _plan_rolling_update(
    deployment: MachineDeployment, new_ms: MachineSet, old_sets: List[MachineSet]
) -> List[ScaleAction]:
    replicas = deployment.spec.replicas
    surge, unavailable = resolve_bounds(deployment)
    if surge == 0 and unavailable == 0 and replicas > 0:
        raise StrategyValidationError(
            f"maxSurge and maxUnavailable both resolve to 0 for {replicas} replicas; rollout cannot progress"
        )

    actions: List[ScaleAction] = []
    total = total_replicas([new_ms] + old_sets)

    new_target = new_ms.spec.replicas
    if new_target > replicas:
        new_target = replicas
    elif new_target < replicas:
        scale_up = min(replicas + surge - total, replicas - new_target)
        if scale_up > 0:
            new_target += scale_up
    if new_target != new_ms.spec.replicas:
        actions.append(ScaleAction(new_ms, new_target, reason="rolling update"))
        total += new_target - new_ms.spec.replicas

    min_available = replicas - unavailable
    new_unavailable = max(new_target - new_ms.status.available_replicas, 0)
    old_total = total_replicas(old_sets)
    old_unhealthy = sum(max(ms.spec.replicas - ms.status.available_replicas, 0) for ms in old_sets)
    available = total_available([new_ms] + old_sets)

    budget = min(
        total - min_available - new_unavailable,
        old_total,
        old_unhealthy + max(available - min_available, 0),
    )
    if budget <= 0:
        return actions

    decrements = distribute_scale_down(budget, old_sets)
    for ms, decrement in zip(old_sets, decrements):
        if decrement > 0:
            actions.append(ScaleAction(ms, ms.spec.replicas - decrement, reason="rolling update"))
    return actions
