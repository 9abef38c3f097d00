"""
Status aggregation for MachineDeployments.
"""
import copy
from datetime import datetime
from typing import List, Optional

from .kube_types import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    Condition,
    MachineDeployment,
    MachineDeploymentStatus,
    MachineSet,
)
from .rolling import resolve_bounds

CONDITION_AVAILABLE = "Available"
CONDITION_PROGRESSING = "Progressing"
CONDITION_REPLICA_FAILURE = "ReplicaFailure"
CONDITION_INVALID_SPEC = "InvalidSpec"

PHASE_INITIALIZING = "Initializing"
PHASE_ROLLING_OUT = "RollingOut"
PHASE_STEADY = "Steady"


def set_condition(
    conditions: List[Condition],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    now: datetime,
) -> None:
    """Upsert a condition; the transition time only moves when status flips."""
    for condition in conditions:
        if condition.type != condition_type:
            continue
        if condition.status != status:
            condition.last_transition_time = now
        condition.status = status
        condition.reason = reason
        condition.message = message
        return
    conditions.append(Condition(condition_type, status, reason, message, now))


def remove_condition(conditions: List[Condition], condition_type: str) -> None:
    conditions[:] = [c for c in conditions if c.type != condition_type]


def is_progressing(deployment: MachineDeployment, new_ms: Optional[MachineSet], old_sets: List[MachineSet]) -> bool:
    new_target = new_ms.spec.replicas if new_ms is not None else 0
    return new_target < deployment.spec.replicas or any(ms.spec.replicas > 0 for ms in old_sets)


def rollout_phase(
    deployment: MachineDeployment,
    new_ms: Optional[MachineSet],
    old_sets: List[MachineSet],
    status: MachineDeploymentStatus,
) -> str:
    """
    Initializing until any machine is observed, RollingOut while targets or
    observed machines differ from the spec in either direction, Steady
    otherwise.
    """
    replicas = deployment.spec.replicas
    if replicas > 0 and status.replicas == 0 and not old_sets:
        return PHASE_INITIALIZING
    if is_progressing(deployment, new_ms, old_sets):
        return PHASE_ROLLING_OUT
    if status.updated_replicas != replicas or status.replicas != replicas:
        return PHASE_ROLLING_OUT
    return PHASE_STEADY


def aggregate_status(
    deployment: MachineDeployment,
    new_ms: Optional[MachineSet],
    old_sets: List[MachineSet],
    now: datetime,
    validation_error: Optional[str] = None,
) -> MachineDeploymentStatus:
    """
    Derive deployment status from its generations.

    ``observed_generation`` only advances when the pass produced no
    validation error.

    Args:
        deployment: Deployment as last read; its status is the starting point
        new_ms: Generation matching the current template, if any
        old_sets: All other owned generations
        now: Timestamp for condition transitions
        validation_error: Message when the spec cannot be acted upon

    Returns:
        New status object; the deployment is not modified
    """
    previous = deployment.status
    all_sets = ([new_ms] if new_ms is not None else []) + list(old_sets)
    replicas = deployment.spec.replicas

    status = MachineDeploymentStatus(
        replicas=sum(ms.status.replicas for ms in all_sets),
        updated_replicas=new_ms.status.replicas if new_ms is not None else 0,
        ready_replicas=sum(ms.status.ready_replicas for ms in all_sets),
        available_replicas=sum(ms.status.available_replicas for ms in all_sets),
        observed_generation=previous.observed_generation,
        collision_count=previous.collision_count,
        conditions=copy.deepcopy(previous.conditions),
    )
    status.unavailable_replicas = max(replicas - status.available_replicas, 0)
    if validation_error is None:
        status.observed_generation = deployment.metadata.generation

    _, unavailable = resolve_bounds(deployment)
    if status.available_replicas >= replicas - unavailable:
        set_condition(
            status.conditions, CONDITION_AVAILABLE, CONDITION_TRUE, "MinimumReplicasAvailable",
            "Deployment has minimum availability.", now,
        )
    else:
        set_condition(
            status.conditions, CONDITION_AVAILABLE, CONDITION_FALSE, "MinimumReplicasUnavailable",
            f"{status.available_replicas} of minimum {replicas - unavailable} replicas available.", now,
        )

    if is_progressing(deployment, new_ms, old_sets):
        name = new_ms.metadata.name if new_ms is not None else "<none>"
        set_condition(
            status.conditions, CONDITION_PROGRESSING, CONDITION_TRUE, "MachineSetUpdated",
            f"MachineSet {name} is progressing.", now,
        )
    else:
        set_condition(
            status.conditions, CONDITION_PROGRESSING, CONDITION_FALSE, "NewMachineSetAvailable",
            "All replicas are on the current template.", now,
        )

    failed = [ms for ms in all_sets if ms.status.failure_reason]
    if failed:
        set_condition(
            status.conditions, CONDITION_REPLICA_FAILURE, CONDITION_TRUE, failed[0].status.failure_reason,
            failed[0].status.failure_message or f"MachineSet {failed[0].metadata.name} reports a failure.", now,
        )
    else:
        remove_condition(status.conditions, CONDITION_REPLICA_FAILURE)

    if validation_error is not None:
        set_condition(status.conditions, CONDITION_INVALID_SPEC, CONDITION_TRUE, "InvalidStrategy", validation_error, now)
    else:
        remove_condition(status.conditions, CONDITION_INVALID_SPEC)

    status.phase = rollout_phase(deployment, new_ms, old_sets, status)
    return status
