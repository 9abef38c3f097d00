"""
Adapters between cluster API JSON objects and the controller's types.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .kube_types import (
    KIND_MACHINE_DEPLOYMENT,
    KIND_MACHINE_SET,
    Condition,
    DeploymentStrategy,
    IntOrPercent,
    MachineDeployment,
    MachineDeploymentSpec,
    MachineDeploymentStatus,
    MachineSet,
    MachineSetSpec,
    MachineSetStatus,
    MachineTemplate,
    ObjectMeta,
    STRATEGY_ROLLING_UPDATE,
    StoredObject,
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def _selector_from_dict(raw: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return dict((raw or {}).get("matchLabels") or {})


def metadata_from_dict(raw: Dict[str, Any]) -> ObjectMeta:
    owner = next(
        (ref for ref in raw.get("ownerReferences") or [] if ref.get("controller")),
        None,
    )
    return ObjectMeta(
        name=raw["name"],
        namespace=raw.get("namespace", "default"),
        uid=raw.get("uid", ""),
        resource_version=raw.get("resourceVersion", ""),
        generation=raw.get("generation", 0),
        labels=dict(raw.get("labels") or {}),
        annotations=dict(raw.get("annotations") or {}),
        creation_timestamp=parse_timestamp(raw.get("creationTimestamp")),
        deletion_timestamp=parse_timestamp(raw.get("deletionTimestamp")),
        owner_uid=owner.get("uid") if owner else None,
        owner_name=owner.get("name") if owner else None,
    )


def metadata_to_dict(meta: ObjectMeta, owner_kind: str = KIND_MACHINE_DEPLOYMENT, api_version: str = "") -> Dict[str, Any]:
    raw: Dict[str, Any] = {
        "name": meta.name,
        "namespace": meta.namespace,
        "labels": dict(meta.labels),
        "annotations": dict(meta.annotations),
    }
    if meta.uid:
        raw["uid"] = meta.uid
    if meta.resource_version:
        raw["resourceVersion"] = meta.resource_version
    if meta.generation:
        raw["generation"] = meta.generation
    if meta.creation_timestamp is not None:
        raw["creationTimestamp"] = format_timestamp(meta.creation_timestamp)
    if meta.deletion_timestamp is not None:
        raw["deletionTimestamp"] = format_timestamp(meta.deletion_timestamp)
    if meta.owner_uid:
        raw["ownerReferences"] = [{
            "apiVersion": api_version,
            "kind": owner_kind,
            "name": meta.owner_name,
            "uid": meta.owner_uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }]
    return raw


def template_from_dict(raw: Optional[Dict[str, Any]]) -> MachineTemplate:
    raw = raw or {}
    meta = raw.get("metadata") or {}
    return MachineTemplate(
        labels=dict(meta.get("labels") or {}),
        annotations=dict(meta.get("annotations") or {}),
        spec=dict(raw.get("spec") or {}),
        creation_timestamp=parse_timestamp(meta.get("creationTimestamp")),
    )


def template_to_dict(template: MachineTemplate) -> Dict[str, Any]:
    return {
        "metadata": {"labels": dict(template.labels), "annotations": dict(template.annotations)},
        "spec": template.spec,
    }


def conditions_from_list(raw: Optional[List[Dict[str, Any]]]) -> List[Condition]:
    return [
        Condition(
            type=c["type"],
            status=c["status"],
            reason=c.get("reason", ""),
            message=c.get("message", ""),
            last_transition_time=parse_timestamp(c.get("lastTransitionTime")),
        )
        for c in raw or []
    ]


def conditions_to_list(conditions: List[Condition]) -> List[Dict[str, Any]]:
    return [
        {
            "type": c.type,
            "status": c.status,
            "reason": c.reason,
            "message": c.message,
            "lastTransitionTime": format_timestamp(c.last_transition_time),
        }
        for c in conditions
    ]


def machine_deployment_from_dict(raw: Dict[str, Any]) -> MachineDeployment:
    spec = raw.get("spec") or {}
    status = raw.get("status") or {}
    strategy_raw = spec.get("strategy") or {}
    rolling = strategy_raw.get("rollingUpdate") or {}
    defaults = DeploymentStrategy()
    return MachineDeployment(
        metadata=metadata_from_dict(raw["metadata"]),
        spec=MachineDeploymentSpec(
            replicas=spec.get("replicas", 1),
            selector=_selector_from_dict(spec.get("selector")),
            template=template_from_dict(spec.get("template")),
            strategy=DeploymentStrategy(
                type=strategy_raw.get("type", STRATEGY_ROLLING_UPDATE),
                max_surge=IntOrPercent.parse(rolling.get("maxSurge")) or defaults.max_surge,
                max_unavailable=IntOrPercent.parse(rolling.get("maxUnavailable")) or defaults.max_unavailable,
            ),
            revision_history_limit=spec.get("revisionHistoryLimit", 1),
            min_ready_seconds=spec.get("minReadySeconds", 0),
            paused=spec.get("paused", False),
        ),
        status=MachineDeploymentStatus(
            replicas=status.get("replicas", 0),
            updated_replicas=status.get("updatedReplicas", 0),
            ready_replicas=status.get("readyReplicas", 0),
            available_replicas=status.get("availableReplicas", 0),
            unavailable_replicas=status.get("unavailableReplicas", 0),
            observed_generation=status.get("observedGeneration", 0),
            collision_count=status.get("collisionCount"),
            phase=status.get("phase", ""),
            conditions=conditions_from_list(status.get("conditions")),
        ),
    )


def machine_deployment_to_dict(deployment: MachineDeployment, api_version: str = "cluster.k8s.io/v1beta1") -> Dict[str, Any]:
    spec = deployment.spec
    status = deployment.status
    strategy: Dict[str, Any] = {"type": spec.strategy.type}
    if spec.strategy.type == STRATEGY_ROLLING_UPDATE:
        strategy["rollingUpdate"] = {
            "maxSurge": spec.strategy.max_surge.to_raw(),
            "maxUnavailable": spec.strategy.max_unavailable.to_raw(),
        }
    raw_status: Dict[str, Any] = {
        "replicas": status.replicas,
        "updatedReplicas": status.updated_replicas,
        "readyReplicas": status.ready_replicas,
        "availableReplicas": status.available_replicas,
        "unavailableReplicas": status.unavailable_replicas,
        "observedGeneration": status.observed_generation,
        "phase": status.phase,
        "conditions": conditions_to_list(status.conditions),
    }
    if status.collision_count is not None:
        raw_status["collisionCount"] = status.collision_count
    return {
        "apiVersion": api_version,
        "kind": KIND_MACHINE_DEPLOYMENT,
        "metadata": metadata_to_dict(deployment.metadata),
        "spec": {
            "replicas": spec.replicas,
            "selector": {"matchLabels": dict(spec.selector)},
            "template": template_to_dict(spec.template),
            "strategy": strategy,
            "revisionHistoryLimit": spec.revision_history_limit,
            "minReadySeconds": spec.min_ready_seconds,
            "paused": spec.paused,
        },
        "status": raw_status,
    }


def machine_set_from_dict(raw: Dict[str, Any]) -> MachineSet:
    spec = raw.get("spec") or {}
    status = raw.get("status") or {}
    return MachineSet(
        metadata=metadata_from_dict(raw["metadata"]),
        spec=MachineSetSpec(
            replicas=spec.get("replicas", 0),
            selector=_selector_from_dict(spec.get("selector")),
            template=template_from_dict(spec.get("template")),
            min_ready_seconds=spec.get("minReadySeconds", 0),
        ),
        status=MachineSetStatus(
            replicas=status.get("replicas", 0),
            ready_replicas=status.get("readyReplicas", 0),
            available_replicas=status.get("availableReplicas", 0),
            observed_generation=status.get("observedGeneration", 0),
            failure_reason=status.get("errorReason"),
            failure_message=status.get("errorMessage"),
        ),
    )


def machine_set_to_dict(machine_set: MachineSet, api_version: str = "cluster.k8s.io/v1beta1") -> Dict[str, Any]:
    status = machine_set.status
    raw_status: Dict[str, Any] = {
        "replicas": status.replicas,
        "readyReplicas": status.ready_replicas,
        "availableReplicas": status.available_replicas,
        "observedGeneration": status.observed_generation,
    }
    if status.failure_reason:
        raw_status["errorReason"] = status.failure_reason
    if status.failure_message:
        raw_status["errorMessage"] = status.failure_message
    return {
        "apiVersion": api_version,
        "kind": KIND_MACHINE_SET,
        "metadata": metadata_to_dict(machine_set.metadata, KIND_MACHINE_DEPLOYMENT, api_version),
        "spec": {
            "replicas": machine_set.spec.replicas,
            "selector": {"matchLabels": dict(machine_set.spec.selector)},
            "template": template_to_dict(machine_set.spec.template),
            "minReadySeconds": machine_set.spec.min_ready_seconds,
        },
        "status": raw_status,
    }


def object_from_dict(raw: Dict[str, Any]) -> StoredObject:
    kind = raw.get("kind")
    if kind == KIND_MACHINE_DEPLOYMENT:
        return machine_deployment_from_dict(raw)
    if kind == KIND_MACHINE_SET:
        return machine_set_from_dict(raw)
    raise ValueError(f"unsupported kind: {kind!r}")


def object_to_dict(obj: StoredObject, api_version: str = "cluster.k8s.io/v1beta1") -> Dict[str, Any]:
    if obj.kind == KIND_MACHINE_DEPLOYMENT:
        return machine_deployment_to_dict(obj, api_version)
    return machine_set_to_dict(obj, api_version)
