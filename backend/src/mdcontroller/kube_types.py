"""
Type definitions for MachineDeployment, MachineSet and their building blocks.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple, Union
from datetime import datetime


KIND_MACHINE_DEPLOYMENT = "MachineDeployment"
KIND_MACHINE_SET = "MachineSet"

STRATEGY_ROLLING_UPDATE = "RollingUpdate"
STRATEGY_RECREATE = "Recreate"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"


@dataclass(frozen=True)
class IntOrPercent:
    """
    A rollout bound expressed either as an absolute count or a percentage.

    ``IntOrPercent.parse(1)`` is an absolute bound, ``IntOrPercent.parse("25%")``
    a percentage of the target replica count.
    """
    value: int
    is_percent: bool = False

    @classmethod
    def absolute(cls, value: int) -> "IntOrPercent":
        return cls(value=value)

    @classmethod
    def percent(cls, value: int) -> "IntOrPercent":
        return cls(value=value, is_percent=True)

    @classmethod
    def parse(cls, raw: Union[int, str, "IntOrPercent", None]) -> Optional["IntOrPercent"]:
        """
        Build a bound from its wire form.

        Args:
            raw: An int, a string like "30%" or "2", or an existing bound

        Returns:
            IntOrPercent, or None when raw is None
        """
        if raw is None or isinstance(raw, IntOrPercent):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"invalid bound: {raw!r}")
        if isinstance(raw, int):
            return cls.absolute(raw)
        text = str(raw).strip()
        if text.endswith("%"):
            return cls.percent(int(text[:-1]))
        return cls.absolute(int(text))

    def resolve(self, total: int, round_up: bool) -> int:
        """
        Resolve the bound against a replica count.

        Args:
            total: Target replica count the percentage applies to
            round_up: Round a fractional percentage up instead of down

        Returns:
            Absolute number of replicas
        """
        if not self.is_percent:
            return self.value
        scaled = total * self.value / 100
        return math.ceil(scaled) if round_up else math.floor(scaled)

    def to_raw(self) -> Union[int, str]:
        return f"{self.value}%" if self.is_percent else self.value


@dataclass
class ObjectMeta:
    """Metadata shared by every stored object."""
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    owner_uid: Optional[str] = None
    owner_name: Optional[str] = None


@dataclass
class MachineTemplate:
    """Template every machine of a generation is stamped from."""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    spec: Dict[str, Any] = field(default_factory=dict)
    creation_timestamp: Optional[datetime] = None


@dataclass
class DeploymentStrategy:
    """Rollout strategy of a MachineDeployment."""
    type: str = STRATEGY_ROLLING_UPDATE
    max_surge: IntOrPercent = field(default_factory=lambda: IntOrPercent.absolute(1))
    max_unavailable: IntOrPercent = field(default_factory=lambda: IntOrPercent.absolute(0))


@dataclass
class Condition:
    """Deployment status condition."""
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None


@dataclass
class MachineDeploymentSpec:
    replicas: int = 1
    selector: Dict[str, str] = field(default_factory=dict)
    template: MachineTemplate = field(default_factory=MachineTemplate)
    strategy: DeploymentStrategy = field(default_factory=DeploymentStrategy)
    revision_history_limit: Optional[int] = 1
    min_ready_seconds: int = 0
    paused: bool = False


@dataclass
class MachineDeploymentStatus:
    replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    unavailable_replicas: int = 0
    observed_generation: int = 0
    collision_count: Optional[int] = None
    phase: str = ""
    conditions: List[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


@dataclass
class MachineDeployment:
    """Desired state for a homogeneous group of machines."""
    metadata: ObjectMeta
    spec: MachineDeploymentSpec = field(default_factory=MachineDeploymentSpec)
    status: MachineDeploymentStatus = field(default_factory=MachineDeploymentStatus)
    kind: str = KIND_MACHINE_DEPLOYMENT

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"


@dataclass
class MachineSetSpec:
    replicas: int = 0
    selector: Dict[str, str] = field(default_factory=dict)
    template: MachineTemplate = field(default_factory=MachineTemplate)
    min_ready_seconds: int = 0


@dataclass
class MachineSetStatus:
    """
    Observed state of a generation.

    Counts are reported by whatever provisions the machines; this service only
    reads them.
    """
    replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    observed_generation: int = 0
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass
class MachineSet:
    """One immutable template generation with a mutable replica target."""
    metadata: ObjectMeta
    spec: MachineSetSpec = field(default_factory=MachineSetSpec)
    status: MachineSetStatus = field(default_factory=MachineSetStatus)
    kind: str = KIND_MACHINE_SET

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"


StoredObject = Union[MachineDeployment, MachineSet]


def split_key(key: str) -> Tuple[str, str]:
    """Split a ``namespace/name`` reconcile key."""
    namespace, _, name = key.partition("/")
    if not name:
        return "default", namespace
    return namespace, name
