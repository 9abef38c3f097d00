"""
Error taxonomy for the MachineDeployment controller.

Every failure is scoped to one reconcile key; the controller decides how to
requeue it from the exception type.
"""


class ControllerError(Exception):
    """Base class for controller errors."""


class NotFoundError(ControllerError):
    """The requested object does not exist in the store."""

    def __init__(self, kind: str, namespace: str, name: str):
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class TransientError(ControllerError):
    """Retryable failure; the key is requeued with exponential backoff."""


class ConflictError(TransientError):
    """An object with the same name already exists."""

    def __init__(self, kind: str, namespace: str, name: str):
        super().__init__(f"{kind} {namespace}/{name} already exists")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class VersionConflictError(TransientError):
    """The write carried a stale resource version."""

    def __init__(self, kind: str, namespace: str, name: str, expected: str = "", actual: str = ""):
        super().__init__(
            f"{kind} {namespace}/{name} was modified (version {expected!r}, stored {actual!r})"
        )
        self.kind = kind
        self.namespace = namespace
        self.name = name


class HashCollisionError(TransientError):
    """A generation name derived from the template hash is held by a different template."""


class StrategyValidationError(ControllerError):
    """The rollout strategy can never make progress as configured."""
