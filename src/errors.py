"""Exception hierarchy for the orchestrator.

All errors raised by the orchestrator derive from OrchestratorError so the
CLI can report them uniformly and exit non-zero.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class ValidationError(OrchestratorError):
    """Resource definitions or a plan are invalid. Fatal, surfaced to the user."""


class CycleError(ValidationError):
    """A circular dependency exists between resources.

    Attributes:
        cycle: Resource ids forming the cycle, first id repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class LockHeldError(OrchestratorError):
    """The state lock is already held by another operation."""

    def __init__(self, info):
        self.info = info
        super().__init__(
            f"State is locked by {info.who} for '{info.operation}' "
            f"(lock id {info.id}, since {info.created_iso})"
        )


class ProviderError(OrchestratorError):
    """A provider call failed.

    Attributes:
        transient: True when the call may succeed if retried
        status: Optional HTTP-like status code from the provider
        attempts: Number of attempts made before giving up
    """

    def __init__(self, message: str, transient: bool = False, status: Optional[int] = None):
        self.transient = transient
        self.status = status
        self.attempts = 1
        super().__init__(message)


class StalePlanError(OrchestratorError):
    """The state changed since the plan was computed."""


class StateError(OrchestratorError):
    """The state file is unreadable or has an unsupported format."""


class OperationCanceled(OrchestratorError):
    """An operation was canceled before it completed."""
