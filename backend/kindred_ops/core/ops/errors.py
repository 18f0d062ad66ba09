"""
Ops error taxonomy.

Raised by the orchestrator services and translated to HTTP responses by
the API layer.
"""

from typing import Optional


class OpsError(Exception):
    """Base class for orchestrator errors."""


class ValidationError(OpsError):
    """Malformed input, rejected before any record is written."""


class NotFoundError(OpsError):
    """Referenced record does not exist."""


class CapExceededError(OpsError):
    """An agent referenced by the proposal has reached its daily cap."""

    def __init__(self, agent_id: str, count: Optional[int] = None, cap: Optional[int] = None, reason: Optional[str] = None):
        self.agent_id = agent_id
        self.count = count
        self.cap = cap
        super().__init__(
            reason or f"Agent {agent_id} has reached daily task cap ({count}/{cap})"
        )


class PolicyMissingError(OpsError):
    """A required policy record is absent or unreadable."""

    def __init__(self, name: str, detail: Optional[str] = None):
        self.name = name
        self.malformed = detail is not None
        super().__init__(detail or f"Policy {name} not found")


class TriggerEvaluationError(OpsError):
    """A trigger's condition or action could not be evaluated."""


class StepExecutionError(OpsError):
    """A step's executor failed."""


class StaleTimeoutError(StepExecutionError):
    """Synthetic failure for a step left running past the stale threshold."""

    def __init__(self, threshold_minutes: int):
        self.threshold_minutes = threshold_minutes
        super().__init__(f"stale timeout: exceeded {threshold_minutes} minute limit")


class InvalidTransitionError(OpsError):
    """Requested step transition is not an edge of the state machine."""


class ProposalStateError(OpsError):
    """Operation not allowed in the proposal's current status."""
