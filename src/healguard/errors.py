"""Error taxonomy for HealGuard.

Blocking and rejection errors are terminal for the action they describe and
are never retried automatically. Delivery and persistence errors are soft:
callers log them and keep the governance decision they relate to.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from healguard.models import HealingStep


class GovernanceError(Exception):
    """Base class for HealGuard errors."""

    pass


class ValidationBlocked(GovernanceError):
    """Policy denied autonomous execution."""

    def __init__(self, reason: str, requires_approval: bool = True):
        super().__init__(reason)
        self.reason = reason
        self.requires_approval = requires_approval


class StepRejected(GovernanceError):
    """A step failed static or sandbox validation."""

    def __init__(self, step: "HealingStep", reason: str):
        super().__init__(f"Step '{step.action}' on '{step.target}' rejected: {reason}")
        self.step = step
        self.reason = reason


class ExecutionFailed(GovernanceError):
    """Real execution reported failure or exceeded its time ceiling."""

    def __init__(self, reason: str, timed_out: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.timed_out = timed_out


class ProposalStateError(GovernanceError):
    """Illegal proposal transition or failed VCS call."""

    def __init__(self, proposal_id: str, message: str):
        super().__init__(f"Proposal {proposal_id}: {message}")
        self.proposal_id = proposal_id
        self.message = message


class TicketStateError(GovernanceError):
    """Illegal review ticket transition."""

    pass


class ChannelDeliveryFailed(GovernanceError):
    """A notification channel could not deliver."""

    def __init__(self, channel: str, reason: str):
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason


class PersistenceFailed(GovernanceError):
    """A durable write failed."""

    def __init__(self, operation: str, cause: Exception | None = None):
        message = f"Persistence failed during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause
