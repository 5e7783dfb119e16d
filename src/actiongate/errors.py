"""Exception hierarchy for the action gate."""

from __future__ import annotations


class ActionGateError(Exception):
    """Base class for all action gate errors."""


class ConfigError(ActionGateError):
    """Raised when gateway configuration is missing, malformed, or invalid."""


class InvalidTransitionError(ActionGateError):
    """Raised when an invalid status transition is attempted."""


class ActionNotFoundError(ActionGateError):
    """Raised when a scheduled action id is unknown to the store."""


class ApprovalNotFoundError(ActionGateError):
    """Raised when an approval request id is unknown to the store."""


class StaleDecisionError(ActionGateError):
    """Raised when a response targets a request that is no longer pending.

    The original terminal state of the request is preserved.
    """

    def __init__(self, request_id: object, current_status: str, detail: str | None = None):
        self.request_id = request_id
        self.current_status = current_status
        message = f"stale decision: approval request {request_id} is '{current_status}'"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ActionBusyError(ActionGateError):
    """Raised when an action is already being processed by another invocation."""


class AuditWriteError(ActionGateError):
    """Raised when an audit record cannot be persisted.

    The affected action is held in its current state and flagged for manual
    reconciliation.
    """


class ActionHeldError(ActionGateError):
    """Raised when an action flagged for reconciliation is asked to change state."""

    def __init__(self, action_id: object) -> None:
        self.action_id = action_id
        super().__init__(f"Action {action_id} is held for manual reconciliation")


class SemanticResponseError(ActionGateError):
    """Raised when the semantic scorer returns a response that cannot be parsed."""
