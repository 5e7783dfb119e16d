"""Approvals: policy engine, workflow manager and approver notification."""

from actiongate.approvals.notifier import (
    LoggingNotifier,
    NotificationChannel,
    NotificationDispatcher,
    WebhookNotifier,
)
from actiongate.approvals.policy import (
    ApprovalPolicyEngine,
    ApprovalRequirement,
    build_request,
    risk_based_requirement,
)
from actiongate.approvals.workflow import (
    ApprovalWorkflowManager,
    Resolution,
    apply_modifications,
)

__all__ = [
    "ApprovalPolicyEngine",
    "ApprovalRequirement",
    "ApprovalWorkflowManager",
    "LoggingNotifier",
    "NotificationChannel",
    "NotificationDispatcher",
    "Resolution",
    "WebhookNotifier",
    "apply_modifications",
    "build_request",
    "risk_based_requirement",
]
