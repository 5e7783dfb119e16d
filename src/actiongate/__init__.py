"""Action relevance verification and approval gate for scheduled agent actions."""

__version__ = "0.1.0"

from actiongate.config import ActionRelevanceConfig, GatewayConfig, PolicyStore, load_config
from actiongate.errors import (
    ActionBusyError,
    ActionHeldError,
    ActionGateError,
    ActionNotFoundError,
    ApprovalNotFoundError,
    AuditWriteError,
    ConfigError,
    InvalidTransitionError,
    StaleDecisionError,
)
from actiongate.gate import ActionExecutionGate, GateOutcome
from actiongate.models import (
    ActionRelevanceResult,
    ActionScope,
    ApprovalDecision,
    ApprovalStatus,
    ContactContext,
    ExecutionDecision,
    RelevanceVerdict,
    ScheduledAction,
    ScheduledActionStatus,
    UrgencyLevel,
    UserApprovalRequest,
    UserApprovalResponse,
    ValidationMethod,
)
from actiongate.pipeline import ActionPipeline, build_pipeline

__all__ = [
    "ActionBusyError",
    "ActionHeldError",
    "ActionExecutionGate",
    "ActionGateError",
    "ActionNotFoundError",
    "ActionPipeline",
    "ActionRelevanceConfig",
    "ActionRelevanceResult",
    "ActionScope",
    "ApprovalDecision",
    "ApprovalNotFoundError",
    "ApprovalStatus",
    "AuditWriteError",
    "ConfigError",
    "ContactContext",
    "ExecutionDecision",
    "GateOutcome",
    "GatewayConfig",
    "InvalidTransitionError",
    "PolicyStore",
    "RelevanceVerdict",
    "ScheduledAction",
    "ScheduledActionStatus",
    "StaleDecisionError",
    "UrgencyLevel",
    "UserApprovalRequest",
    "UserApprovalResponse",
    "ValidationMethod",
    "__version__",
    "build_pipeline",
    "load_config",
]
