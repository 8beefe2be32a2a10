"""Core approval engine functionality.

Provides:
- Operation intent, risk score and decision data model
- Error taxonomy
- Rule configuration
"""

from .config import ApprovalConfig, BatchType, ContextualApproval, load_config
from .errors import (
    ApprovalEngineError,
    AuditWriteWarning,
    ConfigError,
    ConflictError,
    MalformedIntentError,
    NoActiveSessionError,
)
from .intent import (
    AuditEntry,
    Decision,
    DecisionResult,
    IntentContext,
    MatchResult,
    OperationIntent,
    OperationKey,
    OperationKind,
    RiskLevel,
    RiskScore,
    parse_intent,
)

__all__ = [
    "ApprovalConfig",
    "BatchType",
    "ContextualApproval",
    "load_config",
    "ApprovalEngineError",
    "AuditWriteWarning",
    "ConfigError",
    "ConflictError",
    "MalformedIntentError",
    "NoActiveSessionError",
    "AuditEntry",
    "Decision",
    "DecisionResult",
    "IntentContext",
    "MatchResult",
    "OperationIntent",
    "OperationKey",
    "OperationKind",
    "RiskLevel",
    "RiskScore",
    "parse_intent",
]
