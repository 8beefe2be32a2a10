"""Error taxonomy for the approval engine.

Decision-affecting errors are raised to the caller and always prevent an
operation from being treated as approved. Audit failures are never raised
into the decision pipeline; they surface as AuditWriteWarning instead.

Provides:
- ApprovalEngineError: Base class for all engine errors
- ConflictError: Autonomous session already active
- NoActiveSessionError: Stop requested with no active session
- MalformedIntentError: Operation intent missing required fields
- ConfigError: Approval rules could not be loaded or validated
- AuditWriteWarning: Non-fatal audit append failure
"""

from typing import Any


class ApprovalEngineError(Exception):
    """Base class for errors surfaced by the approval engine."""


class ConflictError(ApprovalEngineError):
    """Raised when starting a session while another one is active."""

    def __init__(self, active_session_id: str):
        self.active_session_id = active_session_id
        super().__init__(f"Autonomous session {active_session_id} is already active")


class NoActiveSessionError(ApprovalEngineError):
    """Raised when stopping while no autonomous session is active."""

    def __init__(self, message: str = "No autonomous session is active"):
        super().__init__(message)


class MalformedIntentError(ApprovalEngineError):
    """Raised when an operation intent cannot be decided.

    The intent is rejected before pattern matching and is never scored.

    Attributes:
        errors: Field-level error details (pydantic error dicts when available)
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        self.errors = errors or []
        super().__init__(message)


class ConfigError(ApprovalEngineError):
    """Raised when an approval rules file is unreadable or invalid."""


class AuditWriteWarning(UserWarning):
    """Audit trail append or flush failed; the decision was still delivered."""
