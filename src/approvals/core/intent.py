"""Operation intents, risk scores and decisions.

Provides the data model shared by every stage of the approval pipeline.
Intents arrive from an upstream collaborator already parsed into this
canonical shape; camelCase field names are accepted as aliases so the
transport can forward its JSON records unchanged.

Provides:
- OperationKind: Category of a proposed operation
- IntentContext: Caller-supplied hints that modify risk
- OperationIntent: The unit of decision
- OperationKey: Coarse identity used for history lookup
- RiskLevel / RiskScore: Continuous risk estimate and its level
- MatchResult: PatternMatcher classification
- Decision: The five decision outcomes
- DecisionResult: Decision plus the evidence that produced it
- AuditEntry: One record in the audit trail
- SessionContext: Autonomous session snapshot used while deciding
- parse_intent: Validate a mapping or intent into an OperationIntent
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from approvals.core.errors import MalformedIntentError


class OperationKind(str, Enum):
    """Category of a proposed operation."""

    FILESYSTEM = "filesystem"
    VERSION_CONTROL = "versionControl"
    PROCESS_INVOCATION = "processInvocation"
    EXTERNAL = "external"


class IntentContext(BaseModel):
    """Boolean hints supplied by the caller.

    Batch membership and explicit user requests lower risk; first-time
    operations, recent failures and critical-path code raise it.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    is_batch_member: bool = False
    is_user_requested: bool = False
    is_automated_fix: bool = False
    is_first_time_operation: bool = False
    has_recent_failure: bool = False
    is_critical_path: bool = False


class OperationIntent(BaseModel):
    """A caller-supplied description of an action not yet performed.

    Attributes:
        id: Opaque identifier (generated when the caller does not assign one)
        kind: Operation category, always present
        target_path: Path for filesystem and version control operations
        command_text: Literal command string for process invocations
        action: Short verb describing intent (create, edit, delete, push, ...)
        context: Risk-modifying hints
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: OperationKind
    target_path: str | None = None
    command_text: str | None = None
    action: str = ""
    context: IntentContext = Field(default_factory=IntentContext)

    @model_validator(mode="after")
    def _require_target_or_command(self) -> "OperationIntent":
        if not self.target_path and not self.command_text:
            raise ValueError("at least one of targetPath or commandText is required")
        return self

    @property
    def key(self) -> "OperationKey":
        return OperationKey.from_intent(self)


@dataclass(frozen=True)
class OperationKey:
    """Identity shared by intents that are the same kind of operation.

    Deliberately coarser than the intent id: every edit of the same file
    aggregates into one history.
    """

    kind: str
    action: str
    target: str

    @classmethod
    def from_intent(cls, intent: OperationIntent) -> "OperationKey":
        return cls(
            kind=intent.kind.value,
            action=intent.action or "unknown",
            target=intent.target_path or intent.command_text or "unknown",
        )

    def __str__(self) -> str:
        return f"{self.kind}-{self.action}-{self.target}"


class RiskLevel(str, Enum):
    """Risk level derived from a score via fixed cut points."""

    LOW = "LOW"
    LOW_MEDIUM = "LOW_MEDIUM"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_score(cls, value: float) -> "RiskLevel":
        if value < 0.2:
            return cls.LOW
        if value < 0.4:
            return cls.LOW_MEDIUM
        if value < 0.6:
            return cls.MEDIUM
        if value < 0.8:
            return cls.HIGH
        return cls.CRITICAL


RECOMMENDATIONS = {
    RiskLevel.LOW: "Safe operation - automatic approval recommended",
    RiskLevel.LOW_MEDIUM: "Low risk - approve but log for audit",
    RiskLevel.MEDIUM: "Medium risk - check context and recent history",
    RiskLevel.HIGH: "High risk - user approval required",
    RiskLevel.CRITICAL: "Critical risk - requires explicit confirmation",
}


class RiskScore(BaseModel):
    """Risk estimate for one intent.

    contributing_factors and the component scores exist for presentation
    only; downstream logic reads value alone.
    """

    value: float = Field(..., ge=0.0, le=1.0)
    level: RiskLevel
    contributing_factors: list[str] = Field(default_factory=list)
    base: float = 0.0
    context: float = 0.0
    history: float = 0.0

    @classmethod
    def build(
        cls,
        value: float,
        factors: list[str] | None = None,
        base: float = 0.0,
        context: float = 0.0,
        history: float = 0.0,
    ) -> "RiskScore":
        return cls(
            value=value,
            level=RiskLevel.from_score(value),
            contributing_factors=factors or [],
            base=base,
            context=context,
            history=history,
        )

    @property
    def recommendation(self) -> str:
        return RECOMMENDATIONS[self.level]


class MatchResult(str, Enum):
    """Outcome of matching an intent against allow/deny patterns."""

    ABSOLUTE_DENY = "ABSOLUTE_DENY"
    ABSOLUTE_ALLOW = "ABSOLUTE_ALLOW"
    NO_MATCH = "NO_MATCH"


class Decision(str, Enum):
    """Decision outcomes, from most to least permissive."""

    AUTO_APPROVE = "AUTO_APPROVE"
    AUTO_APPROVE_WITH_LOG = "AUTO_APPROVE_WITH_LOG"
    CONTEXTUAL_APPROVAL_NEEDED = "CONTEXTUAL_APPROVAL_NEEDED"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    BLOCK_WITH_WARNING = "BLOCK_WITH_WARNING"

    @property
    def is_approved(self) -> bool:
        """True when the operation may proceed without a human."""
        return self in (Decision.AUTO_APPROVE, Decision.AUTO_APPROVE_WITH_LOG)


class DecisionResult(BaseModel):
    """A decision together with the evidence that produced it."""

    intent_id: str
    operation: str
    decision: Decision
    classification: MatchResult
    risk: RiskScore | None = None
    reason: str = ""
    session_id: str | None = None
    batch_type: str | None = None

    @property
    def approved(self) -> bool:
        return self.decision.is_approved


class AuditEntry(BaseModel):
    """One append-only audit record.

    The operation is stored by key, not as the full intent payload.
    """

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    operation: str
    intent_id: str
    decision: Decision
    risk_score: float | None = None
    risk_level: RiskLevel | None = None
    classification: MatchResult
    session_id: str | None = None
    batch_type: str | None = None

    @classmethod
    def from_result(cls, result: DecisionResult, timestamp: datetime | None = None) -> "AuditEntry":
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            operation=result.operation,
            intent_id=result.intent_id,
            decision=result.decision,
            risk_score=result.risk.value if result.risk else None,
            risk_level=result.risk.level if result.risk else None,
            classification=result.classification,
            session_id=result.session_id,
            batch_type=result.batch_type,
        )


def parse_intent(data: OperationIntent | Mapping[str, Any]) -> OperationIntent:
    """Validate caller input into an OperationIntent.

    Args:
        data: An OperationIntent or a mapping with snake_case or camelCase keys

    Returns:
        Validated OperationIntent

    Raises:
        MalformedIntentError: If kind is missing or neither target_path nor
            command_text is present
    """
    if isinstance(data, OperationIntent):
        # model_construct() skips validation, so check the invariant again
        if not data.target_path and not data.command_text:
            raise MalformedIntentError("at least one of targetPath or commandText is required")
        return data

    if not isinstance(data, Mapping):
        raise MalformedIntentError(f"Unsupported intent type: {type(data).__name__}")

    try:
        return OperationIntent.model_validate(dict(data))
    except ValidationError as e:
        errors = e.errors(include_url=False)
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "intent" for err in errors)
        raise MalformedIntentError(f"Malformed operation intent ({fields})", errors=errors) from e


@dataclass(frozen=True)
class SessionContext:
    """Snapshot of the autonomous session state at decision time."""

    active: bool = False
    session_id: str | None = None
