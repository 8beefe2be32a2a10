"""Configuration management for the approval engine.

Approval rules are data, not code: allow patterns, deny signatures, risk
factor weights, context modifier deltas, decision thresholds and the batch
types that may be auto-approved. Defaults reproduce the stock rule set;
a JSON rules file (snake_case or camelCase keys) overrides any of them.

Provides:
- ApprovalConfig: Pydantic model with all engine settings
- load_config: Load and validate a rules file, falling back to defaults
"""

import json
import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from approvals.core.errors import ConfigError
from approvals.core.intent import OperationKind


class _RulesModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContextualApproval(str, Enum):
    """Outcome of a contextual rule for a medium-risk operation."""

    AUTO_APPROVE = "autoApprove"
    REQUIRE_APPROVAL = "requireApproval"
    CONTEXTUAL = "contextual"


class BatchType(str, Enum):
    """Batch shapes recognised by the batch coordinator."""

    MULTIPLE_FILE_CREATION = "multipleFileCreation"
    BULK_FORMATTING = "bulkFormatting"
    TEST_SUITE_CREATION = "testSuiteCreation"
    DOCUMENTATION_UPDATES = "documentationUpdates"
    STYLING_CHANGES = "stylingChanges"
    UNKNOWN = "unknown"


class PathAllowRule(_RulesModel):
    """Paths matching any glob are allowed for the listed actions."""

    patterns: list[str]
    actions: list[str]
    kinds: list[OperationKind] = Field(
        default_factory=lambda: [OperationKind.FILESYSTEM, OperationKind.VERSION_CONTROL]
    )


class ContextualRule(_RulesModel):
    """Ordered rule resolving the contextual tier; first match wins."""

    pattern: str
    approval: ContextualApproval


class RiskFactor(_RulesModel):
    """Weighted keyword; matches when any term is a substring of the intent.

    An empty term list means the factor name itself is the only term.
    """

    weight: float = Field(..., ge=0.0, le=1.0)
    terms: list[str] = Field(default_factory=list)


class ContextModifiers(_RulesModel):
    """Signed deltas applied per true context flag and per time window."""

    batch_member: float = -0.10
    user_requested: float = -0.15
    automated_fix: float = -0.05
    first_time: float = 0.20
    recent_failure: float = 0.15
    critical_path: float = 0.25
    off_hours: float = 0.10
    risky_day: float = 0.05
    off_hours_start: int = Field(default=22, ge=0, le=23)
    off_hours_end: int = Field(default=6, ge=0, le=23)
    risky_weekday: int = Field(default=4, ge=0, le=6)  # Monday == 0


class HistorySettings(_RulesModel):
    """Bounds and weights for the history term of the risk score."""

    max_entries: int = Field(default=100, ge=1)
    failure_window_seconds: int = Field(default=3600, ge=1)
    failure_penalty: float = 0.2
    success_bonus: float = -0.1
    min_attempts: int = Field(default=10, ge=1)
    min_success_rate: float = Field(default=0.95, ge=0.0, le=1.0)


class DecisionThresholds(_RulesModel):
    """Score cut points for the decision tiers outside a session."""

    auto_approve: float = 0.2
    approve_with_log: float = 0.4
    contextual: float = 0.6
    critical: float = 0.8

    @model_validator(mode="after")
    def _strictly_increasing(self) -> "DecisionThresholds":
        cuts = [self.auto_approve, self.approve_with_log, self.contextual, self.critical]
        if any(c <= 0.0 or c > 1.0 for c in cuts):
            raise ValueError("decision thresholds must lie in (0, 1]")
        if any(a >= b for a, b in zip(cuts, cuts[1:])):
            raise ValueError("decision thresholds must be strictly increasing")
        return self


DEFAULT_RISK_FACTORS = {
    # File type risks
    "production": RiskFactor(weight=0.85),
    "configuration": RiskFactor(weight=0.65, terms=["configuration", "config"]),
    "environment": RiskFactor(weight=0.75, terms=["environment", ".env"]),
    "security": RiskFactor(weight=0.90),
    "authentication": RiskFactor(weight=0.88),
    "database": RiskFactor(weight=0.70),
    "deployment": RiskFactor(weight=0.72, terms=["deployment", "deploy"]),
    "infrastructure": RiskFactor(weight=0.80),
    # Operation risks
    "dependency": RiskFactor(weight=0.68, terms=["dependency", "dependencies"]),
    "external": RiskFactor(weight=0.85),
    "deletion": RiskFactor(weight=0.60, terms=["deletion", "delete"]),
    "migration": RiskFactor(weight=0.75),
    "schema": RiskFactor(weight=0.70),
    # Safe operations
    "test": RiskFactor(weight=0.10),
    "documentation": RiskFactor(weight=0.05, terms=["documentation", "docs/", ".md"]),
    "styling": RiskFactor(weight=0.08, terms=["styling", ".css"]),
    "comment": RiskFactor(weight=0.02),
    "formatting": RiskFactor(weight=0.05),
    "example": RiskFactor(weight=0.08),
    "mock": RiskFactor(weight=0.10),
}

DEFAULT_COMMAND_WEIGHTS = {
    # High risk
    "rm -rf": 0.9,
    "DROP": 0.85,
    "DELETE": 0.7,
    "sudo": 0.8,
    "chmod 777": 0.75,
    # Medium risk
    "npm install": 0.4,
    "pip install": 0.4,
    "apt-get": 0.5,
    # Low risk
    "git status": 0.05,
    "ls": 0.02,
    "echo": 0.02,
}

DEFAULT_COMMAND_PREFIXES = [
    "git status", "git diff", "git log", "git show", "git branch",
    "git add", "git commit", "git fetch", "git pull", "git stash",
    "npm run build", "npm run lint", "npm test", "npm run test",
    "yarn build", "yarn test", "yarn lint",
    "pytest", "make test", "make build", "cargo build", "cargo test",
    "ls", "pwd", "cat", "head", "tail", "grep", "wc",
]


class ApprovalConfig(_RulesModel):
    """Engine configuration loaded from defaults, environment and a rules file.

    Attributes:
        command_prefixes: Read-only / version control / build command prefixes
            that are absolutely allowed
        path_rules: Glob + action allow rules for paths
        extra_deny_signatures: Regexes added to the built-in deny signatures
        protected_paths: Globs that always need a human outside a session
        sensitive_actions: Action substrings that always need a human outside
            a session
        risk_factors: Keyword factor table for the base score
        command_weights: Command substrings added straight to the base score
        context_modifiers: Context flag and time window deltas
        history: History term bounds and weights
        thresholds: Decision tier cut points
        contextual_rules: Ordered rules resolving the contextual tier
        auto_approve_batches: Batch types approved without per-item scoring
        default_session_minutes: Autonomous session length when none is given
        audit_max_entries: In-memory audit trail retention
        audit_log_path: Optional JSON-lines file mirroring every audit entry
        database_url: SQLAlchemy URL for optional persistence
    """

    command_prefixes: list[str] = Field(default_factory=lambda: list(DEFAULT_COMMAND_PREFIXES))
    path_rules: list[PathAllowRule] = Field(
        default_factory=lambda: [
            PathAllowRule(
                patterns=["src/**", "lib/**", "tests/**", "test/**", "docs/**", "**/*.md"],
                actions=["create", "edit", "format", "refactor"],
            ),
            PathAllowRule(patterns=["**"], actions=["read"]),
        ]
    )
    extra_deny_signatures: list[str] = Field(default_factory=list)
    protected_paths: list[str] = Field(
        default_factory=lambda: [
            "package.json", "**/package.json", "package-lock.json",
            "**/.env*", "**/*.config.js", "**/*.config.ts",
            "Dockerfile", "**/Dockerfile", ".github/**",
        ]
    )
    sensitive_actions: list[str] = Field(
        default_factory=lambda: ["authentication", "security", "permission", "credential", "secret"]
    )
    risk_factors: dict[str, RiskFactor] = Field(default_factory=lambda: dict(DEFAULT_RISK_FACTORS))
    command_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_COMMAND_WEIGHTS))
    context_modifiers: ContextModifiers = Field(default_factory=ContextModifiers)
    history: HistorySettings = Field(default_factory=HistorySettings)
    thresholds: DecisionThresholds = Field(default_factory=DecisionThresholds)
    contextual_rules: list[ContextualRule] = Field(
        default_factory=lambda: [
            ContextualRule(pattern="tests/**", approval=ContextualApproval.AUTO_APPROVE),
            ContextualRule(pattern="docs/**", approval=ContextualApproval.AUTO_APPROVE),
            ContextualRule(pattern="config/**", approval=ContextualApproval.REQUIRE_APPROVAL),
            ContextualRule(pattern="**/migrations/**", approval=ContextualApproval.CONTEXTUAL),
        ]
    )
    auto_approve_batches: list[BatchType] = Field(
        default_factory=lambda: [
            BatchType.MULTIPLE_FILE_CREATION,
            BatchType.BULK_FORMATTING,
            BatchType.TEST_SUITE_CREATION,
            BatchType.DOCUMENTATION_UPDATES,
        ]
    )
    default_session_minutes: int = Field(
        default_factory=lambda: int(os.getenv("APPROVALS_SESSION_MINUTES", "120")), ge=1
    )
    audit_max_entries: int = Field(default=10000, ge=1)
    audit_log_path: str | None = Field(default_factory=lambda: os.getenv("APPROVALS_AUDIT_LOG") or None)
    database_url: str = Field(
        default_factory=lambda: os.getenv("APPROVALS_DATABASE_URL", "sqlite+aiosqlite:///approvals.db")
    )


def load_config(path: str | Path | None = None) -> ApprovalConfig:
    """Load approval rules from a JSON file.

    The path defaults to the APPROVALS_CONFIG environment variable. A missing
    file is not an error: the stock rule set is returned.

    Args:
        path: Optional path to a JSON rules file

    Returns:
        Validated ApprovalConfig

    Raises:
        ConfigError: If the file exists but is not valid JSON or fails validation
    """
    path = path or os.getenv("APPROVALS_CONFIG")
    if not path:
        return ApprovalConfig()

    rules_path = Path(path)
    if not rules_path.exists():
        return ApprovalConfig()

    try:
        data = json.loads(rules_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read approval rules {rules_path}: {e}") from e

    try:
        return ApprovalConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid approval rules {rules_path}: {e}") from e
