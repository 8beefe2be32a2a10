"""Map classifications and risk scores to decisions.

Rules, in order:
1. ABSOLUTE_DENY always blocks, in every session mode.
2. ABSOLUTE_ALLOW always auto-approves.
3. Inside an active autonomous session a single cut applies: critical
   scores need approval, everything else is auto-approved.
4. Otherwise the tiered thresholds apply, with the contextual tier resolved
   by ordered path rules and approving tiers escalated for protected paths
   and sensitive actions.

Provides:
- DecisionPolicy: Stateless decision mapping with compiled path rules
"""

from dataclasses import dataclass

from approvals.core.config import ApprovalConfig, ContextualApproval
from approvals.core.intent import (
    Decision,
    MatchResult,
    OperationIntent,
    RiskScore,
    SessionContext,
)
from approvals.core.safety.patterns import CompiledPattern, compile_glob, normalize_path

_CONTEXTUAL_OUTCOMES = {
    ContextualApproval.AUTO_APPROVE: Decision.AUTO_APPROVE,
    ContextualApproval.REQUIRE_APPROVAL: Decision.REQUIRE_APPROVAL,
    ContextualApproval.CONTEXTUAL: Decision.CONTEXTUAL_APPROVAL_NEEDED,
}


@dataclass(frozen=True)
class PolicyOutcome:
    decision: Decision
    reason: str


class DecisionPolicy:
    """Convert a risk score into one of the five decisions."""

    def __init__(self, config: ApprovalConfig | None = None):
        config = config or ApprovalConfig()
        self.thresholds = config.thresholds
        self._contextual = tuple(
            (compile_glob(rule.pattern), rule.approval) for rule in config.contextual_rules
        )
        self._protected: tuple[CompiledPattern, ...] = tuple(
            compile_glob(p) for p in config.protected_paths
        )
        self._sensitive = tuple(a.lower() for a in config.sensitive_actions if a)

    def decide(
        self,
        intent: OperationIntent,
        classification: MatchResult,
        risk: RiskScore | None,
        session: SessionContext | None = None,
    ) -> Decision:
        """Return the decision for an intent."""
        return self.evaluate(intent, classification, risk, session).decision

    def evaluate(
        self,
        intent: OperationIntent,
        classification: MatchResult,
        risk: RiskScore | None,
        session: SessionContext | None = None,
    ) -> PolicyOutcome:
        """Return the decision and a short human-readable reason."""
        if classification == MatchResult.ABSOLUTE_DENY:
            return PolicyOutcome(Decision.BLOCK_WITH_WARNING, "matches a destructive command signature")
        if classification == MatchResult.ABSOLUTE_ALLOW:
            return PolicyOutcome(Decision.AUTO_APPROVE, "matches an allow-list pattern")
        if risk is None:
            return PolicyOutcome(Decision.REQUIRE_APPROVAL, "no risk score available")

        critical = self.thresholds.critical
        if session is not None and session.active:
            if risk.value >= critical:
                return PolicyOutcome(Decision.REQUIRE_APPROVAL, "critical risk during autonomous session")
            return PolicyOutcome(Decision.AUTO_APPROVE, "autonomous session")

        outcome = self._tiered(intent, risk.value)
        if outcome.decision in (Decision.AUTO_APPROVE, Decision.AUTO_APPROVE_WITH_LOG):
            escalation = self._escalation(intent)
            if escalation:
                return PolicyOutcome(Decision.REQUIRE_APPROVAL, escalation)
        return outcome

    def _tiered(self, intent: OperationIntent, value: float) -> PolicyOutcome:
        t = self.thresholds
        if value < t.auto_approve:
            return PolicyOutcome(Decision.AUTO_APPROVE, "low risk")
        if value < t.approve_with_log:
            return PolicyOutcome(Decision.AUTO_APPROVE_WITH_LOG, "low-medium risk")
        if value < t.contextual:
            return self._contextual_outcome(intent)
        if value < t.critical:
            return PolicyOutcome(Decision.REQUIRE_APPROVAL, "high risk")
        return PolicyOutcome(Decision.BLOCK_WITH_WARNING, "critical risk")

    def _contextual_outcome(self, intent: OperationIntent) -> PolicyOutcome:
        path = normalize_path(intent.target_path)
        if path:
            for glob, approval in self._contextual:
                if glob.matches(path):
                    return PolicyOutcome(
                        _CONTEXTUAL_OUTCOMES[approval], f"medium risk, contextual rule {glob.pattern}"
                    )
        return PolicyOutcome(Decision.REQUIRE_APPROVAL, "medium risk, no contextual rule")

    def _escalation(self, intent: OperationIntent) -> str | None:
        path = normalize_path(intent.target_path)
        for glob in self._protected:
            if glob.matches(path):
                return f"protected path {glob.pattern}"
        action = (intent.action or "").lower()
        for term in self._sensitive:
            if term in action:
                return f"sensitive action {term}"
        return None
