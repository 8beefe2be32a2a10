"""Approval engine facade.

Wires the pipeline stages together and exposes the operations a host
needs: single and batch decisions, autonomous sessions, outcome feedback,
configuration reload and optional persistence.

    intent -> PatternMatcher -> (NO_MATCH) RiskAssessor -> DecisionPolicy
           -> AuditTrail (+ SessionManager accumulators)

Decisions are synchronous and in-memory. All pipeline state changes are
serialized by one engine lock; the session expiry timer only touches the
SessionManager, which has its own lock.

Provides:
- ApprovalEngine: Owner of every pipeline stage
"""

import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from approvals.core.audit import AuditSink, AuditTrail, jsonl_file_sink
from approvals.core.config import ApprovalConfig
from approvals.core.errors import AuditWriteWarning, MalformedIntentError
from approvals.core.intent import (
    AuditEntry,
    Decision,
    DecisionResult,
    MatchResult,
    OperationIntent,
    OperationKey,
    RiskScore,
    SessionContext,
    parse_intent,
)
from approvals.core.persistence.sessions import save_session_summary
from approvals.core.safety.batch import BatchCoordinator, BatchResult
from approvals.core.safety.patterns import PatternMatcher
from approvals.core.safety.policy import DecisionPolicy
from approvals.core.safety.risk import RiskAssessor, local_now
from approvals.core.session import SessionManager, SessionSummary, utc_now

logger = structlog.get_logger()

IntentInput = OperationIntent | Mapping[str, Any]


class ApprovalEngine:
    """Decide whether proposed operations may run without a human.

    Args:
        config: Approval rules (stock rules when omitted)
        clock: Time source for scoring, sessions and audit timestamps;
            defaults to local time for scoring and UTC elsewhere
        timer_factory: Builds the session expiry timer (threading.Timer)
        audit_sinks: Extra audit sinks in addition to the configured file
    """

    def __init__(
        self,
        config: ApprovalConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        timer_factory: Callable = threading.Timer,
        audit_sinks: list[AuditSink] | None = None,
    ):
        self.config = config or ApprovalConfig()
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self.log = logger.bind(component="approval_engine")

        self.matcher = PatternMatcher(self.config)
        self.assessor = RiskAssessor(self.config, clock=clock or local_now)
        self.policy = DecisionPolicy(self.config)
        self.audit = AuditTrail(max_entries=self.config.audit_max_entries, sinks=audit_sinks)
        if self.config.audit_log_path:
            self.audit.add_sink(jsonl_file_sink(self.config.audit_log_path))

        self.sessions = SessionManager(
            default_duration_ms=self.config.default_session_minutes * 60_000,
            clock=self._clock,
            timer_factory=timer_factory,
        )
        self._unsaved_summaries: list[SessionSummary] = []
        self.sessions.subscribe(self._unsaved_summaries.append)

        self.batches = BatchCoordinator(self.matcher, self._decide_one, self._record, self.config)

    # Decisions

    def decide(self, intent: IntentInput) -> Decision:
        """Decide a single intent.

        Raises:
            MalformedIntentError: If the intent lacks kind or both of
                target_path and command_text
        """
        return self.evaluate(intent).decision

    def evaluate(self, intent: IntentInput) -> DecisionResult:
        """Decide a single intent and return the evidence with the decision."""
        intent = parse_intent(intent)
        with self._lock:
            return self._decide_one(intent, self.sessions.context())

    def assess(self, intent: IntentInput) -> RiskScore:
        """Score an intent without deciding it or recording history."""
        intent = parse_intent(intent)
        with self._lock:
            return self.assessor.score(intent, self.sessions.context(), record=False)

    def process_batch(self, intents: Iterable[IntentInput]) -> BatchResult:
        """Decide a list of intents through the batch coordinator.

        Every intent is validated before any is decided, so one malformed
        intent rejects the whole batch.

        Raises:
            MalformedIntentError: If any intent is malformed; errors carry
                the position of each offending intent
        """
        parsed = []
        errors = []
        for position, data in enumerate(intents):
            try:
                parsed.append(parse_intent(data))
            except MalformedIntentError as e:
                errors.append({"position": position, "message": str(e), "errors": e.errors})
        if errors:
            positions = ", ".join(str(err["position"]) for err in errors)
            raise MalformedIntentError(f"Malformed intents in batch at positions {positions}", errors=errors)

        with self._lock:
            return self.batches.process(parsed, self.sessions.context())

    def _decide_one(self, intent: OperationIntent, session: SessionContext | None = None) -> DecisionResult:
        session = session or SessionContext()
        operation = str(OperationKey.from_intent(intent))
        session_id = session.session_id if session.active else None
        classification = MatchResult.NO_MATCH

        try:
            match = self.matcher.match(intent)
            classification = match.result
            risk = None
            if classification == MatchResult.NO_MATCH:
                risk = self.assessor.score(intent, session)
            outcome = self.policy.evaluate(intent, classification, risk, session)
            reason = f"{outcome.reason} ({match.rule})" if match.rule else outcome.reason
            result = DecisionResult(
                intent_id=intent.id,
                operation=operation,
                decision=outcome.decision,
                classification=classification,
                risk=risk,
                reason=reason,
                session_id=session_id,
            )
        except Exception as e:
            self.log.exception("decision_failed", operation=operation, error=str(e))
            # Fail closed
            decision = (
                Decision.BLOCK_WITH_WARNING
                if classification == MatchResult.ABSOLUTE_DENY
                else Decision.REQUIRE_APPROVAL
            )
            result = DecisionResult(
                intent_id=intent.id,
                operation=operation,
                decision=decision,
                classification=classification,
                reason=f"internal error: {e}",
                session_id=session_id,
            )

        self._record(result)
        return result

    def _record(self, result: DecisionResult) -> None:
        self.audit.record(AuditEntry.from_result(result, timestamp=self._clock()))
        self.sessions.track(result)

        fields = dict(
            operation=result.operation,
            decision=result.decision.value,
            classification=result.classification.value,
            risk=result.risk.value if result.risk else None,
            reason=result.reason,
            session_id=result.session_id,
        )
        if result.classification == MatchResult.ABSOLUTE_DENY:
            self.log.warning("decision_made", **fields)
        elif result.decision == Decision.AUTO_APPROVE:
            self.log.debug("decision_made", **fields)
        else:
            self.log.info("decision_made", **fields)

    # Feedback

    def report_outcome(
        self,
        intent: IntentInput,
        succeeded: bool,
        error: BaseException | str | None = None,
    ) -> None:
        """Feed an execution outcome back into the history term.

        Successes are already counted when the intent was scored; a failure
        flips that observation and raises risk for the failure window.
        """
        intent = parse_intent(intent)
        if succeeded:
            return
        with self._lock:
            self.assessor.report_failure(intent, error)

    # Sessions

    def start_autonomous_session(self, duration_ms: int | None = None) -> str:
        """Start the single autonomous session.

        Raises:
            ConflictError: If a session is already active
        """
        return self.sessions.start(duration_ms)

    def stop_autonomous_session(self) -> SessionSummary:
        """Stop the active session.

        Raises:
            NoActiveSessionError: If no session is active
        """
        return self.sessions.stop()

    def session_status(self) -> dict | None:
        return self.sessions.status()

    def session_history(self) -> list[SessionSummary]:
        return self.sessions.history()

    # Configuration and reporting

    def reload_config(self, config: ApprovalConfig) -> None:
        """Swap rules, weights and thresholds in place.

        The active session, history tables and audit trail are kept.
        """
        matcher = PatternMatcher(config)
        policy = DecisionPolicy(config)
        with self._lock:
            self.config = config
            self.matcher = matcher
            self.policy = policy
            self.assessor.configure(config)
            self.batches.matcher = matcher
            self.batches.configure(config)
            self.sessions.default_duration_ms = config.default_session_minutes * 60_000
        self.log.info("config_reloaded", session_active=self.sessions.is_active)

    def risk_report(self) -> dict:
        return self.assessor.export_report()

    # Persistence

    async def persist(self, db_session: AsyncSession) -> dict[str, int]:
        """Write completed session summaries and pending audit entries.

        Summaries are committed first so an audit flush failure cannot roll
        them back. Failures are logged as AuditWriteWarning; unwritten items
        stay pending for the next call.

        Args:
            db_session: Database session from get_session()

        Returns:
            Counts of persisted sessions and audit entries
        """
        summaries = list(self._unsaved_summaries)
        saved = 0
        if summaries:
            try:
                for summary in summaries:
                    await save_session_summary(db_session, summary)
                await db_session.commit()
                saved = len(summaries)
                del self._unsaved_summaries[:saved]
            except Exception as e:
                await db_session.rollback()
                self.audit.warnings.append(AuditWriteWarning(f"session persist failed: {e}"))
                self.log.warning("session_persist_failed", error=str(e), pending=len(summaries))

        written = await self.audit.flush(db_session)
        return {"sessions": saved, "audit_entries": written}
