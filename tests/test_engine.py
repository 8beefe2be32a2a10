"""Tests for the ApprovalEngine facade.

Tests cover:
- End-to-end decisions for the reference scenarios
- Autonomous session relaxation and expiry
- Malformed input rejection and fail-closed behaviour
- Audit trail recording and failure isolation
- Outcome feedback and configuration reload
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from approvals import ApprovalEngine
from approvals.core.config import ApprovalConfig, ContextualApproval, ContextualRule
from approvals.core.errors import AuditWriteWarning, ConflictError, MalformedIntentError, NoActiveSessionError
from approvals.core.intent import Decision, MatchResult, OperationKey, OperationKind, RiskLevel, parse_intent

WEDNESDAY_NOON = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)

SOURCE_EDIT = {"kind": "filesystem", "action": "edit", "targetPath": "src/app.js", "context": {}}
PRODUCTION_CONFIG_EDIT = {"kind": "filesystem", "action": "edit", "targetPath": "config/production.yaml"}
ROOT_DELETE = {"kind": "processInvocation", "commandText": "rm -rf /"}
DROP_TABLES = {"kind": "processInvocation", "commandText": "DROP TABLE users; DELETE FROM sessions"}


class Clock:
    def __init__(self, now: datetime = WEDNESDAY_NOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ManualTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False

    def start(self):
        pass

    def cancel(self):
        pass


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine(clock):
    return ApprovalEngine(ApprovalConfig(audit_log_path=None), clock=clock, timer_factory=ManualTimer)


# Reference scenarios


def test_source_edit_is_approved(engine):
    result = engine.evaluate(SOURCE_EDIT)

    assert result.decision in (Decision.AUTO_APPROVE, Decision.AUTO_APPROVE_WITH_LOG)
    assert result.classification == MatchResult.ABSOLUTE_ALLOW
    assert result.approved


def test_root_delete_is_blocked_in_every_mode(engine):
    assert engine.decide(ROOT_DELETE) == Decision.BLOCK_WITH_WARNING

    engine.start_autonomous_session(60_000)
    result = engine.evaluate(ROOT_DELETE)

    assert result.decision == Decision.BLOCK_WITH_WARNING
    assert result.risk is None


def test_production_config_edit_needs_a_human(engine):
    result = engine.evaluate(PRODUCTION_CONFIG_EDIT)

    assert result.decision in (Decision.REQUIRE_APPROVAL, Decision.BLOCK_WITH_WARNING)
    assert result.risk.value == pytest.approx(0.45)
    assert result.risk.level == RiskLevel.MEDIUM


@pytest.mark.parametrize("path", ["src/../../../etc/shadow", "src/../.env", "tests/../config/production.yaml"])
def test_parent_segments_do_not_bypass_scoring(engine, path):
    result = engine.evaluate({"kind": "filesystem", "action": "edit", "targetPath": path})

    assert result.classification == MatchResult.NO_MATCH
    assert result.risk is not None


def test_escaped_protected_path_needs_a_human(engine):
    result = engine.evaluate({"kind": "filesystem", "action": "edit", "targetPath": "src/../.env"})
    assert not result.approved


def test_backgrounded_command_is_scored(engine):
    result = engine.evaluate({"kind": "processInvocation", "commandText": "ls & rm -rf build"})

    assert result.classification == MatchResult.NO_MATCH
    assert not result.approved


def test_session_relaxes_until_expiry(engine, clock):
    session_id = engine.start_autonomous_session(60_000)

    result = engine.evaluate(PRODUCTION_CONFIG_EDIT)
    assert result.decision == Decision.AUTO_APPROVE
    assert result.session_id == session_id

    clock.advance(minutes=1)

    assert engine.decide(PRODUCTION_CONFIG_EDIT) == Decision.REQUIRE_APPROVAL
    assert engine.session_status() is None
    assert engine.session_history()[0].approved_count == 1


def test_session_never_approves_critical_risk(engine):
    assert engine.decide(DROP_TABLES) == Decision.BLOCK_WITH_WARNING

    engine.start_autonomous_session(60_000)

    assert engine.decide(DROP_TABLES) == Decision.REQUIRE_APPROVAL


def test_session_conflict_and_stop(engine):
    engine.start_autonomous_session(60_000)
    with pytest.raises(ConflictError):
        engine.start_autonomous_session(60_000)

    engine.decide(SOURCE_EDIT)
    engine.decide(ROOT_DELETE)
    summary = engine.stop_autonomous_session()

    assert summary.approved_count == 1
    assert summary.blocked_count == 1
    with pytest.raises(NoActiveSessionError):
        engine.stop_autonomous_session()


# Input validation


@pytest.mark.parametrize(
    "data",
    [
        {"kind": "filesystem", "action": "edit"},
        {"targetPath": "src/app.js", "action": "edit"},
        {"kind": "teleport", "targetPath": "src/app.js"},
        {"kind": "filesystem", "targetPath": "", "commandText": ""},
    ],
)
def test_malformed_intents_are_rejected(engine, data):
    with pytest.raises(MalformedIntentError) as exc_info:
        engine.decide(data)

    assert exc_info.value.errors
    assert len(engine.audit) == 0


def test_non_mapping_input_is_rejected(engine):
    with pytest.raises(MalformedIntentError):
        engine.decide("rm -rf /")


def test_camel_case_context_is_accepted():
    intent = parse_intent(
        {
            "kind": "versionControl",
            "action": "push",
            "targetPath": "main",
            "context": {"isUserRequested": True, "hasRecentFailure": True},
        }
    )
    assert intent.kind == OperationKind.VERSION_CONTROL
    assert intent.context.is_user_requested
    assert intent.context.has_recent_failure


# Failure handling


def test_internal_error_fails_closed(engine):
    with patch.object(engine.assessor, "score", side_effect=RuntimeError("scorer crashed")):
        result = engine.evaluate(PRODUCTION_CONFIG_EDIT)

    assert result.decision == Decision.REQUIRE_APPROVAL
    assert result.reason == "internal error: scorer crashed"
    assert len(engine.audit) == 1


def test_internal_error_inside_session_fails_closed(engine):
    engine.start_autonomous_session(60_000)
    with patch.object(engine.policy, "evaluate", side_effect=RuntimeError("policy crashed")):
        assert engine.decide(PRODUCTION_CONFIG_EDIT) == Decision.REQUIRE_APPROVAL


def test_audit_failure_still_returns_decision(clock):
    def broken_sink(entry):
        raise OSError("disk full")

    engine = ApprovalEngine(
        ApprovalConfig(audit_log_path=None), clock=clock, timer_factory=ManualTimer, audit_sinks=[broken_sink]
    )

    assert engine.decide(SOURCE_EDIT) == Decision.AUTO_APPROVE
    assert len(engine.audit.warnings) == 1
    assert isinstance(engine.audit.warnings[0], AuditWriteWarning)


# Audit trail


def test_every_decision_is_audited(engine, clock):
    engine.decide(SOURCE_EDIT)
    engine.decide(PRODUCTION_CONFIG_EDIT)
    engine.decide(ROOT_DELETE)

    entries = engine.audit.entries()
    assert [e.decision for e in entries] == [
        Decision.AUTO_APPROVE,
        Decision.REQUIRE_APPROVAL,
        Decision.BLOCK_WITH_WARNING,
    ]
    config_entry = engine.audit.entries("filesystem-edit-config/production.yaml")[0]
    assert config_entry.risk_score == pytest.approx(0.45)
    assert config_entry.risk_level == RiskLevel.MEDIUM
    assert config_entry.timestamp == clock.now
    assert entries[2].risk_score is None


def test_audit_file_mirror(clock, tmp_path):
    log_path = tmp_path / "logs" / "audit.jsonl"
    engine = ApprovalEngine(ApprovalConfig(audit_log_path=str(log_path)), clock=clock, timer_factory=ManualTimer)

    engine.decide(ROOT_DELETE)
    engine.decide(SOURCE_EDIT)

    lines = log_path.read_text().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["decision"] == "BLOCK_WITH_WARNING"


# Feedback, preview and reload


def test_reported_failure_raises_next_score(engine):
    assert engine.evaluate(PRODUCTION_CONFIG_EDIT).risk.value == pytest.approx(0.45)

    engine.report_outcome(PRODUCTION_CONFIG_EDIT, succeeded=False, error="migration failed")

    assert engine.evaluate(PRODUCTION_CONFIG_EDIT).risk.value == pytest.approx(0.48)


def test_reported_success_changes_nothing(engine):
    engine.evaluate(PRODUCTION_CONFIG_EDIT)
    engine.report_outcome(PRODUCTION_CONFIG_EDIT, succeeded=True)

    assert engine.evaluate(PRODUCTION_CONFIG_EDIT).risk.value == pytest.approx(0.45)


def test_assess_does_not_record(engine):
    risk = engine.assess(PRODUCTION_CONFIG_EDIT)

    assert risk.value == pytest.approx(0.45)
    assert len(engine.audit) == 0
    assert engine.assessor.history_for(parse_intent(PRODUCTION_CONFIG_EDIT).key) == []


def test_reload_keeps_session_and_history(engine):
    engine.decide(PRODUCTION_CONFIG_EDIT)
    session_id = engine.start_autonomous_session(60_000)

    engine.reload_config(
        ApprovalConfig(
            audit_log_path=None,
            contextual_rules=[ContextualRule(pattern="config/**", approval=ContextualApproval.AUTO_APPROVE)],
        )
    )

    assert engine.session_status()["session_id"] == session_id
    key = OperationKey(kind="filesystem", action="edit", target="config/production.yaml")
    assert len(engine.assessor.history_for(key)) == 1

    engine.stop_autonomous_session()
    assert engine.decide(PRODUCTION_CONFIG_EDIT) == Decision.AUTO_APPROVE


def test_reload_applies_new_deny_signatures(engine):
    terraform = {"kind": "processInvocation", "commandText": "terraform destroy"}
    assert engine.decide(terraform) != Decision.BLOCK_WITH_WARNING

    engine.reload_config(ApprovalConfig(audit_log_path=None, extra_deny_signatures=[r"terraform\s+destroy"]))

    assert engine.decide(terraform) == Decision.BLOCK_WITH_WARNING


def test_risk_report(engine):
    engine.decide(PRODUCTION_CONFIG_EDIT)
    report = engine.risk_report()

    assert report["total_operations"] == 1
    assert report["risk_distribution"]["MEDIUM"] == 1
