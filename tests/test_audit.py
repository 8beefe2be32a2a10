"""Tests for the audit trail and its hash-chained persistence."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from approvals import ApprovalEngine
from approvals.core.audit import AuditTrail, jsonl_file_sink
from approvals.core.config import ApprovalConfig
from approvals.core.errors import AuditWriteWarning
from approvals.core.intent import AuditEntry, Decision, MatchResult, RiskLevel
from approvals.core.persistence.audit import list_audit_entries, verify_audit_chain
from approvals.core.persistence.database import create_session_factory, get_session, init_database
from approvals.core.persistence.models import DecisionAuditLog
from approvals.core.persistence.sessions import list_session_summaries

WEDNESDAY_NOON = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


def entry(operation: str = "filesystem-edit-src/app.js", decision: Decision = Decision.AUTO_APPROVE, **extra) -> AuditEntry:
    fields = dict(
        timestamp=WEDNESDAY_NOON,
        operation=operation,
        intent_id="intent-1",
        decision=decision,
        classification=MatchResult.NO_MATCH,
    )
    fields.update(extra)
    return AuditEntry(**fields)


@pytest.fixture
async def db_engine(tmp_path):
    """Fresh temporary database for each test."""
    engine = await init_database(f"sqlite+aiosqlite:///{tmp_path / 'approvals.db'}")
    create_session_factory(engine)
    yield engine
    await engine.dispose()


# In-memory trail


def test_record_and_filter():
    trail = AuditTrail()
    trail.record(entry())
    trail.record(entry("filesystem-edit-config/production.yaml", Decision.REQUIRE_APPROVAL))

    assert len(trail) == 2
    assert trail.pending_count == 2
    assert [e.decision for e in trail.entries("filesystem-edit-config/production.yaml")] == [Decision.REQUIRE_APPROVAL]


def test_retention_is_bounded():
    trail = AuditTrail(max_entries=2)
    for name in ("a", "b", "c"):
        trail.record(entry(f"filesystem-edit-{name}"))

    assert [e.operation for e in trail.entries()] == ["filesystem-edit-b", "filesystem-edit-c"]


def test_failing_sink_degrades_to_warning():
    def broken(entry):
        raise OSError("read-only filesystem")

    trail = AuditTrail(sinks=[broken])

    assert trail.record(entry()) is False
    assert len(trail) == 1
    assert isinstance(trail.warnings[0], AuditWriteWarning)
    assert "read-only filesystem" in str(trail.warnings[0])


def test_jsonl_sink(tmp_path):
    path = tmp_path / "audit.jsonl"
    trail = AuditTrail(sinks=[jsonl_file_sink(path)])
    trail.record(entry(risk_score=0.45, risk_level=RiskLevel.MEDIUM))

    assert '"risk_level":"MEDIUM"' in path.read_text()


# Persistence


@pytest.mark.asyncio
async def test_flush_builds_valid_chain(db_engine):
    trail = AuditTrail()
    trail.record(entry())
    trail.record(entry("filesystem-edit-config/production.yaml", Decision.REQUIRE_APPROVAL, risk_score=0.45, risk_level=RiskLevel.MEDIUM))
    trail.record(entry("processInvocation-unknown-rm -rf /", Decision.BLOCK_WITH_WARNING, classification=MatchResult.ABSOLUTE_DENY))

    async with get_session() as session:
        written = await trail.flush(session)

    assert written == 3
    assert trail.pending_count == 0

    async with get_session() as session:
        assert await verify_audit_chain(session)
        rows = await list_audit_entries(session, limit=10)

    assert [r.decision for r in rows] == ["BLOCK_WITH_WARNING", "REQUIRE_APPROVAL", "AUTO_APPROVE"]
    assert rows[-1].previous_hash is None
    assert rows[0].previous_hash == rows[1].entry_hash
    assert rows[1].risk_level == "MEDIUM"


@pytest.mark.asyncio
async def test_chain_spans_flushes(db_engine):
    trail = AuditTrail()
    trail.record(entry())
    async with get_session() as session:
        await trail.flush(session)

    trail.record(entry("filesystem-edit-README.md"))
    async with get_session() as session:
        assert await trail.flush(session) == 1

    async with get_session() as session:
        assert await verify_audit_chain(session)
        assert len(await list_audit_entries(session)) == 2


@pytest.mark.asyncio
async def test_tampering_is_detected(db_engine):
    trail = AuditTrail()
    trail.record(entry(decision=Decision.REQUIRE_APPROVAL))
    trail.record(entry("filesystem-edit-README.md"))
    async with get_session() as session:
        await trail.flush(session)

    async with get_session() as session:
        await session.execute(
            update(DecisionAuditLog).where(DecisionAuditLog.id == 1).values(decision="AUTO_APPROVE")
        )

    async with get_session() as session:
        assert not await verify_audit_chain(session)


@pytest.mark.asyncio
async def test_non_utc_timestamps_verify(db_engine):
    local = timezone(timedelta(hours=2))
    trail = AuditTrail()
    trail.record(entry(timestamp=datetime(2026, 10, 14, 14, 0, tzinfo=local)))
    async with get_session() as session:
        await trail.flush(session)

    async with get_session() as session:
        assert await verify_audit_chain(session)


@pytest.mark.asyncio
async def test_empty_chain_is_valid(db_engine):
    async with get_session() as session:
        assert await verify_audit_chain(session)


@pytest.mark.asyncio
async def test_flush_failure_keeps_entries_pending():
    trail = AuditTrail()
    trail.record(entry())
    session = AsyncMock()
    session.execute.side_effect = RuntimeError("database is locked")

    assert await trail.flush(session) == 0
    assert trail.pending_count == 1
    assert "database is locked" in str(trail.warnings[0])
    session.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_engine_persists_sessions_and_decisions(db_engine):
    engine = ApprovalEngine(ApprovalConfig(audit_log_path=None), clock=lambda: WEDNESDAY_NOON)
    engine.start_autonomous_session(60_000)
    engine.decide({"kind": "filesystem", "action": "edit", "targetPath": "config/production.yaml"})
    engine.decide({"kind": "processInvocation", "commandText": "rm -rf /"})
    summary = engine.stop_autonomous_session()

    async with get_session() as session:
        counts = await engine.persist(session)

    assert counts == {"sessions": 1, "audit_entries": 2}

    async with get_session() as session:
        stored = await list_session_summaries(session)
        assert await verify_audit_chain(session)

    assert stored == [summary]

    # Nothing left to write
    async with get_session() as session:
        assert await engine.persist(session) == {"sessions": 0, "audit_entries": 0}
