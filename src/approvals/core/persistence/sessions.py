"""Persistence of completed autonomous session summaries.

Provides:
- save_session_summary: Store one SessionSummary
- list_session_summaries: Load stored summaries, newest first
"""

import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from approvals.core.session import SessionEndReason, SessionSummary

from .models import SessionRecord, as_utc


async def save_session_summary(session: AsyncSession, summary: SessionSummary) -> SessionRecord:
    """Insert or replace the record for a completed session."""
    record = SessionRecord(
        session_id=summary.session_id,
        started_at=as_utc(summary.started_at),
        ended_at=as_utc(summary.ended_at),
        scheduled_end=as_utc(summary.scheduled_end),
        duration_actual_ms=summary.duration_actual_ms,
        approved_count=summary.approved_count,
        blocked_count=summary.blocked_count,
        end_reason=summary.end_reason.value,
        approved_operations=json.dumps(summary.approved_operations),
        blocked_operations=json.dumps(summary.blocked_operations),
    )
    record = await session.merge(record)
    await session.flush()
    return record


async def list_session_summaries(session: AsyncSession, limit: int = 50) -> list[SessionSummary]:
    """Load the most recent session summaries.

    Args:
        session: Database session
        limit: Maximum number of summaries

    Returns:
        SessionSummary models, newest first
    """
    stmt = select(SessionRecord).order_by(SessionRecord.started_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return [
        SessionSummary(
            session_id=r.session_id,
            started_at=as_utc(r.started_at),
            ended_at=as_utc(r.ended_at),
            scheduled_end=as_utc(r.scheduled_end),
            duration_actual_ms=r.duration_actual_ms,
            approved_count=r.approved_count,
            blocked_count=r.blocked_count,
            end_reason=SessionEndReason(r.end_reason),
            approved_operations=json.loads(r.approved_operations),
            blocked_operations=json.loads(r.blocked_operations),
        )
        for r in result.scalars().all()
    ]
