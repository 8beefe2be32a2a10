"""Hash-chained persistence of audit entries.

Provides:
- append_audit_entry: Append one AuditEntry, linking it to the chain head
- verify_audit_chain: Verify the integrity of the whole chain
- list_audit_entries: Most recent rows, newest first
"""

import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from approvals.core.intent import AuditEntry

from .models import DecisionAuditLog, as_utc


async def append_audit_entry(session: AsyncSession, entry: AuditEntry) -> DecisionAuditLog:
    """Append an audit entry to the decision log.

    Args:
        session: Database session
        entry: Entry recorded by the in-memory audit trail

    Returns:
        Created DecisionAuditLog row with its computed hash
    """
    stmt = select(DecisionAuditLog).order_by(DecisionAuditLog.id.desc()).limit(1)
    result = await session.execute(stmt)
    previous = result.scalar_one_or_none()

    row = DecisionAuditLog(
        timestamp=as_utc(entry.timestamp),
        operation_key=entry.operation,
        intent_id=entry.intent_id,
        decision=entry.decision.value,
        risk_score=entry.risk_score,
        risk_level=entry.risk_level.value if entry.risk_level else None,
        classification=entry.classification.value,
        session_id=entry.session_id,
        event_data=json.dumps({"batch_type": entry.batch_type}, sort_keys=True),
        previous_hash=previous.entry_hash if previous else None,
        entry_hash="",  # filled by the before_insert listener
    )
    session.add(row)
    await session.flush()
    return row


async def verify_audit_chain(session: AsyncSession) -> bool:
    """Verify that every row hashes correctly and links to its predecessor.

    Returns:
        True if the chain is intact (an empty log is intact), False otherwise
    """
    stmt = select(DecisionAuditLog).order_by(DecisionAuditLog.id.asc())
    result = await session.execute(stmt)

    previous_hash = None
    for row in result.scalars().all():
        if row.entry_hash != row.compute_hash():
            return False
        if row.previous_hash != previous_hash:
            return False
        previous_hash = row.entry_hash
    return True


async def list_audit_entries(session: AsyncSession, limit: int = 20) -> list[DecisionAuditLog]:
    stmt = select(DecisionAuditLog).order_by(DecisionAuditLog.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
