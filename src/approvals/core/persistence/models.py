"""SQLAlchemy ORM models for the persistence layer.

Models:
- DecisionAuditLog: Hash-chained record of every decision
- SessionRecord: One row per completed autonomous session
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Float, Index, Integer, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored naive; naive values are UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DecisionAuditLog(Base):
    """Append-only decision log with SHA-256 hash chaining.

    Each row hashes its own fields together with the previous row's hash,
    so editing or deleting any row breaks verification of every later one.
    """
    __tablename__ = "decision_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, index=True, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    operation_key: Mapped[str] = mapped_column(String(1024), index=True, nullable=False)
    intent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    decision: Mapped[str] = mapped_column(String(40), index=True, nullable=False)
    risk_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    risk_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    classification: Mapped[str] = mapped_column(String(20), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    event_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    __table_args__ = (
        Index("ix_decision_session_timestamp", "session_id", "timestamp"),
    )

    def compute_hash(self) -> str:
        """SHA-256 over a canonical JSON of the row and the previous hash."""
        timestamp = as_utc(self.timestamp)
        hash_input = {
            "timestamp": timestamp.isoformat() if timestamp else "",
            "operation_key": self.operation_key,
            "intent_id": self.intent_id,
            "decision": self.decision,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level or "",
            "classification": self.classification,
            "session_id": self.session_id or "",
            "event_data": self.event_data,
            "previous_hash": self.previous_hash or "",
        }
        canonical = json.dumps(hash_input, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class SessionRecord(Base):
    """Summary of a completed autonomous session."""
    __tablename__ = "autonomous_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    ended_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_actual_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    end_reason: Mapped[str] = mapped_column(String(20), nullable=False)
    approved_operations: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON
    blocked_operations: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON


@event.listens_for(DecisionAuditLog, "before_insert")
def compute_decision_hash(mapper, connection, target):
    """Fill entry_hash before the row is written."""
    if not target.entry_hash:
        target.entry_hash = target.compute_hash()
