"""Append-only, size-bounded audit trail of decisions.

Recording must never abort the decision pipeline: a failed append is
logged and kept as an AuditWriteWarning, and the decision already made is
still returned to the caller.

Provides:
- AuditTrail: In-memory trail with optional sinks and database flushing
- jsonl_file_sink: Sink that mirrors entries to a JSON-lines file
"""

from collections import deque
from collections.abc import Callable
from pathlib import Path

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from approvals.core.errors import AuditWriteWarning
from approvals.core.intent import AuditEntry
from approvals.core.persistence.audit import append_audit_entry

logger = structlog.get_logger()

AuditSink = Callable[[AuditEntry], None]


def jsonl_file_sink(path: str | Path) -> AuditSink:
    """Build a sink appending one JSON document per entry to a file."""
    log_path = Path(path)

    def write(entry: AuditEntry) -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    return write


class AuditTrail:
    """Bounded in-memory record of every decision.

    Entries not yet written to the database are kept in a pending queue
    until flush() succeeds.

    Args:
        max_entries: Retention bound; oldest entries are evicted first
        sinks: Extra callables invoked for every entry (file mirrors, etc.)
    """

    def __init__(self, max_entries: int = 10000, sinks: list[AuditSink] | None = None):
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._pending: deque[AuditEntry] = deque(maxlen=max_entries)
        self._sinks: list[AuditSink] = list(sinks or [])
        self.warnings: deque[AuditWriteWarning] = deque(maxlen=100)
        self.log = logger.bind(component="audit_trail")

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def record(self, entry: AuditEntry) -> bool:
        """Append an entry; returns False (and warns) instead of raising."""
        try:
            self._entries.append(entry)
            self._pending.append(entry)
        except Exception as e:
            self._warn(f"audit append failed: {e}", entry)
            return False

        ok = True
        for sink in self._sinks:
            try:
                sink(entry)
            except Exception as e:
                self._warn(f"audit sink failed: {e}", entry)
                ok = False
        return ok

    def entries(self, operation: str | None = None) -> list[AuditEntry]:
        """Recorded entries, oldest first, optionally for one operation key."""
        if operation is None:
            return list(self._entries)
        return [e for e in self._entries if e.operation == operation]

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def flush(self, session: AsyncSession) -> int:
        """Write pending entries to the hash-chained database log.

        Failures are logged as AuditWriteWarning and the unwritten entries
        stay pending for the next flush.

        Args:
            session: Database session (committed by the caller's context)

        Returns:
            Number of entries written
        """
        batch = list(self._pending)
        if not batch:
            return 0
        try:
            for entry in batch:
                await append_audit_entry(session, entry)
        except Exception as e:
            await session.rollback()
            self._warn(f"audit flush failed: {e}", entry)
            return 0

        for _ in batch:
            self._pending.popleft()
        self.log.debug("audit_flushed", written=len(batch), pending=len(self._pending))
        return len(batch)

    def _warn(self, message: str, entry: AuditEntry) -> None:
        warning = AuditWriteWarning(message)
        self.warnings.append(warning)
        self.log.warning(
            "audit_write_failed",
            error=message,
            operation=entry.operation,
            decision=entry.decision.value,
        )
