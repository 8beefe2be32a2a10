"""Autonomous session state machine.

At most one autonomous session exists at a time. While it is active the
decision policy trades its middle tiers for throughput; the deny floor and
the critical ceiling are untouched.

    Inactive --start(duration)--> Active --expiry timer | stop()--> Inactive

Both exits go through one guarded close function, so whichever of the
expiry timer and an explicit stop arrives first emits the summary and the
other is a no-op. Expiry is also checked lazily whenever the session state
is read, so a decision never observes an expired session as active.

Provides:
- SessionStatus / SessionEndReason: Session lifecycle enums
- AutonomousSession: Live session state with its decision accumulators
- SessionSummary: End-of-session report
- SESSION_PRESETS: Named session lengths in minutes
- SessionManager: Owner of the single session
"""

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import uuid4

import structlog
from pydantic import BaseModel

from approvals.core.errors import ConflictError, NoActiveSessionError
from approvals.core.intent import DecisionResult, SessionContext

logger = structlog.get_logger()

SESSION_PRESETS = {
    "quick": 30,
    "default": 120,
    "focus": 180,
    "marathon": 240,
}


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class SessionEndReason(str, Enum):
    STOPPED = "stopped"
    EXPIRED = "expired"


@dataclass
class AutonomousSession:
    """Live session state.

    end_time is fixed at creation as start_time + duration.
    """

    session_id: str
    start_time: datetime
    end_time: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    approved_operations: list[DecisionResult] = field(default_factory=list)
    blocked_operations: list[DecisionResult] = field(default_factory=list)


class SessionSummary(BaseModel):
    """Report emitted exactly once when a session ends.

    Attributes:
        session_id: Identifier returned by start
        started_at: Session start time
        ended_at: Actual end time
        scheduled_end: End time fixed at start
        duration_actual_ms: Wall-clock session length in milliseconds
        approved_count: Decisions that let an operation proceed
        blocked_count: Decisions that needed a human or blocked
        end_reason: Whether the session was stopped or expired
        approved_operations: Operation keys of approved decisions
        blocked_operations: Operation keys of blocked decisions
    """

    session_id: str
    started_at: datetime
    ended_at: datetime
    scheduled_end: datetime
    duration_actual_ms: int
    approved_count: int
    blocked_count: int
    end_reason: SessionEndReason
    approved_operations: list[str]
    blocked_operations: list[str]

    @property
    def duration_actual(self) -> timedelta:
        return timedelta(milliseconds=self.duration_actual_ms)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Own the single global autonomous session.

    Args:
        default_duration_ms: Session length used when start() gets none
        clock: Returns the current time (timezone-aware)
        timer_factory: Builds the one-shot expiry timer; called as
            ``timer_factory(seconds, callback, args=(session_id,))`` and must
            return an object with ``start()`` and ``cancel()``
        history_size: Number of completed session summaries kept in memory
    """

    def __init__(
        self,
        default_duration_ms: int = SESSION_PRESETS["default"] * 60_000,
        clock: Callable[[], datetime] = utc_now,
        timer_factory: Callable = threading.Timer,
        history_size: int = 50,
    ):
        self.default_duration_ms = default_duration_ms
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._session: AutonomousSession | None = None
        self._timer = None
        self._completed: deque[SessionSummary] = deque(maxlen=history_size)
        self._listeners: list[Callable[[SessionSummary], None]] = []
        self.log = logger.bind(component="session_manager")

    def subscribe(self, listener: Callable[[SessionSummary], None]) -> None:
        """Register a callback invoked once per completed session."""
        self._listeners.append(listener)

    def start(self, duration_ms: int | None = None) -> str:
        """Start an autonomous session.

        Args:
            duration_ms: Session length in milliseconds (default_duration_ms
                when omitted)

        Returns:
            The new session id

        Raises:
            ConflictError: If a session is already active
            ValueError: If the duration is not positive
        """
        if duration_ms is None:
            duration_ms = self.default_duration_ms
        if duration_ms <= 0:
            raise ValueError(f"Session duration must be positive, got {duration_ms}ms")

        self._expire_if_due()
        with self._lock:
            if self._session is not None:
                raise ConflictError(self._session.session_id)

            now = self._clock()
            session_id = f"session_{now:%Y%m%d_%H%M%S}_{uuid4().hex[:8]}"
            self._session = AutonomousSession(
                session_id=session_id,
                start_time=now,
                end_time=now + timedelta(milliseconds=duration_ms),
            )
            timer = self._timer_factory(duration_ms / 1000, self._expire, args=(session_id,))
            timer.daemon = True
            self._timer = timer
            timer.start()

        self.log.info(
            "session_started",
            session_id=session_id,
            duration_minutes=round(duration_ms / 60_000, 2),
            ends_at=self._session_end_iso(),
        )
        return session_id

    def stop(self) -> SessionSummary:
        """Stop the active session and return its summary.

        Raises:
            NoActiveSessionError: If no session is active (including one that
                has already expired)
        """
        self._expire_if_due()
        with self._lock:
            session = self._session
        if session is None:
            raise NoActiveSessionError()

        summary = self._close(session.session_id, SessionEndReason.STOPPED)
        if summary is None:
            # Expiry timer won the race
            raise NoActiveSessionError()
        return summary

    def context(self) -> SessionContext:
        """Snapshot of the session state for one decision."""
        self._expire_if_due()
        with self._lock:
            if self._session is None:
                return SessionContext()
            return SessionContext(active=True, session_id=self._session.session_id)

    @property
    def is_active(self) -> bool:
        return self.context().active

    def track(self, result: DecisionResult) -> None:
        """Accumulate a decision into the active session, if any."""
        with self._lock:
            session = self._session
            if session is None:
                return
            if result.session_id is not None and result.session_id != session.session_id:
                return
            if result.approved:
                session.approved_operations.append(result)
            else:
                session.blocked_operations.append(result)

    def status(self) -> dict | None:
        """Current session details, or None when inactive."""
        self._expire_if_due()
        with self._lock:
            session = self._session
            if session is None:
                return None
            remaining = max(0.0, (session.end_time - self._clock()).total_seconds())
            return {
                "session_id": session.session_id,
                "status": session.status.value,
                "start_time": session.start_time.isoformat(),
                "end_time": session.end_time.isoformat(),
                "remaining_seconds": round(remaining, 3),
                "approved_count": len(session.approved_operations),
                "blocked_count": len(session.blocked_operations),
            }

    def history(self) -> list[SessionSummary]:
        """Summaries of completed sessions, oldest first."""
        with self._lock:
            return list(self._completed)

    def _expire(self, session_id: str) -> None:
        self._close(session_id, SessionEndReason.EXPIRED, from_timer=True)

    def _expire_if_due(self) -> None:
        with self._lock:
            session = self._session
            due = session is not None and self._clock() >= session.end_time
        if due:
            self._close(session.session_id, SessionEndReason.EXPIRED)

    def _close(
        self, session_id: str, reason: SessionEndReason, from_timer: bool = False
    ) -> SessionSummary | None:
        """Transition to Inactive; only the first caller for a session wins.

        The expiry timer is cancelled unless it is the caller.
        """
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                return None
            if session.status != SessionStatus.ACTIVE:
                return None

            session.status = SessionStatus.COMPLETED
            self._session = None
            timer, self._timer = self._timer, None

            ended_at = self._clock()
            summary = SessionSummary(
                session_id=session.session_id,
                started_at=session.start_time,
                ended_at=ended_at,
                scheduled_end=session.end_time,
                duration_actual_ms=int((ended_at - session.start_time).total_seconds() * 1000),
                approved_count=len(session.approved_operations),
                blocked_count=len(session.blocked_operations),
                end_reason=reason,
                approved_operations=[r.operation for r in session.approved_operations],
                blocked_operations=[r.operation for r in session.blocked_operations],
            )
            session.approved_operations.clear()
            session.blocked_operations.clear()
            self._completed.append(summary)

        if timer is not None and not from_timer:
            timer.cancel()

        self.log.info(
            "session_closed",
            session_id=summary.session_id,
            reason=reason.value,
            duration_minutes=round(summary.duration_actual_ms / 60_000, 2),
            approved=summary.approved_count,
            blocked=summary.blocked_count,
        )
        for listener in list(self._listeners):
            try:
                listener(summary)
            except Exception as e:
                self.log.warning("session_listener_failed", session_id=session_id, error=str(e))
        return summary

    def _session_end_iso(self) -> str | None:
        with self._lock:
            return self._session.end_time.isoformat() if self._session else None
