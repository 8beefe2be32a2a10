"""Continuous risk scoring for operation intents.

Combines three terms with a fixed law so scores stay comparable across
call sites:

    final = clamp01(0.6 * base + 0.25 * context + 0.15 * history)

- base: mean weight of the keyword factors found in the intent, plus a
  direct increment per risky command substring (not averaged).
- context: signed deltas for caller flags, off-hours and the risky weekday.
- history: penalty per failure in the last hour for the same operation key,
  or a small bonus for a long, consistently successful record.

Every scored intent is recorded into the bounded per-key history, which
failure reports later flip to unsuccessful.

Provides:
- HistoryRecord / FailureRecord: Per-key observations
- RiskAssessor: Scorer owning the history tables
"""

import re
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from approvals.core.config import ApprovalConfig
from approvals.core.intent import (
    OperationIntent,
    OperationKey,
    RiskLevel,
    RiskScore,
    SessionContext,
)

logger = structlog.get_logger()

BASE_WEIGHT = 0.6
CONTEXT_WEIGHT = 0.25
HISTORY_WEIGHT = 0.15

FACTOR_LABELS = {
    "production": "Production code modification",
    "configuration": "Configuration file change",
    "environment": "Environment variable modification",
    "security": "Security-sensitive code",
    "authentication": "Authentication logic",
    "database": "Database operation",
    "deployment": "Deployment change",
    "dependency": "Dependency change",
    "external": "External integration",
    "deletion": "Deletion",
}


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class HistoryRecord:
    """One scored observation; succeeded flips to False on a failure report."""

    timestamp: datetime
    score: float
    succeeded: bool = True


@dataclass
class FailureRecord:
    timestamp: datetime
    error: str


def _term_regex(term: str) -> re.Pattern:
    left = r"\b" if term[:1].isalnum() else ""
    right = r"\b" if term[-1:].isalnum() else ""
    return re.compile(left + re.escape(term) + right)


class RiskAssessor:
    """Score intents and keep the per-operation-key history.

    Keyword matching is plain substring containment on lowercased fields.
    The decision policy only ever sees the RiskScore returned by score().
    """

    def __init__(
        self,
        config: ApprovalConfig | None = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self._clock = clock
        self._lock = threading.RLock()
        self._history: dict[OperationKey, deque[HistoryRecord]] = {}
        self._failures: dict[OperationKey, list[FailureRecord]] = {}
        self.log = logger.bind(component="risk_assessor")
        self.configure(config or ApprovalConfig())

    def configure(self, config: ApprovalConfig) -> None:
        """Apply new weights and bounds, keeping recorded history."""
        with self._lock:
            self._factors = tuple(
                (name, factor.weight, tuple(t.lower() for t in (factor.terms or [name])))
                for name, factor in config.risk_factors.items()
            )
            self._commands = tuple(
                (term, weight, _term_regex(term))
                for term, weight in config.command_weights.items()
                if term
            )
            self._modifiers = config.context_modifiers
            self._settings = config.history
            max_entries = self._settings.max_entries
            for key, records in self._history.items():
                if records.maxlen != max_entries:
                    self._history[key] = deque(records, maxlen=max_entries)

    def score(
        self,
        intent: OperationIntent,
        session: SessionContext | None = None,
        record: bool = True,
    ) -> RiskScore:
        """Compute the risk score for an intent and record the observation.

        Args:
            intent: Validated operation intent
            session: Autonomous session snapshot (reported as a factor only)
            record: Append the observation to the key history (False for
                previews)

        Returns:
            RiskScore with value clamped to [0, 1]
        """
        now = self._clock()
        key = OperationKey.from_intent(intent)

        base, factors = self.base_score(intent)
        context, context_factors = self.context_modifier(intent, now)
        factors.extend(context_factors)

        # Read and write of the history happen under one lock so a burst for
        # the same key cannot see a stale recent-failure state.
        with self._lock:
            history, history_factors = self._history_score(key, now)
            factors.extend(history_factors)
            value = BASE_WEIGHT * base + CONTEXT_WEIGHT * context + HISTORY_WEIGHT * history
            value = max(0.0, min(1.0, value))
            if record:
                self._record(key, value, now)

        if session is not None and session.active:
            factors.append("Autonomous session active")

        return RiskScore.build(value, factors, base=base, context=context, history=history)

    def base_score(self, intent: OperationIntent) -> tuple[float, list[str]]:
        """Mean of matched factor weights plus direct command increments."""
        fields = [
            (intent.target_path or "").lower(),
            (intent.action or "").lower(),
            (intent.command_text or "").lower(),
        ]
        matched = []
        factors = []
        for name, weight, terms in self._factors:
            if any(term in field for field in fields if field for term in terms):
                matched.append(weight)
                factors.append(FACTOR_LABELS.get(name, f"{name.capitalize()} keyword"))

        score = sum(matched) / len(matched) if matched else 0.0

        command = intent.command_text or ""
        if command:
            for term, weight, pattern in self._commands:
                if pattern.search(command):
                    score += weight
                    factors.append(f"Risky command: {term}")

        return score, factors

    def context_modifier(self, intent: OperationIntent, now: datetime) -> tuple[float, list[str]]:
        """Signed modifier from context flags and wall-clock windows."""
        mods = self._modifiers
        ctx = intent.context
        flags = [
            (ctx.is_batch_member, mods.batch_member, "Batch operation"),
            (ctx.is_user_requested, mods.user_requested, "Explicit user request"),
            (ctx.is_automated_fix, mods.automated_fix, "Automated fix"),
            (ctx.is_first_time_operation, mods.first_time, "First-time operation"),
            (ctx.has_recent_failure, mods.recent_failure, "Recent failure detected"),
            (ctx.is_critical_path, mods.critical_path, "Critical path code"),
        ]
        modifier = 0.0
        factors = []
        for enabled, delta, label in flags:
            if enabled:
                modifier += delta
                factors.append(label)

        if self._is_off_hours(now.hour):
            modifier += mods.off_hours
            factors.append("Off-hours operation")
        if now.weekday() == mods.risky_weekday:
            modifier += mods.risky_day
            factors.append("Risky day")

        return modifier, factors

    def _is_off_hours(self, hour: int) -> bool:
        start, end = self._modifiers.off_hours_start, self._modifiers.off_hours_end
        if start > end:
            return hour >= start or hour <= end
        return start <= hour <= end

    def _history_score(self, key: OperationKey, now: datetime) -> tuple[float, list[str]]:
        recent = self._recent_failures(key, now)
        if recent:
            return self._settings.failure_penalty * len(recent), [
                f"Previous failures recorded ({len(recent)} in the last hour)"
            ]

        records = self._history.get(key)
        if records and len(records) >= self._settings.min_attempts:
            success_rate = sum(1 for r in records if r.succeeded) / len(records)
            if success_rate > self._settings.min_success_rate:
                return self._settings.success_bonus, ["Consistent success history"]

        return 0.0, []

    def _recent_failures(self, key: OperationKey, now: datetime) -> list[FailureRecord]:
        failures = self._failures.get(key)
        if not failures:
            return []
        window = timedelta(seconds=self._settings.failure_window_seconds)
        recent = [f for f in failures if now - f.timestamp < window]
        if recent:
            self._failures[key] = recent
        else:
            del self._failures[key]
        return recent

    def _record(self, key: OperationKey, score: float, now: datetime) -> None:
        records = self._history.get(key)
        if records is None:
            records = deque(maxlen=self._settings.max_entries)
            self._history[key] = records
        records.append(HistoryRecord(timestamp=now, score=score))

    def report_failure(self, intent: OperationIntent, error: BaseException | str | None = None) -> None:
        """Record a failed execution for the intent's operation key.

        Flips the most recent history entry to unsuccessful and appends to
        the key's failure list, raising risk for the next hour.
        """
        key = OperationKey.from_intent(intent)
        now = self._clock()
        message = str(error) if error else "unknown error"
        with self._lock:
            self._failures.setdefault(key, []).append(FailureRecord(timestamp=now, error=message))
            records = self._history.get(key)
            if records:
                records[-1].succeeded = False
        self.log.info("operation_failure_recorded", operation=str(key), error=message)

    def history_for(self, key: OperationKey) -> list[HistoryRecord]:
        with self._lock:
            return list(self._history.get(key, ()))

    def failures_for(self, key: OperationKey) -> list[FailureRecord]:
        """Failures younger than the window; older ones are pruned."""
        with self._lock:
            return list(self._recent_failures(key, self._clock()))

    def export_report(self) -> dict:
        """Summarise recorded history for operators.

        Returns:
            Dict with total operations, failure rate, distribution per risk
            level, the ten riskiest operation keys and recommendations
        """
        with self._lock:
            snapshot = {key: list(records) for key, records in self._history.items()}

        all_records = [r for records in snapshot.values() for r in records]
        total = len(all_records)
        failures = sum(1 for r in all_records if not r.succeeded)
        failure_rate = round(failures / total, 3) if total else 0.0

        distribution = {level.value: 0 for level in RiskLevel}
        for record in all_records:
            distribution[RiskLevel.from_score(record.score).value] += 1

        top_risks = sorted(
            (
                {
                    "operation": str(key),
                    "avg_risk": round(sum(r.score for r in records) / len(records), 3),
                    "count": len(records),
                }
                for key, records in snapshot.items()
                if records
            ),
            key=lambda item: item["avg_risk"],
            reverse=True,
        )[:10]

        recommendations = []
        if failure_rate > 0.1:
            recommendations.append("High failure rate detected - review approval thresholds")
        if distribution["CRITICAL"] > distribution["LOW"]:
            recommendations.append("Many critical operations - consider stricter controls")
        if distribution["LOW"] > distribution["CRITICAL"] * 10:
            recommendations.append("Mostly safe operations - consider relaxing controls")

        return {
            "timestamp": self._clock().isoformat(),
            "total_operations": total,
            "failure_rate": failure_rate,
            "risk_distribution": distribution,
            "top_risks": top_risks,
            "recommendations": recommendations,
        }
