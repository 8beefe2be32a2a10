"""Batch approval for groups of homogeneous intents.

Intents are grouped by (kind, action). A group whose shape matches an
auto-approvable batch type is approved without per-item scoring, except
members that match a deny signature or a protected path. Every other
intent is routed item by item through the regular pipeline.

Provides:
- combined_risk: Reporting score for a set of individual scores
- BatchGroup: One homogeneous group and its outcome
- BatchResult: Approved / needs-approval split plus per-group reports
- BatchCoordinator: Groups, classifies and routes a list of intents
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from approvals.core.config import ApprovalConfig, BatchType
from approvals.core.intent import (
    Decision,
    DecisionResult,
    MatchResult,
    OperationIntent,
    OperationKey,
    OperationKind,
    SessionContext,
)
from approvals.core.safety.patterns import (
    PatternMatcher,
    compile_glob,
    escapes_root,
    normalize_path,
)

logger = structlog.get_logger()


def combined_risk(scores: list[float]) -> float | None:
    """As risky as the worst member, tempered by the average."""
    if not scores:
        return None
    return 0.7 * max(scores) + 0.3 * (sum(scores) / len(scores))


def effective_risk(result: DecisionResult) -> float:
    """Score used for reporting; pattern short-circuits count as 0 or 1."""
    if result.risk is not None:
        return result.risk.value
    return 1.0 if result.classification == MatchResult.ABSOLUTE_DENY else 0.0


@dataclass
class BatchGroup:
    kind: OperationKind
    action: str
    batch_type: BatchType
    auto_approved: bool
    results: list[DecisionResult] = field(default_factory=list)

    @property
    def combined_risk(self) -> float | None:
        return combined_risk([r.risk.value for r in self.results if r.risk is not None])


@dataclass
class BatchResult:
    """Outcome of processing a list of intents.

    Attributes:
        approved: Intents that may proceed, in input order
        needs_approval: Intents that need a human, in input order
        results: Per-intent decisions, in input order
        groups: Per-group batch type and outcome
        combined_risk: Reporting score across the whole batch
        recommendation: PARTIAL_APPROVAL, BATCH_AUTO_APPROVE or BATCH_REVIEW
        message: Human-readable explanation of the recommendation
    """

    approved: list[OperationIntent]
    needs_approval: list[OperationIntent]
    results: list[DecisionResult]
    groups: list[BatchGroup]
    combined_risk: float | None
    recommendation: str
    message: str


class BatchCoordinator:
    """Fan a list of intents through the approval pipeline in groups.

    Args:
        matcher: Pattern matcher used for batch shape checks and deny screening
        decide: Full single-intent pipeline (classification, scoring, policy,
            audit), called with the batch session snapshot
        record: Records a decision made without per-item scoring
        config: Approval configuration (auto-approvable batch types)
    """

    def __init__(
        self,
        matcher: PatternMatcher,
        decide: Callable[[OperationIntent, SessionContext | None], DecisionResult],
        record: Callable[[DecisionResult], None],
        config: ApprovalConfig | None = None,
    ):
        self.matcher = matcher
        self._decide = decide
        self._record = record
        self.configure(config or ApprovalConfig())
        self.log = logger.bind(component="batch_coordinator")

    def configure(self, config: ApprovalConfig) -> None:
        self.auto_approve_batches = frozenset(config.auto_approve_batches)
        self._protected = tuple(compile_glob(g) for g in config.protected_paths)

    def screened(self, intent: OperationIntent) -> bool:
        """True when an auto-approvable group member still needs the full pipeline."""
        if self.matcher.deny_signature(intent):
            return True
        path = normalize_path(intent.target_path)
        return any(glob.matches(path) for glob in self._protected)

    @staticmethod
    def group(intents: list[OperationIntent]) -> dict[tuple[OperationKind, str], list[int]]:
        """Partition intent positions by (kind, action), preserving first-seen order."""
        groups: dict[tuple[OperationKind, str], list[int]] = {}
        for index, intent in enumerate(intents):
            groups.setdefault((intent.kind, intent.action), []).append(index)
        return groups

    def identify_batch_type(self, members: list[OperationIntent]) -> BatchType:
        """Classify a homogeneous group from its shared shape."""
        if not members:
            return BatchType.UNKNOWN

        actions = {(m.action or "").lower() for m in members}
        paths = [normalize_path(m.target_path) for m in members]

        if actions == {"create"} and all(
            m.kind == OperationKind.FILESYSTEM
            and self.matcher.path_allowed(m.kind, "create", m.target_path)
            for m in members
        ):
            return BatchType.MULTIPLE_FILE_CREATION
        if actions == {"format"}:
            return BatchType.BULK_FORMATTING
        if actions <= {"create", "edit"} and all(_is_test_path(p) for p in paths):
            return BatchType.TEST_SUITE_CREATION
        if actions <= {"create", "edit"} and all(_is_documentation(p) for p in paths):
            return BatchType.DOCUMENTATION_UPDATES
        if actions == {"styling"}:
            return BatchType.STYLING_CHANGES
        return BatchType.UNKNOWN

    def process(
        self, intents: list[OperationIntent], session: SessionContext | None = None
    ) -> BatchResult:
        """Decide every intent in the batch.

        Args:
            intents: Validated intents
            session: Autonomous session snapshot at batch time

        Returns:
            BatchResult with approved and needs-approval lists in input order
        """
        session_id = session.session_id if session is not None and session.active else None
        results: list[DecisionResult | None] = [None] * len(intents)
        groups = []

        for (kind, action), indexes in self.group(intents).items():
            members = [intents[i] for i in indexes]
            batch_type = self.identify_batch_type(members)
            auto = batch_type in self.auto_approve_batches
            group = BatchGroup(kind=kind, action=action, batch_type=batch_type, auto_approved=auto)

            for index, intent in zip(indexes, members):
                if auto and not self.screened(intent):
                    result = DecisionResult(
                        intent_id=intent.id,
                        operation=str(OperationKey.from_intent(intent)),
                        decision=Decision.AUTO_APPROVE,
                        classification=self.matcher.classify(intent),
                        reason=f"auto-approvable batch {batch_type.value}",
                        session_id=session_id,
                        batch_type=batch_type.value,
                    )
                    self._record(result)
                else:
                    result = self._decide(intent, session)
                group.results.append(result)
                results[index] = result

            self.log.debug(
                "batch_group_processed",
                kind=kind.value,
                action=action,
                batch_type=batch_type.value,
                size=len(members),
                auto_approved=auto,
            )
            groups.append(group)

        approved = [i for i, r in zip(intents, results) if r.approved]
        needs_approval = [i for i, r in zip(intents, results) if not r.approved]

        overall = combined_risk([effective_risk(r) for r in results])
        recommendation, message = _recommend(results, overall)

        self.log.info(
            "batch_processed",
            size=len(intents),
            groups=len(groups),
            approved=len(approved),
            needs_approval=len(needs_approval),
            combined_risk=overall,
        )
        return BatchResult(
            approved=approved,
            needs_approval=needs_approval,
            results=results,
            groups=groups,
            combined_risk=overall,
            recommendation=recommendation,
            message=message,
        )


_TEST_DIRS = {"test", "tests", "__tests__", "spec"}
_TEST_FILE = re.compile(r"^(?:test_.+|.+_test\.\w+|.+\.(?:test|spec)\.\w+)$")


def _is_test_path(path: str) -> bool:
    if not path or escapes_root(path):
        return False
    *dirs, name = path.lower().split("/")
    return bool(_TEST_DIRS.intersection(dirs)) or _TEST_FILE.match(name) is not None


def _is_documentation(path: str) -> bool:
    if not path or escapes_root(path):
        return False
    lowered = path.lower()
    return lowered.endswith(".md") or lowered.startswith("docs/") or "/docs/" in lowered


def _recommend(results: list[DecisionResult], overall: float | None) -> tuple[str, str]:
    high_risk = [r for r in results if r.risk is not None and r.risk.value >= 0.6]
    if high_risk:
        return (
            "PARTIAL_APPROVAL",
            f"Approve {len(results) - len(high_risk)} safe operations, "
            f"review {len(high_risk)} high-risk operations",
        )
    if overall is None or overall < 0.3:
        return "BATCH_AUTO_APPROVE", "All operations in batch are safe"
    return "BATCH_REVIEW", "Review batch for combined impact"
