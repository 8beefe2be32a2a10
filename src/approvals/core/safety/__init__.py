"""Safety framework: pattern classification, risk scoring, decision policy and batching."""

from .batch import BatchCoordinator, BatchGroup, BatchResult, combined_risk
from .patterns import DENY_SIGNATURES, PatternMatch, PatternMatcher, compile_glob
from .policy import DecisionPolicy, PolicyOutcome
from .risk import RiskAssessor

__all__ = [
    "BatchCoordinator",
    "BatchGroup",
    "BatchResult",
    "combined_risk",
    "DENY_SIGNATURES",
    "PatternMatch",
    "PatternMatcher",
    "compile_glob",
    "DecisionPolicy",
    "PolicyOutcome",
    "RiskAssessor",
]
