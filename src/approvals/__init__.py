"""Operation approval and risk assessment engine for autonomous coding agents."""

from .engine import ApprovalEngine

__all__ = ["ApprovalEngine"]
