"""Human-in-the-loop approval: rule checker, approval interface and gate."""

from .approval import (
    ApprovalGate,
    ApprovalKind,
    ApprovalProvider,
    ApprovalResponse,
    AutoApprovalProvider,
)
from .approval_checker import ApprovalChecker, ApprovalDecision

__all__ = [
    "ApprovalChecker",
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalKind",
    "ApprovalProvider",
    "ApprovalResponse",
    "AutoApprovalProvider",
]
