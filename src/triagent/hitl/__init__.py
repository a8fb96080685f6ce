"""Human-in-the-loop approval for write commands.

Write commands are held as pending approvals until a human approves or
rejects them. Approval issues a single-use token bound to the exact
command string; the gateway consumes it on execution.
"""

from triagent.hitl.config import LedgerConfig, DEFAULT_APPROVAL_TTL_SECONDS
from triagent.hitl.approval import ApprovalLedger

__all__ = [
    "ApprovalLedger",
    "LedgerConfig",
    "DEFAULT_APPROVAL_TTL_SECONDS",
]
