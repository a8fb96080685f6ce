"""Data models for the command gate.

Provides dataclasses for command classification, approval records,
execution results and gateway responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class RiskLevel(Enum):
    """Severity tier of a write command."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric ordering, LOW = 0 through CRITICAL = 3."""
        return _RISK_ORDER.index(self)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class ErrorKind(Enum):
    """Non-fatal failure outcomes, carried as values rather than raised."""

    APPROVAL_EXPIRED = "approval_expired"
    APPROVAL_NOT_FOUND = "approval_not_found"
    TOKEN_COMMAND_MISMATCH = "token_command_mismatch"
    EXECUTION_TIMEOUT = "execution_timeout"
    CONNECTION_ERROR = "connection_error"


class BackendNotConfigured(RuntimeError):
    """Raised when the gateway has no execution backend at call time.

    This is a setup bug, not an authorization outcome.
    """


@dataclass(frozen=True)
class RuleOutcome:
    """Outcome of a classification rule: NotWrite, or Write(tier)."""

    is_write: bool
    tier: RiskLevel | None = None

    @classmethod
    def not_write(cls) -> "RuleOutcome":
        return cls(is_write=False)

    @classmethod
    def write(cls, tier: RiskLevel) -> "RuleOutcome":
        return cls(is_write=True, tier=tier)


@dataclass(frozen=True)
class ClassifiedCommand:
    """A command string with its derived write/risk attributes."""

    command: str
    is_write: bool
    risk_level: RiskLevel | None = None
    reason: str | None = None
    matched_pattern: str | None = None


@dataclass(frozen=True)
class PendingApproval:
    """An authorization request awaiting a human decision."""

    id: str
    command: str
    token: str
    risk_level: RiskLevel
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for an approval UI.

        The token is deliberately absent; it is only handed out by approve().
        """
        return {
            "id": self.id,
            "command": self.command,
            "risk_level": self.risk_level.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class ApprovedToken:
    """A single-use credential bound to one exact command string."""

    token: str
    command: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenCheck:
    """Detailed outcome of validating an approval token."""

    valid: bool
    error_kind: ErrorKind | None = None


@dataclass
class ExecutionResult:
    """Result of running a command on an execution backend.

    Attributes:
        stdout: Standard output (may be truncated).
        stderr: Standard error (may be truncated).
        exit_code: Exit code of the command.
        duration_ms: Execution duration in milliseconds.
        error: Error message if execution failed.
        error_kind: Structured failure kind (timeout, connection loss).
        truncated: Whether output was truncated.
    """

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and self.error_kind is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration": self.duration_ms / 1000,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "truncated": self.truncated,
        }


@dataclass
class GatewayResult:
    """Response of CommandGateway.run to the tool-calling layer."""

    command: str
    executed: bool
    result: ExecutionResult | None = None
    requires_approval: bool = False
    approval_id: str | None = None
    risk_level: RiskLevel | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the dictionary handed back to the agent."""
        data: dict[str, Any] = {
            "executed": self.executed,
            "command": self.command,
            "requires_approval": self.requires_approval,
            "approval_id": self.approval_id,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "error": self.error,
        }
        if self.result is not None:
            data["result"] = {
                "stdout": self.result.stdout,
                "stderr": self.result.stderr,
                "exit_code": self.result.exit_code,
            }
        else:
            data["result"] = None
        if self.error_kind is not None:
            data["error_kind"] = self.error_kind.value
        return data
