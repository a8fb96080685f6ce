"""Audit trail for command gateway decisions.

- Log every gateway decision (executed, pending approval, token refused)
- JSONL format with daily rotation
- Query interface for searching history
"""

import json
import uuid
import warnings
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from triagent.gate.models import RiskLevel
from triagent.logging import Loggers

logger = Loggers.audit()


class Decision:
    """Decision labels recorded in the audit trail."""

    EXECUTED = "executed"
    PENDING = "pending_approval"
    TOKEN_REFUSED = "token_refused"


@dataclass
class AuditEntry:
    """A single audit log entry for a gateway decision.

    Attributes:
        timestamp: When the decision was made (ISO format).
        session_id: Identifier of the gateway instance that decided.
        command: The command string as received.
        decision: One of the Decision labels.
        is_write: Whether the classifier flagged the command as a write.
        risk_level: Risk tier for write commands.
        reason: Classifier reason for the tier.
        approval_id: Approval id created or referenced.
        error_kind: Structured failure kind, if any.
        exit_code: Exit code if executed.
        duration_ms: Execution duration in milliseconds.
        stdout_preview: First N chars of redacted stdout.
        stderr_preview: First N chars of redacted stderr.
        backend: Name of the execution backend.
    """
    timestamp: str
    session_id: str
    command: str
    decision: str
    is_write: bool

    risk_level: str | None = None
    reason: str | None = None
    approval_id: str | None = None
    error_kind: str | None = None
    exit_code: int | None = None
    duration_ms: int | None = None
    stdout_preview: str = ""
    stderr_preview: str = ""
    backend: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {k: v for k, v in asdict(self).items() if v is not None and v != ""}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        """Create from dictionary."""
        return cls(
            timestamp=data.get("timestamp", ""),
            session_id=data.get("session_id", ""),
            command=data.get("command", ""),
            decision=data.get("decision", ""),
            is_write=data.get("is_write", False),
            risk_level=data.get("risk_level"),
            reason=data.get("reason"),
            approval_id=data.get("approval_id"),
            error_kind=data.get("error_kind"),
            exit_code=data.get("exit_code"),
            duration_ms=data.get("duration_ms"),
            stdout_preview=data.get("stdout_preview", ""),
            stderr_preview=data.get("stderr_preview", ""),
            backend=data.get("backend"),
        )


@dataclass
class AuditConfig:
    """Configuration for audit logging.

    Attributes:
        enabled: Whether audit logging is enabled.
        log_dir: Directory for audit logs.
        retention_days: How long to keep logs.
        max_preview_length: Maximum length for stdout/stderr previews.
    """
    enabled: bool = True
    log_dir: str = "~/.local/share/triagent/audit"
    retention_days: int = 30
    max_preview_length: int = 500

    def get_log_dir(self) -> Path:
        """Get resolved log directory path."""
        return Path(self.log_dir).expanduser()


class AuditLogger:
    """Writes gateway decisions as JSONL with one file per day."""

    def __init__(
        self,
        config: AuditConfig | None = None,
        session_id: str | None = None,
    ):
        self.config = config or AuditConfig()
        self.session_id = session_id or str(uuid.uuid4())[:8]
        self._ensure_log_dir()

    def _ensure_log_dir(self) -> None:
        if not self.config.enabled:
            return
        self.config.get_log_dir().mkdir(parents=True, exist_ok=True)

    def _get_log_file(self, date: datetime | None = None) -> Path:
        if date is None:
            date = datetime.now()
        return self.config.get_log_dir() / f"gateway_audit_{date.strftime('%Y-%m-%d')}.jsonl"

    def log(self, entry: AuditEntry) -> None:
        """Append an entry to today's log file."""
        if not self.config.enabled:
            return

        try:
            with open(self._get_log_file(), "a") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError as e:
            # Audit failures must not block command execution
            logger.warning("audit_write_failed", error=str(e))
            warnings.warn(f"Failed to write audit log: {e}")

    def log_decision(
        self,
        command: str,
        decision: str,
        is_write: bool,
        risk_level: RiskLevel | None = None,
        reason: str | None = None,
        approval_id: str | None = None,
        error_kind: str | None = None,
        exit_code: int | None = None,
        duration_ms: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
        backend: str | None = None,
    ) -> AuditEntry:
        """Create and write an AuditEntry.

        stdout/stderr are expected to be redacted already; they are cut to
        the configured preview length.
        """
        max_len = self.config.max_preview_length

        entry = AuditEntry(
            timestamp=datetime.now().isoformat(),
            session_id=self.session_id,
            command=command,
            decision=decision,
            is_write=is_write,
            risk_level=risk_level.value if risk_level else None,
            reason=reason,
            approval_id=approval_id,
            error_kind=error_kind,
            exit_code=exit_code,
            duration_ms=duration_ms,
            stdout_preview=stdout[:max_len] if stdout else "",
            stderr_preview=stderr[:max_len] if stderr else "",
            backend=backend,
        )

        self.log(entry)
        return entry

    def query(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        command_pattern: str | None = None,
        decision: str | None = None,
        risk_level: RiskLevel | None = None,
        session_id: str | None = None,
        limit: int = 100,
    ) -> Iterator[AuditEntry]:
        """Query audit log entries.

        Args:
            start_date: Start of date range (default: a week before end_date).
            end_date: End of date range (default: now).
            command_pattern: Substring to match in commands.
            decision: Filter by decision label.
            risk_level: Filter by risk level.
            session_id: Filter by session ID.
            limit: Maximum entries to return.

        Yields:
            Matching AuditEntry objects.
        """
        if not self.config.enabled:
            return

        if not self.config.get_log_dir().exists():
            return

        if end_date is None:
            end_date = datetime.now()
        if start_date is None:
            start_date = end_date - timedelta(days=7)

        current = start_date
        count = 0

        while current.date() <= end_date.date() and count < limit:
            log_file = self._get_log_file(current)

            if log_file.exists():
                with open(log_file) as f:
                    for line in f:
                        if count >= limit:
                            return

                        try:
                            entry = AuditEntry.from_dict(json.loads(line.strip()))
                        except json.JSONDecodeError:
                            continue  # partial line from a crashed writer

                        if command_pattern and command_pattern not in entry.command:
                            continue
                        if decision and entry.decision != decision:
                            continue
                        if risk_level and entry.risk_level != risk_level.value:
                            continue
                        if session_id and entry.session_id != session_id:
                            continue

                        yield entry
                        count += 1

            current += timedelta(days=1)

    def cleanup_old_logs(self) -> int:
        """Remove logs older than the retention period.

        Returns:
            Number of files removed.
        """
        if not self.config.enabled:
            return 0

        log_dir = self.config.get_log_dir()
        if not log_dir.exists():
            return 0

        cutoff = datetime.now() - timedelta(days=self.config.retention_days)
        removed = 0

        for log_file in log_dir.glob("gateway_audit_*.jsonl"):
            try:
                file_date = datetime.strptime(log_file.stem.replace("gateway_audit_", ""), "%Y-%m-%d")
            except ValueError:
                continue

            if file_date < cutoff:
                log_file.unlink()
                removed += 1

        return removed

    def get_session_summary(self, session_id: str | None = None) -> dict[str, Any]:
        """Get summary statistics for a session."""
        session_id = session_id or self.session_id
        entries = list(self.query(session_id=session_id, limit=10000))

        if not entries:
            return {"session_id": session_id, "total_commands": 0}

        decisions: dict[str, int] = {}
        risk_counts: dict[str, int] = {}
        for entry in entries:
            decisions[entry.decision] = decisions.get(entry.decision, 0) + 1
            if entry.risk_level:
                risk_counts[entry.risk_level] = risk_counts.get(entry.risk_level, 0) + 1

        return {
            "session_id": session_id,
            "total_commands": len(entries),
            "executed": decisions.get(Decision.EXECUTED, 0),
            "pending": decisions.get(Decision.PENDING, 0),
            "token_refused": decisions.get(Decision.TOKEN_REFUSED, 0),
            "risk_distribution": risk_counts,
            "first_command": entries[0].timestamp,
            "last_command": entries[-1].timestamp,
        }
