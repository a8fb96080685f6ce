"""Command gateway: the single entry point for running agent commands.

Flow for every command:
- Classify it (pure, before any execution decision)
- Read-only: execute on the backend, redact output
- Write with a valid approval token: consume the token, execute, redact
- Write otherwise: register a pending approval and return it; the backend
  is never touched
- Record the decision in the audit trail
"""

from typing import TYPE_CHECKING

from triagent.gate.audit import AuditLogger, Decision
from triagent.gate.classifier import CommandClassifier
from triagent.gate.models import (
    BackendNotConfigured,
    ClassifiedCommand,
    ErrorKind,
    ExecutionResult,
    GatewayResult,
    PendingApproval,
)
from triagent.gate.redaction import Redactor
from triagent.logging import Loggers, command_context

if TYPE_CHECKING:
    from triagent.backends.base import ExecutionBackend
    from triagent.hitl.approval import ApprovalLedger

logger = Loggers.gateway()

_REFUSAL_MESSAGES = {
    ErrorKind.APPROVAL_NOT_FOUND: "Approval token is unknown or was already used",
    ErrorKind.APPROVAL_EXPIRED: "Approval token has expired",
    ErrorKind.TOKEN_COMMAND_MISMATCH: "Approval token was issued for a different command",
}


class CommandGateway:
    """Gates commands behind classification and human approval.

    Args:
        backend: Where commands run. May be None while wiring up; run()
            raises BackendNotConfigured if it is still None when needed.
        ledger: Approval ledger shared with the approval UI.
        classifier: Risk classifier (default rule table if None).
        redactor: Output redactor (default patterns if None).
        audit: Optional audit logger recording every decision.
    """

    def __init__(
        self,
        backend: "ExecutionBackend | None",
        ledger: "ApprovalLedger",
        classifier: CommandClassifier | None = None,
        redactor: Redactor | None = None,
        audit: AuditLogger | None = None,
    ):
        self.backend = backend
        self.ledger = ledger
        self.classifier = classifier or CommandClassifier()
        self.redactor = redactor or Redactor()
        self.audit = audit

    def _require_backend(self) -> "ExecutionBackend":
        if self.backend is None:
            raise BackendNotConfigured("No execution backend configured for the command gateway")
        return self.backend

    async def run(self, command: str, approval_token: str | None = None) -> GatewayResult:
        """Classify and either execute a command or hold it for approval.

        Args:
            command: Shell command proposed by the agent.
            approval_token: Token returned by approve() for this exact command.

        Returns:
            GatewayResult describing the execution or the pending approval.

        Raises:
            BackendNotConfigured: If execution is due and no backend is set.
        """
        backend_name = self.backend.name if self.backend is not None else None
        with command_context(command, backend_name):
            return await self._run(command, approval_token)

    async def _run(self, command: str, approval_token: str | None) -> GatewayResult:
        classified = self.classifier.classify_command(command)

        if not classified.is_write:
            backend = self._require_backend()
            logger.debug("command_read_only")
            return await self._execute(backend, classified)

        refusal: ErrorKind | None = None
        if approval_token:
            backend = self._require_backend()
            check = self.ledger.check_token(command, approval_token)
            if check.valid:
                logger.info(
                    "command_approved_execution",
                    risk_level=classified.risk_level.value if classified.risk_level else None,
                )
                return await self._execute(backend, classified)
            refusal = check.error_kind

        return self._hold(classified, refusal)

    async def _execute(
        self,
        backend: "ExecutionBackend",
        classified: ClassifiedCommand,
    ) -> GatewayResult:
        result = await backend.execute(classified.command)
        redacted = ExecutionResult(
            stdout=self.redactor.redact(result.stdout),
            stderr=self.redactor.redact(result.stderr),
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            error=result.error,
            error_kind=result.error_kind,
            truncated=result.truncated,
        )

        error = None
        if redacted.error_kind is not None or redacted.exit_code != 0:
            error = redacted.error or f"Command exited with code {redacted.exit_code}"
            logger.info(
                "command_failed",
                exit_code=redacted.exit_code,
                error_kind=redacted.error_kind.value if redacted.error_kind else None,
            )

        if self.audit is not None:
            self.audit.log_decision(
                command=classified.command,
                decision=Decision.EXECUTED,
                is_write=classified.is_write,
                risk_level=classified.risk_level,
                reason=classified.reason,
                error_kind=redacted.error_kind.value if redacted.error_kind else None,
                exit_code=redacted.exit_code,
                duration_ms=redacted.duration_ms,
                stdout=redacted.stdout,
                stderr=redacted.stderr,
                backend=backend.name,
            )

        return GatewayResult(
            command=classified.command,
            executed=True,
            result=redacted,
            risk_level=classified.risk_level,
            error=error,
            error_kind=redacted.error_kind,
        )

    def _hold(self, classified: ClassifiedCommand, refusal: ErrorKind | None) -> GatewayResult:
        pending = self.ledger.request_approval(classified.command)

        if refusal is not None:
            error = f"{_REFUSAL_MESSAGES[refusal]}; a new approval was requested"
            decision = Decision.TOKEN_REFUSED
        else:
            error = f"Write command ({pending.risk_level.value} risk) requires human approval"
            decision = Decision.PENDING

        logger.info(
            "command_held_for_approval",
            approval_id=pending.id,
            risk_level=pending.risk_level.value,
            refusal=refusal.value if refusal else None,
        )

        if self.audit is not None:
            self.audit.log_decision(
                command=classified.command,
                decision=decision,
                is_write=True,
                risk_level=pending.risk_level,
                reason=classified.reason,
                approval_id=pending.id,
                error_kind=refusal.value if refusal else None,
                backend=self.backend.name if self.backend is not None else None,
            )

        return GatewayResult(
            command=classified.command,
            executed=False,
            requires_approval=True,
            approval_id=pending.id,
            risk_level=pending.risk_level,
            error=error,
            error_kind=refusal,
        )

    # Approval UI accessors

    def list_pending(self) -> list[PendingApproval]:
        return self.ledger.list_pending()

    def approve(self, approval_id: str) -> str | None:
        """Approve a pending command; returns its single-use token or None."""
        return self.ledger.approve(approval_id)

    def reject(self, approval_id: str) -> None:
        self.ledger.reject(approval_id)
