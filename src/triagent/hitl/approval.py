"""Approval ledger for write commands.

Holds pending authorization requests and the one-time tokens issued when a
human approves them. Everything lives in memory for the process lifetime.
Expired entries are swept lazily on every ledger access; there is no
background timer.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from triagent.gate.classifier import CommandClassifier
from triagent.gate.models import (
    ApprovedToken,
    ErrorKind,
    PendingApproval,
    RiskLevel,
    TokenCheck,
)
from triagent.hitl.config import LedgerConfig
from triagent.logging import Loggers

logger = Loggers.approval()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalLedger:
    """Tracks pending approvals and issued single-use tokens.

    A pending approval and its token never coexist: approve() moves the
    entry from one map to the other in a single step. validate_token()
    checks and deletes in a single step so a token is consumed at most once.

    Example:
        ledger = ApprovalLedger()
        pending = ledger.request_approval("kubectl scale deploy/x --replicas=3")
        token = ledger.approve(pending.id)      # human decision
        ledger.validate_token(pending.command, token)   # True, once
    """

    def __init__(
        self,
        config: LedgerConfig | None = None,
        classifier: CommandClassifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the ledger.

        Args:
            config: Ledger configuration (TTL, id/token sizes).
            classifier: Classifier used to tier incoming requests.
            clock: Callable returning the current time; injectable for tests.
        """
        self._config = config or LedgerConfig()
        self._classifier = classifier or CommandClassifier()
        self._clock = clock or utc_now
        self._pending: dict[str, PendingApproval] = {}
        self._approved: dict[str, ApprovedToken] = {}

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._config.ttl_seconds)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def approved_count(self) -> int:
        return len(self._approved)

    def _is_expired(self, expires_at: datetime) -> bool:
        return self._clock() > expires_at

    def _new_id(self) -> str:
        # Only live requests can collide; resolved ids are not remembered
        while True:
            approval_id = secrets.token_hex(self._config.id_bytes)
            if approval_id not in self._pending:
                return approval_id

    def clear_expired(self) -> int:
        """Remove expired pending approvals and tokens.

        Returns:
            Number of entries removed.
        """
        expired_ids = [i for i, p in self._pending.items() if self._is_expired(p.expires_at)]
        for approval_id in expired_ids:
            del self._pending[approval_id]

        expired_tokens = [t for t, a in self._approved.items() if self._is_expired(a.expires_at)]
        for token in expired_tokens:
            del self._approved[token]

        removed = len(expired_ids) + len(expired_tokens)
        if removed:
            logger.debug(
                "approvals_expired",
                pending=len(expired_ids),
                tokens=len(expired_tokens),
            )
        return removed

    def request_approval(self, command: str) -> PendingApproval:
        """Register a write command awaiting human approval.

        Args:
            command: The exact command string the token will be bound to.

        Returns:
            The new PendingApproval.
        """
        self.clear_expired()

        now = self._clock()
        pending = PendingApproval(
            id=self._new_id(),
            command=command,
            token=secrets.token_hex(self._config.token_bytes),
            risk_level=self._classifier.classify(command) or RiskLevel.LOW,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._pending[pending.id] = pending

        logger.info(
            "approval_requested",
            approval_id=pending.id,
            risk_level=pending.risk_level.value,
            command=command,
        )
        return pending

    def approve(self, approval_id: str) -> str | None:
        """Approve a pending request and issue its token.

        Returns:
            The token, or None if the request is missing or expired.
        """
        self.clear_expired()

        pending = self._pending.pop(approval_id, None)
        if pending is None:
            logger.info("approval_not_found", approval_id=approval_id)
            return None

        self._approved[pending.token] = ApprovedToken(
            token=pending.token,
            command=pending.command,
            expires_at=pending.expires_at,
        )
        logger.info("approval_granted", approval_id=approval_id)
        return pending.token

    def reject(self, approval_id: str) -> None:
        """Reject a pending request. No token is ever issued for it."""
        self.clear_expired()
        if self._pending.pop(approval_id, None) is not None:
            logger.info("approval_rejected", approval_id=approval_id)

    def check_token(self, command: str, token: str) -> TokenCheck:
        """Validate and consume a token, reporting why validation failed.

        A command mismatch leaves the token in place for its own command.
        """
        self.clear_expired()

        approved = self._approved.get(token)
        if approved is None:
            return TokenCheck(valid=False, error_kind=ErrorKind.APPROVAL_NOT_FOUND)

        # Swept above unless it expires exactly between the two clock reads
        if self._is_expired(approved.expires_at):
            del self._approved[token]
            return TokenCheck(valid=False, error_kind=ErrorKind.APPROVAL_EXPIRED)

        if approved.command != command:
            logger.warning("approval_token_command_mismatch", command=command)
            return TokenCheck(valid=False, error_kind=ErrorKind.TOKEN_COMMAND_MISMATCH)

        del self._approved[token]
        logger.info("approval_token_consumed", command=command)
        return TokenCheck(valid=True)

    def validate_token(self, command: str, token: str) -> bool:
        """Return True exactly once for a valid (command, token) pair."""
        return self.check_token(command, token).valid

    def get_pending(self, approval_id: str) -> PendingApproval | None:
        """Get a pending approval by id."""
        self.clear_expired()
        return self._pending.get(approval_id)

    def list_pending(self) -> list[PendingApproval]:
        """List pending approvals, oldest first."""
        self.clear_expired()
        return sorted(self._pending.values(), key=lambda p: p.created_at)
