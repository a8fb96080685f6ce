"""Configuration for the human-in-the-loop approval ledger."""

from dataclasses import dataclass

DEFAULT_APPROVAL_TTL_SECONDS = 10 * 60


@dataclass
class LedgerConfig:
    """Configuration for the approval ledger.

    Attributes:
        ttl_seconds: Lifetime of a pending approval and of the token it yields.
        id_bytes: Random bytes in an approval id (hex encoded).
        token_bytes: Random bytes in an approval token (hex encoded).
    """

    ttl_seconds: int = DEFAULT_APPROVAL_TTL_SECONDS
    id_bytes: int = 8
    token_bytes: int = 16
