"""Command execution abstraction.

Provides a pluggable interface for running shell commands in different
environments (this host, an isolated sandbox, a remote shell session)
without changing gateway code.
"""

from abc import ABC, abstractmethod
from typing import Any

from triagent.gate.models import ErrorKind, ExecutionResult

TIMEOUT_EXIT_CODE = 124
CONNECTION_ERROR_EXIT_CODE = 255
LAUNCH_FAILURE_EXIT_CODE = 127


class BackendError(OSError):
    """Raised when a backend cannot read a file or list a directory."""


def decode_and_truncate(data: bytes | str | None, max_bytes: int) -> tuple[str, bool]:
    """Decode output and truncate it if necessary.

    Args:
        data: Raw output; bytes are decoded as UTF-8 with replacement.
        max_bytes: Size above which the text is cut.

    Returns:
        Tuple of (text, truncated_flag).
    """
    if data is None:
        return "", False
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data

    if len(text) <= max_bytes:
        return text, False
    text = text[:max_bytes]
    text += f"\n... [OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"
    return text, True


def timeout_result(stdout: str, timeout: float, duration_ms: int, detail: str = "") -> ExecutionResult:
    """Build the result returned when a command exceeds its timeout."""
    message = f"Command timed out after {timeout:g} seconds"
    if detail:
        message = f"{message}; {detail}"
    return ExecutionResult(
        stdout=stdout,
        stderr=message,
        exit_code=TIMEOUT_EXIT_CODE,
        duration_ms=duration_ms,
        error=message,
        error_kind=ErrorKind.EXECUTION_TIMEOUT,
    )


class ExecutionBackend(ABC):
    """Abstract interface for executing shell commands.

    Implementations are async. execute() never raises for command failures:
    non-zero exits, timeouts and connection loss come back as results.
    read_file() and list_dir() raise BackendError.
    """

    name: str = "backend"

    def __init__(self, timeout_seconds: float = 120, max_output_bytes: int = 50000):
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes

    async def start(self) -> None:
        """Acquire long-lived resources. Safe to call more than once."""

    async def close(self) -> None:
        """Release long-lived resources. Safe to call more than once."""

    @abstractmethod
    async def execute(self, command: str, timeout: float | None = None) -> ExecutionResult:
        """Run a shell command.

        Args:
            command: Shell command line.
            timeout: Seconds before giving up (default: backend timeout).
        """
        ...

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """Read a file's bytes."""
        ...

    @abstractmethod
    async def list_dir(self, path: str) -> list[str]:
        """List entry names of a directory."""
        ...

    def describe(self) -> dict[str, Any]:
        """Describe the backend for status displays."""
        return {"kind": self.name}

    async def __aenter__(self) -> "ExecutionBackend":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
