"""Host execution backend.

Runs commands directly on this machine through the system shell, in a
fixed working directory.
"""

import asyncio
import os
import signal
import time
from pathlib import Path
from typing import Any

from triagent.backends.base import (
    LAUNCH_FAILURE_EXIT_CODE,
    BackendError,
    ExecutionBackend,
    decode_and_truncate,
    timeout_result,
)
from triagent.backends.config import HostConfig
from triagent.gate.models import ExecutionResult
from triagent.logging import Loggers

logger = Loggers.backends()


class HostBackend(ExecutionBackend):
    """Executes commands with ``sh -c`` on the local host."""

    name = "host"

    def __init__(
        self,
        config: HostConfig | None = None,
        timeout_seconds: float = 120,
        max_output_bytes: int = 50000,
    ):
        super().__init__(timeout_seconds=timeout_seconds, max_output_bytes=max_output_bytes)
        self.config = config or HostConfig()
        self.workdir = self.config.resolved_workdir()

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.workdir / candidate
        return candidate

    async def execute(self, command: str, timeout: float | None = None) -> ExecutionResult:
        timeout = timeout if timeout is not None else self.timeout_seconds
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workdir,
                env={**os.environ, **self.config.env},
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("host_launch_failed", command=command, error=str(e))
            message = f"Failed to start command: {e}"
            return ExecutionResult(
                stdout="",
                stderr=message,
                exit_code=LAUNCH_FAILURE_EXIT_CODE,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                error=message,
            )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()
            duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning("host_command_timeout", command=command, timeout=timeout)
            return timeout_result("", timeout, duration_ms)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        stdout, stdout_truncated = decode_and_truncate(stdout_bytes, self.max_output_bytes)
        stderr, stderr_truncated = decode_and_truncate(stderr_bytes, self.max_output_bytes)
        exit_code = process.returncode if process.returncode is not None else -1

        logger.debug("host_command_finished", exit_code=exit_code, duration_ms=duration_ms)
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=duration_ms,
            error=None if exit_code == 0 else f"Command exited with code {exit_code}",
            truncated=stdout_truncated or stderr_truncated,
        )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        # The shell runs in its own session so its children go down with it
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass

    async def read_file(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as e:
            raise BackendError(f"Cannot read {path}: {e}") from e

    async def list_dir(self, path: str) -> list[str]:
        target = self._resolve(path)
        try:
            entries = await asyncio.to_thread(os.listdir, target)
        except OSError as e:
            raise BackendError(f"Cannot list {path}: {e}") from e
        return sorted(entries)

    def describe(self) -> dict[str, Any]:
        return {"kind": self.name, "workdir": str(self.workdir)}
