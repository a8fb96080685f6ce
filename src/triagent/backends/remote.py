"""Remote-shell execution backend.

Keeps one authenticated SSH connection with a persistent interactive shell
and an SFTP channel. Commands are written to the shell and their output is
framed by a random marker echoed together with the exit status:

    <command>; echo "<marker>:$?"

Everything the shell prints before the marker line is the command output.
"""

import asyncio
import posixpath
import re
import secrets
import shlex
import time
from typing import Any, Awaitable, Callable, Protocol

import asyncssh

from triagent.backends.base import (
    CONNECTION_ERROR_EXIT_CODE,
    BackendError,
    ExecutionBackend,
    decode_and_truncate,
    timeout_result,
)
from triagent.backends.config import RemoteConfig, RemoteTarget
from triagent.gate.models import ErrorKind, ExecutionResult
from triagent.logging import Loggers

logger = Loggers.backends()

MARKER_PREFIX = "__TRIAGENT_"
READ_CHUNK_SIZE = 65536


def new_marker() -> str:
    return f"{MARKER_PREFIX}{secrets.token_hex(6)}__"


class ShellWriter(Protocol):
    def write(self, data: str) -> None: ...

    async def drain(self) -> None: ...


class ShellReader(Protocol):
    async def read(self, n: int = -1) -> str: ...


class MarkerFramedShell:
    """Runs commands one at a time over a persistent shell stream.

    A single background task reads the stream into a buffer and resolves
    the waiting command as soon as its marker line shows up. Once the
    stream ends the shell is closed for good.

    A command that timed out keeps running on the remote side, so its late
    output and marker line may still arrive. Markers of timed-out commands
    are remembered and everything up to their marker line is dropped before
    the next command's output is framed.
    """

    def __init__(
        self,
        stdin: ShellWriter,
        stdout: ShellReader,
        marker_factory: Callable[[], str] = new_marker,
    ):
        self._stdin = stdin
        self._stdout = stdout
        self._marker_factory = marker_factory
        self._buffer = ""
        self._waiter: tuple[re.Pattern, asyncio.Future] | None = None
        self._stale_markers: list[str] = []
        self._lock = asyncio.Lock()
        self._reader: asyncio.Task | None = None
        self._closed = False
        self._close_reason = "shell stream closed"

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the background reader."""
        if self._reader is None and not self._closed:
            self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        self._closed = True
        self._mark_closed("shell closed by client")
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

    async def _read_loop(self) -> None:
        try:
            while True:
                chunk = await self._stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self._buffer += chunk
                self._check_marker()
        except (OSError, asyncssh.Error) as e:
            self._close_reason = f"shell stream failed: {e}"
        self._mark_closed(self._close_reason)

    def _mark_closed(self, reason: str) -> None:
        if not self._closed:
            logger.warning("remote_shell_closed", reason=reason)
        self._closed = True
        self._close_reason = reason
        if self._waiter is not None:
            _, future = self._waiter
            if not future.done():
                future.set_result(None)

    def _discard_stale(self) -> None:
        while self._stale_markers:
            stale = re.search(rf"{re.escape(self._stale_markers[0])}:\d+\r?\n", self._buffer)
            if stale is None:
                return
            logger.debug("remote_stale_output_dropped", marker=self._stale_markers[0])
            self._buffer = self._buffer[stale.end():]
            self._stale_markers.pop(0)

    def _check_marker(self) -> None:
        self._discard_stale()
        if self._waiter is None:
            return
        pattern, future = self._waiter
        if future.done():
            return
        match = pattern.search(self._buffer)
        if match:
            # Older markers can no longer follow a completed command
            self._stale_markers.clear()
            future.set_result(match)

    @staticmethod
    def _clean(raw: str, marker: str, command: str) -> str:
        text = raw.replace("\r\n", "\n")
        lines = text.split("\n")
        # A pty echoes the input line back before any output
        if lines and (marker in lines[0] or lines[0].strip() == command.strip()):
            lines = lines[1:]
        return "\n".join(lines).rstrip("\n")

    def _connection_lost(self, stdout: str, duration_ms: int) -> ExecutionResult:
        message = f"Remote session lost: {self._close_reason}"
        return ExecutionResult(
            stdout=stdout,
            stderr=message,
            exit_code=CONNECTION_ERROR_EXIT_CODE,
            duration_ms=duration_ms,
            error=message,
            error_kind=ErrorKind.CONNECTION_ERROR,
        )

    async def run(self, command: str, timeout: float) -> ExecutionResult:
        """Run one command and wait for its marker line.

        Output of the remote shell is merged; stderr of the result only
        carries messages about timeouts and lost sessions.
        """
        async with self._lock:
            start_time = time.monotonic()
            if self._closed:
                return self._connection_lost("", 0)

            marker = self._marker_factory()
            future = asyncio.get_running_loop().create_future()
            if not self._stale_markers:
                self._buffer = ""
            self._waiter = (re.compile(rf"{re.escape(marker)}:(\d+)\r?\n"), future)

            try:
                try:
                    self._stdin.write(f'{command}; echo "{marker}:$?"\n')
                    await self._stdin.drain()
                except (OSError, asyncssh.Error) as e:
                    self._mark_closed(f"write failed: {e}")

                self._check_marker()
                try:
                    match = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
                except asyncio.TimeoutError:
                    self._stale_markers.append(marker)
                    duration_ms = int((time.monotonic() - start_time) * 1000)
                    logger.warning(
                        "remote_command_timeout",
                        command=command,
                        timeout=timeout,
                        note="remote process left running",
                    )
                    return timeout_result(
                        self._clean(self._buffer, marker, command),
                        timeout,
                        duration_ms,
                        "the remote process may still be running",
                    )
            finally:
                self._waiter = None

            duration_ms = int((time.monotonic() - start_time) * 1000)
            if match is None:
                return self._connection_lost(self._clean(self._buffer, marker, command), duration_ms)

            stdout = self._clean(self._buffer[: match.start()], marker, command)
            exit_code = int(match.group(1))
            return ExecutionResult(
                stdout=stdout,
                stderr="",
                exit_code=exit_code,
                duration_ms=duration_ms,
                error=None if exit_code == 0 else f"Command exited with code {exit_code}",
            )


class RemoteShellBackend(ExecutionBackend):
    """Executes commands over a persistent SSH shell session."""

    name = "remote"

    def __init__(
        self,
        config: RemoteConfig,
        timeout_seconds: float = 120,
        max_output_bytes: int = 50000,
        connect: Callable[..., Awaitable[Any]] = asyncssh.connect,
        marker_factory: Callable[[], str] = new_marker,
    ):
        super().__init__(timeout_seconds=timeout_seconds, max_output_bytes=max_output_bytes)
        self.config = config
        self._connect = connect
        self._marker_factory = marker_factory
        self._conn: Any = None
        self._process: Any = None
        self._sftp: Any = None
        self._shell: MarkerFramedShell | None = None
        self._started = False
        self._start_lock = asyncio.Lock()

    @property
    def target(self) -> RemoteTarget:
        return self.config.target

    @property
    def connected(self) -> bool:
        return self._shell is not None and not self._shell.closed

    def _connect_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "port": self.config.port,
            "username": self.config.user,
            "connect_timeout": self.config.connect_timeout,
        }
        if self.config.key_file:
            options["client_keys"] = [self.config.key_file]
        if not self.config.use_agent:
            options["agent_path"] = None
        if self.config.known_hosts:
            options["known_hosts"] = self.config.known_hosts
        return options

    async def start(self) -> None:
        """Open the connection, shell and SFTP channels.

        Calling start() again after the session was lost reconnects.

        Raises:
            BackendError: If the connection or shell setup fails.
        """
        async with self._start_lock:
            if self.connected:
                return
            await self._teardown()

            target = self.target
            logger.info("remote_connecting", target=str(target))
            try:
                self._conn = await self._connect(self.config.host, **self._connect_options())
                self._process = await self._conn.create_process(
                    term_type=self.config.term_type,
                    stderr=asyncssh.STDOUT,
                    encoding="utf-8",
                    errors="replace",
                )
                self._sftp = await self._conn.start_sftp_client()
            except (OSError, asyncssh.Error) as e:
                await self._teardown()
                raise BackendError(f"Cannot connect to {target}: {e}") from e

            self._shell = MarkerFramedShell(
                self._process.stdin, self._process.stdout, self._marker_factory
            )
            self._shell.start()
            self._started = True

            await self._prepare_shell()
            logger.info("remote_connected", target=str(target), workdir=self.config.workdir)

    async def _prepare_shell(self) -> None:
        assert self._shell is not None
        setup = "export PS1='' PS2=''"
        if self.config.workdir:
            setup = f"{setup}; cd {shlex.quote(self.config.workdir)}"
        result = await self._shell.run(setup, self.config.connect_timeout)
        if result.exit_code != 0:
            await self._teardown()
            raise BackendError(
                f"Remote shell setup failed on {self.target}: {result.stderr or result.stdout}"
            )

    async def _teardown(self) -> None:
        if self._shell is not None:
            await self._shell.close()
            self._shell = None
        if self._sftp is not None:
            self._sftp.exit()
            self._sftp = None
        if self._process is not None:
            self._process.close()
            self._process = None
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None

    async def close(self) -> None:
        async with self._start_lock:
            if self._conn is not None:
                logger.info("remote_disconnected", target=str(self.target))
            await self._teardown()
            self._started = False

    async def execute(self, command: str, timeout: float | None = None) -> ExecutionResult:
        timeout = timeout if timeout is not None else self.timeout_seconds

        # Connect lazily on first use only; a lost session stays lost
        if not self._started:
            try:
                await self.start()
            except BackendError as e:
                message = str(e)
                return ExecutionResult(
                    stdout="",
                    stderr=message,
                    exit_code=CONNECTION_ERROR_EXIT_CODE,
                    error=message,
                    error_kind=ErrorKind.CONNECTION_ERROR,
                )

        if self._shell is None:
            message = f"Remote session to {self.target} is not open"
            return ExecutionResult(
                stdout="",
                stderr=message,
                exit_code=CONNECTION_ERROR_EXIT_CODE,
                error=message,
                error_kind=ErrorKind.CONNECTION_ERROR,
            )

        result = await self._shell.run(command, timeout)
        result.stdout, result.truncated = decode_and_truncate(result.stdout, self.max_output_bytes)
        return result

    def _remote_path(self, path: str) -> str:
        if self.config.workdir and not posixpath.isabs(path):
            return posixpath.join(self.config.workdir, path)
        return path

    async def _sftp_client(self) -> Any:
        if not self._started:
            await self.start()
        if self._sftp is None or not self.connected:
            raise BackendError(f"Remote session to {self.target} is not open")
        return self._sftp

    async def read_file(self, path: str) -> bytes:
        sftp = await self._sftp_client()
        try:
            async with sftp.open(self._remote_path(path), "rb") as f:
                return await f.read()
        except (OSError, asyncssh.Error) as e:
            raise BackendError(f"Cannot read {path}: {e}") from e

    async def list_dir(self, path: str) -> list[str]:
        sftp = await self._sftp_client()
        try:
            names = await sftp.listdir(self._remote_path(path))
        except (OSError, asyncssh.Error) as e:
            raise BackendError(f"Cannot list {path}: {e}") from e
        return sorted(n for n in names if n not in (".", ".."))

    def describe(self) -> dict[str, Any]:
        return {
            "kind": self.name,
            "target": str(self.target),
            "workdir": self.config.workdir,
            "connected": self.connected,
        }
