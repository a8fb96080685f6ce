"""Sandboxed execution backend.

Commands run inside one long-lived isolation container with the codebases
and cluster credentials bind-mounted in. The container engine is reached
through an IsolationDriver, which only builds argument vectors; running
them goes through an injectable runner so the backend can be exercised
without a container engine.
"""

import asyncio
import secrets
import shlex
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from triagent.backends.base import (
    LAUNCH_FAILURE_EXIT_CODE,
    BackendError,
    ExecutionBackend,
    decode_and_truncate,
    timeout_result,
)
from triagent.backends.config import MountSpec, SandboxConfig
from triagent.gate.models import ExecutionResult
from triagent.logging import Loggers

logger = Loggers.backends()

# (argv, timeout) -> (exit_code, stdout, stderr); raises asyncio.TimeoutError
ProcessRunner = Callable[[list[str], float], Awaitable[tuple[int, bytes, bytes]]]

# Exit code container CLIs use when the engine itself fails
ENGINE_FAILURE_EXIT_CODE = 125


async def run_process(argv: list[str], timeout: float) -> tuple[int, bytes, bytes]:
    """Run an argument vector, killing it when the timeout expires.

    For an `exec` into a container only the engine client is killed; the
    command inside the container may keep running until the container is
    removed.
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return process.returncode if process.returncode is not None else -1, stdout, stderr


class IsolationDriver(ABC):
    """Builds the command lines that manage a sandbox container."""

    name: str = "driver"

    @abstractmethod
    def run_args(self, config: SandboxConfig, container: str) -> list[str]:
        """Arguments that start the long-lived container detached."""
        ...

    @abstractmethod
    def exec_args(self, container: str, workdir: str, command: str) -> list[str]:
        """Arguments that run one shell command inside the container."""
        ...

    @abstractmethod
    def remove_args(self, container: str) -> list[str]:
        """Arguments that stop and remove the container."""
        ...


class ContainerCliDriver(IsolationDriver):
    """Driver for docker-compatible container CLIs."""

    executable: str = "docker"

    def __init__(self, executable: str | None = None):
        if executable:
            self.executable = executable

    @staticmethod
    def _mount_arg(mount: MountSpec) -> str:
        suffix = ":ro" if mount.read_only else ""
        return f"{mount.host_path}:{mount.guest_path}{suffix}"

    def run_args(self, config: SandboxConfig, container: str) -> list[str]:
        args = [self.executable, "run", "-d", "--name", container, "-w", config.workdir]
        for mount in config.mounts():
            args.extend(["-v", self._mount_arg(mount)])
        for key, value in config.environment().items():
            args.extend(["-e", f"{key}={value}"])
        args.extend([config.image, "sleep", "infinity"])
        return args

    def exec_args(self, container: str, workdir: str, command: str) -> list[str]:
        return [self.executable, "exec", "-w", workdir, container, "sh", "-c", command]

    def remove_args(self, container: str) -> list[str]:
        return [self.executable, "rm", "-f", container]


class DockerDriver(ContainerCliDriver):
    name = "docker"
    executable = "docker"


class PodmanDriver(ContainerCliDriver):
    name = "podman"
    executable = "podman"


_DRIVERS: dict[str, type[IsolationDriver]] = {
    "docker": DockerDriver,
    "podman": PodmanDriver,
}


def register_driver(name: str, driver_cls: type[IsolationDriver]) -> None:
    """Register an isolation driver under a configuration name."""
    _DRIVERS[name] = driver_cls


def get_driver(name: str) -> IsolationDriver:
    """Instantiate the driver registered under name.

    Raises:
        ValueError: If no driver has that name.
    """
    try:
        driver_cls = _DRIVERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown sandbox driver {name!r}, available: {', '.join(sorted(_DRIVERS))}"
        ) from None
    return driver_cls()


class SandboxBackend(ExecutionBackend):
    """Executes commands inside a reusable isolation container."""

    name = "sandboxed"

    def __init__(
        self,
        config: SandboxConfig | None = None,
        timeout_seconds: float = 120,
        max_output_bytes: int = 50000,
        driver: IsolationDriver | None = None,
        runner: ProcessRunner | None = None,
    ):
        super().__init__(timeout_seconds=timeout_seconds, max_output_bytes=max_output_bytes)
        self.config = config or SandboxConfig()
        self.driver = driver or get_driver(self.config.driver)
        self._runner = runner or run_process
        self._container: str | None = None
        self._start_lock = asyncio.Lock()

    @property
    def container(self) -> str | None:
        """Name of the running container, None before start()."""
        return self._container

    async def start(self) -> None:
        """Start the sandbox container if it is not running yet.

        Raises:
            BackendError: If the container engine refuses to start it.
        """
        async with self._start_lock:
            if self._container is not None:
                return

            container = self.config.container_name or f"triagent-sandbox-{secrets.token_hex(4)}"
            argv = self.driver.run_args(self.config, container)
            try:
                exit_code, _, stderr = await self._runner(argv, self.timeout_seconds)
            except asyncio.TimeoutError:
                raise BackendError(
                    f"Sandbox container did not start within {self.timeout_seconds:g} seconds"
                ) from None
            except OSError as e:
                raise BackendError(f"Cannot run {self.driver.name}: {e}") from e

            if exit_code != 0:
                message = stderr.decode("utf-8", errors="replace").strip()
                raise BackendError(f"Sandbox container failed to start: {message}")

            self._container = container
            logger.info(
                "sandbox_started",
                container=container,
                driver=self.driver.name,
                image=self.config.image,
            )

    async def close(self) -> None:
        """Remove the container; waits for a start() in progress."""
        async with self._start_lock:
            container = self._container
            if container is None:
                return
            self._container = None
            try:
                exit_code, _, stderr = await self._runner(
                    self.driver.remove_args(container), self.timeout_seconds
                )
            except (asyncio.TimeoutError, OSError) as e:
                logger.warning("sandbox_remove_failed", container=container, error=str(e))
                return
            if exit_code != 0:
                logger.warning(
                    "sandbox_remove_failed",
                    container=container,
                    error=stderr.decode("utf-8", errors="replace").strip(),
                )
            else:
                logger.info("sandbox_removed", container=container)

    async def _exec(self, command: str, timeout: float) -> tuple[int, bytes, bytes]:
        await self.start()
        assert self._container is not None
        argv = self.driver.exec_args(self._container, self.config.workdir, command)
        return await self._runner(argv, timeout)

    async def execute(self, command: str, timeout: float | None = None) -> ExecutionResult:
        """Run a command in the container, starting it on first use.

        A timeout abandons the exec client only; the command itself may
        still be running inside the container.
        """
        timeout = timeout if timeout is not None else self.timeout_seconds
        start_time = time.monotonic()

        try:
            exit_code, stdout_bytes, stderr_bytes = await self._exec(command, timeout)
        except asyncio.TimeoutError:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning("sandbox_command_timeout", command=command, timeout=timeout)
            return timeout_result(
                "", timeout, duration_ms, "the command may still be running inside the container"
            )
        except BackendError as e:
            message = str(e)
            return ExecutionResult(
                stdout="",
                stderr=message,
                exit_code=ENGINE_FAILURE_EXIT_CODE,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                error=message,
            )
        except OSError as e:
            message = f"Cannot run {self.driver.name}: {e}"
            return ExecutionResult(
                stdout="",
                stderr=message,
                exit_code=LAUNCH_FAILURE_EXIT_CODE,
                duration_ms=int((time.monotonic() - start_time) * 1000),
                error=message,
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        stdout, stdout_truncated = decode_and_truncate(stdout_bytes, self.max_output_bytes)
        stderr, stderr_truncated = decode_and_truncate(stderr_bytes, self.max_output_bytes)
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=duration_ms,
            error=None if exit_code == 0 else f"Command exited with code {exit_code}",
            truncated=stdout_truncated or stderr_truncated,
        )

    async def _checked(self, command: str, path: str, action: str) -> bytes:
        try:
            exit_code, stdout, stderr = await self._exec(command, self.timeout_seconds)
        except asyncio.TimeoutError:
            raise BackendError(f"Cannot {action} {path}: timed out") from None
        except BackendError:
            raise
        except OSError as e:
            raise BackendError(f"Cannot {action} {path}: {e}") from e
        if exit_code != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise BackendError(f"Cannot {action} {path}: {message}")
        return stdout

    async def read_file(self, path: str) -> bytes:
        return await self._checked(f"cat -- {shlex.quote(path)}", path, "read")

    async def list_dir(self, path: str) -> list[str]:
        output = await self._checked(f"ls -1A -- {shlex.quote(path)}", path, "list")
        text = output.decode("utf-8", errors="replace")
        return [line for line in text.splitlines() if line.strip()]

    def describe(self) -> dict[str, Any]:
        return {
            "kind": self.name,
            "driver": self.driver.name,
            "image": self.config.image,
            "container": self._container,
            "workdir": self.config.workdir,
            "mounts": [m.guest_path for m in self.config.mounts()],
        }
