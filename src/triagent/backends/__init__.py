"""Execution backends for the command gateway.

Three interchangeable ways to run a command:

- host: directly on this machine
- sandboxed: inside an isolation container with bind-mounted codebases
  and cluster credentials
- remote: over a persistent authenticated SSH shell session

The kind is chosen once, at configuration time, via create_backend().
"""

from triagent.backends.base import BackendError, ExecutionBackend
from triagent.backends.config import (
    BackendConfig,
    CodebaseEntry,
    HostConfig,
    MountSpec,
    RemoteConfig,
    RemoteTarget,
    SandboxConfig,
)
from triagent.backends.host import HostBackend
from triagent.backends.remote import MarkerFramedShell, RemoteShellBackend
from triagent.backends.sandbox import (
    DockerDriver,
    IsolationDriver,
    PodmanDriver,
    SandboxBackend,
    get_driver,
    register_driver,
)


def create_backend(config: BackendConfig) -> ExecutionBackend:
    """Instantiate the backend selected by config.kind.

    Raises:
        ValueError: If the kind is unknown or its section is incomplete.
    """
    common = {
        "timeout_seconds": config.timeout_seconds,
        "max_output_bytes": config.max_output_bytes,
    }
    if config.kind == "host":
        return HostBackend(config.host, **common)
    if config.kind == "sandboxed":
        return SandboxBackend(config.sandbox, **common)
    if config.kind == "remote":
        if not config.remote.host:
            raise ValueError("Remote backend requires a host")
        return RemoteShellBackend(config.remote, **common)
    raise ValueError(f"Unknown backend kind: {config.kind!r}")


__all__ = [
    "BackendConfig",
    "BackendError",
    "CodebaseEntry",
    "DockerDriver",
    "ExecutionBackend",
    "HostBackend",
    "HostConfig",
    "IsolationDriver",
    "MarkerFramedShell",
    "MountSpec",
    "PodmanDriver",
    "RemoteConfig",
    "RemoteShellBackend",
    "RemoteTarget",
    "SandboxBackend",
    "SandboxConfig",
    "create_backend",
    "get_driver",
    "register_driver",
]
