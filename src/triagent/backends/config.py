"""Configuration for execution backends.

The backend kind is chosen once at configuration time; the per-kind
sections describe the host working directory, the sandbox mounts and the
remote SSH target.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import yaml

if TYPE_CHECKING:
    from triagent.config import Settings

BackendKind = Literal["host", "sandboxed", "remote"]
BACKEND_KINDS: tuple[str, ...] = ("host", "sandboxed", "remote")

DEFAULT_TIMEOUT_SECONDS = 120
DEFAULT_MAX_OUTPUT_BYTES = 50000
SANDBOX_WORKDIR = "/workspace"


@dataclass
class CodebaseEntry:
    """A named codebase checkout mounted into the sandbox."""

    name: str
    path: str


@dataclass
class MountSpec:
    """A host directory bound to a guest path."""

    host_path: str
    guest_path: str
    read_only: bool = False


@dataclass
class HostConfig:
    """Settings for running commands directly on this machine.

    Attributes:
        workdir: Fixed working directory for every command.
        env: Extra environment variables layered over the process environment.
    """

    workdir: str = "."
    env: dict[str, str] = field(default_factory=dict)

    def resolved_workdir(self) -> Path:
        return Path(self.workdir).expanduser().resolve()


@dataclass
class SandboxConfig:
    """Settings for the isolated sandbox backend.

    Attributes:
        driver: Isolation driver name ("docker" or "podman").
        image: Image the sandbox container is started from.
        workdir: Guest working directory.
        codebases: Checkouts mounted at <workdir>/<name>.
        credentials_dir: Host directory holding cluster credentials.
        credentials_guest_path: Where the credentials directory is mounted.
        credentials_read_only: Mount the credentials directory read-only.
        extra_mounts: Further bind mounts.
        env: Extra guest environment variables.
        container_name: Fixed container name (generated when None).
    """

    driver: str = "docker"
    image: str = "alpine/k8s:1.30.4"
    workdir: str = SANDBOX_WORKDIR
    codebases: list[CodebaseEntry] = field(default_factory=list)
    credentials_dir: str = "~/.kube"
    credentials_guest_path: str = "/root/.kube"
    credentials_read_only: bool = True
    extra_mounts: list[MountSpec] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    container_name: str | None = None

    def mounts(self) -> list[MountSpec]:
        """All bind mounts: one per codebase, then credentials, then extras."""
        mounts = [
            MountSpec(
                host_path=str(Path(entry.path).expanduser().resolve()),
                guest_path=f"{self.workdir.rstrip('/')}/{entry.name}",
            )
            for entry in self.codebases
        ]
        if self.credentials_dir:
            mounts.append(
                MountSpec(
                    host_path=str(Path(self.credentials_dir).expanduser()),
                    guest_path=self.credentials_guest_path,
                    read_only=self.credentials_read_only,
                )
            )
        mounts.extend(self.extra_mounts)
        return mounts

    def environment(self) -> dict[str, str]:
        return {
            "KUBECONFIG": f"{self.credentials_guest_path.rstrip('/')}/config",
            "HOME": "/root",
            **self.env,
        }


@dataclass(frozen=True)
class RemoteTarget:
    """An SSH destination in ``user@host:port`` form."""

    host: str
    user: str = "root"
    port: int = 22

    @classmethod
    def parse(cls, target: str) -> "RemoteTarget":
        """Parse "user@host:port"; user defaults to root, port to 22.

        Raises:
            ValueError: If the host is empty or the port is not a number.
        """
        user = "root"
        host = target.strip()
        port = 22
        if "@" in host:
            user, host = host.split("@", 1)
        if ":" in host:
            host, port_str = host.rsplit(":", 1)
            if not port_str.isdigit():
                raise ValueError(f"Invalid port in remote target {target!r}")
            port = int(port_str)
        if not host:
            raise ValueError(f"Missing host in remote target {target!r}")
        return cls(host=host, user=user or "root", port=port)

    def __str__(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


@dataclass
class RemoteConfig:
    """Settings for the remote-shell backend.

    Attributes:
        host: Remote host name or address.
        user: Login user.
        port: SSH port.
        key_file: Private key path; None to rely on the SSH agent.
        use_agent: Offer keys from the SSH agent.
        known_hosts: known_hosts file; None uses the SSH default.
        workdir: Directory to cd into when the shell opens (None = login dir).
        connect_timeout: Seconds allowed for connection setup.
        term_type: Terminal type requested for the shell pty.
    """

    host: str = ""
    user: str = "root"
    port: int = 22
    key_file: str | None = None
    use_agent: bool = True
    known_hosts: str | None = None
    workdir: str | None = None
    connect_timeout: int = 30
    term_type: str = "dumb"

    @property
    def target(self) -> RemoteTarget:
        return RemoteTarget(host=self.host, user=self.user, port=self.port)

    @classmethod
    def parse_target(cls, target: str, **kwargs: Any) -> "RemoteConfig":
        """Build a config from a "user@host:port" target plus other options."""
        parsed = RemoteTarget.parse(target)
        return cls(host=parsed.host, user=parsed.user, port=parsed.port, **kwargs)


@dataclass
class BackendConfig:
    """Complete backend configuration.

    Attributes:
        kind: Which backend to build.
        timeout_seconds: Bound applied to every backend call.
        max_output_bytes: Output size before truncation.
        host: Host backend settings.
        sandbox: Sandbox backend settings.
        remote: Remote-shell backend settings.
    """

    kind: BackendKind = "host"
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    host: HostConfig = field(default_factory=HostConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackendConfig":
        """Create config from dictionary.

        Args:
            data: Configuration dictionary.

        Returns:
            BackendConfig instance.
        """
        kind = data.get("kind", "host")
        if kind not in BACKEND_KINDS:
            raise ValueError(f"Unknown backend kind {kind!r}, expected one of {BACKEND_KINDS}")

        host_data = data.get("host", {})
        host = HostConfig(
            workdir=host_data.get("workdir", "."),
            env=dict(host_data.get("env", {})),
        )

        sandbox_data = dict(data.get("sandbox", {}))
        sandbox = SandboxConfig(
            codebases=[CodebaseEntry(**c) for c in sandbox_data.pop("codebases", [])],
            extra_mounts=[MountSpec(**m) for m in sandbox_data.pop("extra_mounts", [])],
            **sandbox_data,
        )

        remote_data = dict(data.get("remote", {}))
        target = remote_data.pop("target", None)
        if target:
            remote = RemoteConfig.parse_target(target, **remote_data)
        else:
            remote = RemoteConfig(**remote_data)

        return cls(
            kind=kind,
            timeout_seconds=data.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS),
            max_output_bytes=data.get("max_output_bytes", DEFAULT_MAX_OUTPUT_BYTES),
            host=host,
            sandbox=sandbox,
            remote=remote,
        )

    @classmethod
    def from_yaml(cls, path: Path | str) -> "BackendConfig":
        """Load config from a YAML file; a missing file yields defaults."""
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Backend config {path} must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "BackendConfig":
        """Build from application settings.

        The optional YAML file supplies the per-kind sections; the backend
        kind and timeout from settings take precedence.
        """
        if settings.backend_config_file:
            config = cls.from_yaml(settings.backend_config_file)
        else:
            config = cls()

        config.kind = settings.backend_kind
        config.timeout_seconds = settings.command_timeout
        if settings.remote_target:
            # The target only replaces the address; every other option is kept
            target = RemoteTarget.parse(settings.remote_target)
            config.remote = replace(
                config.remote, host=target.host, user=target.user, port=target.port
            )
        if settings.codebase_paths and not config.sandbox.codebases:
            config.sandbox.codebases = [
                CodebaseEntry(name=Path(p).expanduser().resolve().name or "codebase", path=p)
                for p in settings.codebase_paths
            ]
            if config.host.workdir == ".":
                config.host.workdir = settings.codebase_paths[0]
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "kind": self.kind,
            "timeout_seconds": self.timeout_seconds,
            "max_output_bytes": self.max_output_bytes,
            "host": {"workdir": self.host.workdir, "env": dict(self.host.env)},
            "sandbox": {
                "driver": self.sandbox.driver,
                "image": self.sandbox.image,
                "workdir": self.sandbox.workdir,
                "codebases": [{"name": c.name, "path": c.path} for c in self.sandbox.codebases],
                "credentials_dir": self.sandbox.credentials_dir,
                "credentials_guest_path": self.sandbox.credentials_guest_path,
                "credentials_read_only": self.sandbox.credentials_read_only,
                "extra_mounts": [
                    {"host_path": m.host_path, "guest_path": m.guest_path, "read_only": m.read_only}
                    for m in self.sandbox.extra_mounts
                ],
                "env": dict(self.sandbox.env),
                "container_name": self.sandbox.container_name,
            },
            "remote": {
                "host": self.remote.host,
                "user": self.remote.user,
                "port": self.remote.port,
                "key_file": self.remote.key_file,
                "use_agent": self.remote.use_agent,
                "known_hosts": self.remote.known_hosts,
                "workdir": self.remote.workdir,
                "connect_timeout": self.remote.connect_timeout,
                "term_type": self.remote.term_type,
            },
        }
