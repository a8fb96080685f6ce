"""Settings mixins for triagent.

AppSettingsMixin: Application identity and disk layout (app_name, workspace).
LoggingSettingsMixin: Log verbosity and output format.
GateSettingsMixin: Command gate, approval and execution backend settings.

These live outside config.py so the Settings class can be composed from
them without the concerns bleeding into each other.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator


class AppSettingsMixin:
    """Settings for application identity and disk layout.

    Should be composed with BaseSettings via multiple inheritance.
    """

    app_name: str = Field(
        default="triagent",
        title="App Name",
        description="Application name, also the name of the settings directory",
    )

    workspace_dir: Path = Field(
        default_factory=lambda: Path.home() / ".triagent",
        title="Workspace Directory",
        description="Directory for audit logs and other local state",
    )

    @field_validator("workspace_dir", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """Expand ~ in paths."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    def ensure_workspace_exists(self) -> None:
        """Create workspace directory if it doesn't exist."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)


class LoggingSettingsMixin:
    """Settings for log output.

    Note: This is a mixin, not a BaseSettings subclass, to avoid
    MRO issues when composed with other settings classes.
    """

    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="warning",
        title="Log Level",
        description="Logging verbosity level",
    )
    log_format: Literal["console", "json"] = Field(
        default="console",
        title="Log Format",
        description="Log output format (console for dev, json for production)",
    )


class GateSettingsMixin:
    """Settings for the command gate and its execution backend."""

    backend_kind: Literal["host", "sandboxed", "remote"] = Field(
        default="sandboxed",
        title="Execution Backend",
        description="Where commands run: host, sandboxed container, or remote shell",
    )
    backend_config_file: Path | None = Field(
        default=None,
        title="Backend Config File",
        description="Optional YAML file with host/sandbox/remote sections",
    )
    remote_target: str | None = Field(
        default=None,
        title="Remote Target",
        description="SSH target for the remote backend (user@host:port)",
    )
    codebase_paths: list[str] = Field(
        default_factory=list,
        title="Codebase Paths",
        description="Codebase checkouts mounted into the sandbox at /workspace/<name>",
    )
    command_timeout: int = Field(
        default=120,
        title="Command Timeout",
        description="Seconds before a command is abandoned",
        gt=0,
    )
    approval_ttl_seconds: int = Field(
        default=600,
        title="Approval TTL",
        description="Seconds a pending approval or issued token stays valid",
    )
    classifier_rules: dict[str, Literal["low", "medium", "high", "critical"] | None] = Field(
        default_factory=dict,
        title="Extra Classifier Rules",
        description="Regex to risk tier (null marks read-only), checked before the built-in table",
    )
    redaction_patterns: list[str] = Field(
        default_factory=list,
        title="Extra Redaction Patterns",
        description="Additional regexes redacted from command output",
    )
    audit_enabled: bool = Field(
        default=True,
        title="Audit Log",
        description="Record every gateway decision in a JSONL audit trail",
    )
    audit_dir: Path | None = Field(
        default=None,
        title="Audit Directory",
        description="Where audit logs go (default: <workspace_dir>/audit)",
    )

    @field_validator("backend_config_file", "audit_dir", mode="before")
    @classmethod
    def expand_optional_path(cls, v: str | Path | None) -> Path | None:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v
