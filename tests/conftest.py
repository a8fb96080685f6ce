"""Shared test fixtures and utilities for triagent tests.

Provides:
- MockContext for isolating tests from global settings and env
- FakeClock for driving approval expiry deterministically
- FakeBackend recording every call the gateway makes
- Ledger and gateway fixtures wired with the fakes
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest

from triagent.backends.base import BackendError, ExecutionBackend
from triagent.config import Settings, reload_settings, set_context_settings, set_settings
from triagent.gate.gateway import CommandGateway
from triagent.gate.models import ExecutionResult
from triagent.hitl import ApprovalLedger, LedgerConfig


class MockContext:
    """Context manager for isolating tests from global state.

    Handles:
    - Removing TRIAGENT_* variables from the environment
    - Pointing HOME at a temporary directory so no user settings leak in
    - Resetting the global settings singleton afterwards

    Usage:
        with MockContext(backend_kind="host") as ctx:
            settings = ctx.settings
            workspace = ctx.workspace_dir
    """

    def __init__(self, **settings_kwargs):
        self._settings_kwargs = settings_kwargs
        self._temp_dir: tempfile.TemporaryDirectory | None = None
        self._settings: Settings | None = None
        self._original_env: dict[str, str | None] = {}

    def __enter__(self) -> "MockContext":
        self._temp_dir = tempfile.TemporaryDirectory()
        workspace_dir = Path(self._temp_dir.name)

        for var in [v for v in os.environ if v.startswith("TRIAGENT_")] + ["HOME"]:
            self._original_env[var] = os.environ.pop(var, None)
        os.environ["HOME"] = str(workspace_dir)

        kwargs = {"backend_kind": "host", "audit_enabled": False, **self._settings_kwargs}
        self._settings = Settings(workspace_dir=workspace_dir, **kwargs)
        set_settings(self._settings)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        set_context_settings(None)

        os.environ.pop("HOME", None)
        for var, value in self._original_env.items():
            if value is not None:
                os.environ[var] = value

        reload_settings()

        if self._temp_dir:
            self._temp_dir.cleanup()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            raise RuntimeError("MockContext not entered")
        return self._settings

    @property
    def workspace_dir(self) -> Path:
        if self._temp_dir is None:
            raise RuntimeError("MockContext not entered")
        return Path(self._temp_dir.name)


class FakeClock:
    """Manually advanced clock for the approval ledger."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeBackend(ExecutionBackend):
    """Backend that records commands and returns canned results."""

    name = "fake"

    def __init__(
        self,
        result: ExecutionResult | None = None,
        files: dict[str, bytes] | None = None,
        dirs: dict[str, list[str]] | None = None,
    ):
        super().__init__()
        self.result = result or ExecutionResult(stdout="ok\n", stderr="", exit_code=0)
        self.files = files or {}
        self.dirs = dirs or {}
        self.executed: list[str] = []
        self.reads: list[str] = []

    async def execute(self, command: str, timeout: float | None = None) -> ExecutionResult:
        self.executed.append(command)
        return self.result

    async def read_file(self, path: str) -> bytes:
        self.reads.append(path)
        if path not in self.files:
            raise BackendError(f"Cannot read {path}: No such file")
        return self.files[path]

    async def list_dir(self, path: str) -> list[str]:
        self.reads.append(path)
        if path not in self.dirs:
            raise BackendError(f"Cannot list {path}: No such directory")
        return self.dirs[path]


@pytest.fixture
def mock_context() -> Generator[MockContext, None, None]:
    """Fixture providing an isolated settings context."""
    with MockContext() as ctx:
        yield ctx


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Fixture providing a temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True)
    return workspace


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(fake_clock: FakeClock) -> ApprovalLedger:
    """Ledger with the default 600 second TTL on a fake clock."""
    return ApprovalLedger(LedgerConfig(ttl_seconds=600), clock=fake_clock)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def gateway(fake_backend: FakeBackend, ledger: ApprovalLedger) -> CommandGateway:
    """Gateway over the fake backend, without audit logging."""
    return CommandGateway(backend=fake_backend, ledger=ledger)
