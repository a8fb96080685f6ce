"""Tests for the sandboxed execution backend.

The container engine is replaced by a fake runner that records argument
vectors and answers with canned results.
"""

import asyncio

import pytest

from triagent.backends.base import BackendError
from triagent.backends.config import CodebaseEntry, SandboxConfig
from triagent.backends.sandbox import (
    ContainerCliDriver,
    DockerDriver,
    PodmanDriver,
    SandboxBackend,
    get_driver,
    register_driver,
)
from triagent.gate.models import ErrorKind


class FakeRunner:
    """Records every argument vector; exec calls get the queued replies."""

    def __init__(self, replies=None, run_reply=(0, b"abc123\n", b"")):
        self.calls: list[list[str]] = []
        self.replies = list(replies or [])
        self.run_reply = run_reply
        self.delay = 0.0
        self.start_delay = 0.0

    async def __call__(self, argv, timeout):
        self.calls.append(argv)
        if argv[1] == "run":
            if self.start_delay:
                await asyncio.sleep(self.start_delay)
            return self.run_reply
        if argv[1] == "rm":
            return 0, b"", b""
        if self.delay:
            await asyncio.wait_for(asyncio.sleep(self.delay), timeout=timeout)
        if self.replies:
            return self.replies.pop(0)
        return 0, b"", b""

    def calls_of(self, verb):
        return [argv for argv in self.calls if argv[1] == verb]


@pytest.fixture
def config(tmp_path):
    repo = tmp_path / "api"
    repo.mkdir()
    return SandboxConfig(
        image="alpine/k8s:1.30.4",
        codebases=[CodebaseEntry(name="api", path=str(repo))],
        credentials_dir=str(tmp_path / "kube"),
        container_name="triage-test",
    )


class TestDrivers:
    """Tests for isolation driver argument construction."""

    def test_run_args(self, config, tmp_path):
        args = DockerDriver().run_args(config, "triage-test")

        assert args[:6] == ["docker", "run", "-d", "--name", "triage-test", "-w"]
        assert f"{(tmp_path / 'api').resolve()}:/workspace/api" in args
        assert f"{tmp_path / 'kube'}:/root/.kube:ro" in args
        assert "KUBECONFIG=/root/.kube/config" in args
        assert "HOME=/root" in args
        assert args[-3:] == ["alpine/k8s:1.30.4", "sleep", "infinity"]

    def test_exec_args(self):
        args = PodmanDriver().exec_args("c1", "/workspace", "kubectl get pods")

        assert args == ["podman", "exec", "-w", "/workspace", "c1", "sh", "-c", "kubectl get pods"]

    def test_remove_args(self):
        assert DockerDriver().remove_args("c1") == ["docker", "rm", "-f", "c1"]

    def test_writable_credentials(self, config, tmp_path):
        config.credentials_read_only = False

        args = DockerDriver().run_args(config, "c1")

        assert f"{tmp_path / 'kube'}:/root/.kube" in args

    def test_extra_env(self, config):
        config.env = {"AWS_PROFILE": "prod"}

        assert "AWS_PROFILE=prod" in DockerDriver().run_args(config, "c1")

    def test_registry(self):
        assert isinstance(get_driver("docker"), DockerDriver)
        assert isinstance(get_driver("podman"), PodmanDriver)

        with pytest.raises(ValueError, match="Unknown sandbox driver"):
            get_driver("firecracker")

    def test_register_driver(self):
        class NerdctlDriver(ContainerCliDriver):
            name = "nerdctl"
            executable = "nerdctl"

        register_driver("nerdctl", NerdctlDriver)

        assert get_driver("nerdctl").exec_args("c", "/w", "ls")[0] == "nerdctl"


class TestSandboxExecute:
    """Tests for SandboxBackend.execute."""

    @pytest.mark.asyncio
    async def test_starts_container_once(self, config):
        runner = FakeRunner(replies=[(0, b"one\n", b""), (0, b"two\n", b"")])
        backend = SandboxBackend(config, runner=runner)

        first = await backend.execute("echo one")
        second = await backend.execute("echo two")

        assert first.stdout == "one\n"
        assert second.stdout == "two\n"
        assert len(runner.calls_of("run")) == 1
        assert runner.calls_of("exec")[0][-3:] == ["sh", "-c", "echo one"]
        assert backend.container == "triage-test"

    @pytest.mark.asyncio
    async def test_concurrent_first_use_starts_once(self, config):
        runner = FakeRunner()
        backend = SandboxBackend(config, runner=runner)

        await asyncio.gather(*(backend.execute("true") for _ in range(5)))

        assert len(runner.calls_of("run")) == 1
        assert len(runner.calls_of("exec")) == 5

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, config):
        runner = FakeRunner(replies=[(1, b"", b"error: not found\n")])
        backend = SandboxBackend(config, runner=runner)

        result = await backend.execute("kubectl get pod x")

        assert result.exit_code == 1
        assert result.stderr == "error: not found\n"
        assert result.error == "Command exited with code 1"

    @pytest.mark.asyncio
    async def test_timeout(self, config):
        runner = FakeRunner()
        runner.delay = 5
        backend = SandboxBackend(config, runner=runner)

        result = await backend.execute("sleep 100", timeout=0.1)

        assert result.exit_code == 124
        assert result.error_kind == ErrorKind.EXECUTION_TIMEOUT
        assert "may still be running inside the container" in result.stderr

    @pytest.mark.asyncio
    async def test_start_failure_becomes_result(self, config):
        runner = FakeRunner(run_reply=(125, b"", b"Unable to find image\n"))
        backend = SandboxBackend(config, runner=runner)

        result = await backend.execute("ls")

        assert result.exit_code == 125
        assert "Unable to find image" in result.stderr
        assert backend.container is None

    @pytest.mark.asyncio
    async def test_start_failure_raises_from_start(self, config):
        backend = SandboxBackend(config, runner=FakeRunner(run_reply=(125, b"", b"boom")))

        with pytest.raises(BackendError, match="boom"):
            await backend.start()

    @pytest.mark.asyncio
    async def test_missing_engine(self, config):
        async def runner(argv, timeout):
            raise FileNotFoundError(2, "No such file or directory", argv[0])

        backend = SandboxBackend(config, runner=runner)

        result = await backend.execute("ls")

        assert result.exit_code != 0
        assert "docker" in result.stderr

    @pytest.mark.asyncio
    async def test_close_removes_container(self, config):
        runner = FakeRunner()
        backend = SandboxBackend(config, runner=runner)
        await backend.start()

        await backend.close()
        await backend.close()

        assert runner.calls_of("rm") == [["docker", "rm", "-f", "triage-test"]]
        assert backend.container is None

    @pytest.mark.asyncio
    async def test_close_waits_for_start_in_progress(self, config):
        runner = FakeRunner()
        runner.start_delay = 0.05
        backend = SandboxBackend(config, runner=runner)

        await asyncio.gather(backend.start(), backend.close())

        assert len(runner.calls_of("run")) == 1
        assert runner.calls_of("rm") == [["docker", "rm", "-f", "triage-test"]]
        assert backend.container is None

    @pytest.mark.asyncio
    async def test_generated_container_name(self, config):
        config.container_name = None
        backend = SandboxBackend(config, runner=FakeRunner())

        await backend.start()

        assert backend.container.startswith("triagent-sandbox-")


class TestSandboxFiles:
    """Tests for reads and listings inside the container."""

    @pytest.mark.asyncio
    async def test_read_file_uses_cat(self, config):
        runner = FakeRunner(replies=[(0, b"apiVersion: v1\n", b"")])
        backend = SandboxBackend(config, runner=runner)

        data = await backend.read_file("/workspace/api/deploy.yaml")

        assert data == b"apiVersion: v1\n"
        assert runner.calls_of("exec")[0][-1] == "cat -- /workspace/api/deploy.yaml"

    @pytest.mark.asyncio
    async def test_read_file_quotes_path(self, config):
        runner = FakeRunner(replies=[(0, b"", b"")])
        backend = SandboxBackend(config, runner=runner)

        await backend.read_file("/workspace/my file; rm -rf /")

        assert runner.calls_of("exec")[0][-1] == "cat -- '/workspace/my file; rm -rf /'"

    @pytest.mark.asyncio
    async def test_read_failure_raises(self, config):
        runner = FakeRunner(replies=[(1, b"", b"cat: nope: No such file or directory\n")])
        backend = SandboxBackend(config, runner=runner)

        with pytest.raises(BackendError, match="No such file"):
            await backend.read_file("nope")

    @pytest.mark.asyncio
    async def test_list_dir(self, config):
        runner = FakeRunner(replies=[(0, b".git\nREADME.md\nsrc\n", b"")])
        backend = SandboxBackend(config, runner=runner)

        entries = await backend.list_dir("/workspace/api")

        assert entries == [".git", "README.md", "src"]
        assert runner.calls_of("exec")[0][-1] == "ls -1A -- /workspace/api"

    def test_describe(self, config):
        backend = SandboxBackend(config, runner=FakeRunner())

        info = backend.describe()

        assert info["kind"] == "sandboxed"
        assert info["driver"] == "docker"
        assert "/workspace/api" in info["mounts"]
        assert "/root/.kube" in info["mounts"]
