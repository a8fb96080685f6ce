"""Tests for the remote-shell backend.

The SSH connection is replaced by an in-memory stream: whatever the shell
"prints" is produced by a responder that sees each line written to stdin.
"""

import asyncio
import itertools
import re

import pytest

from triagent.backends.base import BackendError
from triagent.backends.config import RemoteConfig, RemoteTarget
from triagent.backends.remote import MarkerFramedShell, RemoteShellBackend, new_marker
from triagent.gate.models import ErrorKind

MARKER = "__TRIAGENT_test__"
MARKER_ECHO = re.compile(r'echo "(\S+):\$\?"')


class FakeStream:
    """Acts as both stdin and stdout of a remote shell."""

    def __init__(self, responder=None, delay: float = 0.0):
        self.written: list[str] = []
        self.responder = responder
        self.delay = delay
        self.unanswered_at_write: list[int] = []
        self._answered = 0
        self._queue: asyncio.Queue[str] = asyncio.Queue()

    def write(self, data: str) -> None:
        self.unanswered_at_write.append(len(self.written) - self._answered)
        self.written.append(data)
        if self.responder is None:
            return
        chunks = self.responder(data)
        if self.delay:
            asyncio.get_running_loop().call_later(self.delay, self._answer, chunks)
        else:
            self._answer(chunks)

    async def drain(self) -> None:
        pass

    async def read(self, n: int = -1) -> str:
        return await self._queue.get()

    def feed(self, chunk: str) -> None:
        self._queue.put_nowait(chunk)

    def eof(self) -> None:
        self._queue.put_nowait("")

    def _answer(self, chunks) -> None:
        self._answered += 1
        for chunk in chunks:
            self.feed(chunk)


def marker_of(line: str) -> str:
    return MARKER_ECHO.search(line).group(1)


def command_of(line: str) -> str:
    return line.split("; echo ", 1)[0]


def make_shell(responder=None, **kwargs):
    stream = FakeStream(responder, **kwargs)
    shell = MarkerFramedShell(stream, stream, marker_factory=lambda: MARKER)
    shell.start()
    return shell, stream


class TestMarkerFramedShell:
    """Tests for marker framing over a persistent stream."""

    @pytest.mark.asyncio
    async def test_output_before_marker(self):
        shell, stream = make_shell(lambda data: [f"hi\n{MARKER}:0\n"])

        result = await shell.run("echo hi", timeout=1)

        assert result.stdout == "hi"
        assert result.exit_code == 0
        assert result.error is None
        assert stream.written == [f'echo hi; echo "{MARKER}:$?"\n']
        await shell.close()

    @pytest.mark.asyncio
    async def test_exit_status_reported(self):
        shell, _ = make_shell(lambda data: [f"Error from server (NotFound)\n{MARKER}:1\n"])

        result = await shell.run("kubectl get pod x", timeout=1)

        assert result.exit_code == 1
        assert result.stdout == "Error from server (NotFound)"
        assert result.error == "Command exited with code 1"
        await shell.close()

    @pytest.mark.asyncio
    async def test_echoed_input_and_crlf_removed(self):
        def responder(data):
            echo = data.replace("\n", "\r\n")
            return [echo, "line1\r\nline2\r\n", f"{MARKER}:2\r\n"]

        shell, _ = make_shell(responder)

        result = await shell.run("cat two-lines", timeout=1)

        assert result.stdout == "line1\nline2"
        assert result.exit_code == 2
        await shell.close()

    @pytest.mark.asyncio
    async def test_marker_split_across_reads(self):
        shell, _ = make_shell(lambda data: ["hi\n__TRI", "AGENT_test__:1", "27\n"])

        result = await shell.run("nosuchcmd", timeout=1)

        assert result.exit_code == 127
        assert result.stdout == "hi"
        await shell.close()

    @pytest.mark.asyncio
    async def test_timeout_keeps_partial_output(self):
        shell, _ = make_shell(lambda data: ["partial\n"])

        result = await shell.run("kubectl logs -f api", timeout=0.1)

        assert result.exit_code == 124
        assert result.error_kind == ErrorKind.EXECUTION_TIMEOUT
        assert result.stdout == "partial"
        assert "may still be running" in result.stderr
        assert shell.closed is False
        await shell.close()

    @pytest.mark.asyncio
    async def test_late_output_of_timed_out_command_dropped(self):
        counter = itertools.count(1)
        replies = {
            "sleep 30": [],
            "echo second": ["late-first-output\n__M1__:0\nsecond\n__M2__:0\n"],
        }
        stream = FakeStream(lambda data: replies[command_of(data)])
        shell = MarkerFramedShell(stream, stream, marker_factory=lambda: f"__M{next(counter)}__")
        shell.start()

        first = await shell.run("sleep 30", timeout=0.05)
        second = await shell.run("echo second", timeout=1)

        assert first.exit_code == 124
        assert second.exit_code == 0
        assert second.stdout == "second"
        await shell.close()

    @pytest.mark.asyncio
    async def test_late_marker_arriving_between_commands(self):
        counter = itertools.count(1)
        stream = FakeStream(lambda data: ["third\n__M2__:3\n"] if "third" in data else [])
        shell = MarkerFramedShell(stream, stream, marker_factory=lambda: f"__M{next(counter)}__")
        shell.start()

        await shell.run("sleep 30", timeout=0.05)
        stream.feed("late\n__M")
        await asyncio.sleep(0)
        stream.feed("1__:0\n")
        result = await shell.run("echo third", timeout=1)

        assert result.exit_code == 3
        assert result.stdout == "third"
        await shell.close()

    @pytest.mark.asyncio
    async def test_end_of_stream_is_connection_error(self):
        shell, stream = make_shell(lambda data: ["partial\n", ""])

        first = await shell.run("uptime", timeout=1)
        second = await shell.run("uptime", timeout=1)

        assert first.exit_code == 255
        assert first.error_kind == ErrorKind.CONNECTION_ERROR
        assert first.stdout == "partial"
        assert second.exit_code == 255
        assert len(stream.written) == 1
        assert shell.closed is True

    @pytest.mark.asyncio
    async def test_commands_are_serialized(self):
        counter = itertools.count(1)
        stream = FakeStream(
            lambda data: [f"out-{command_of(data)}\n{marker_of(data)}:0\n"],
            delay=0.05,
        )
        shell = MarkerFramedShell(stream, stream, marker_factory=lambda: f"__M{next(counter)}__")
        shell.start()

        first, second = await asyncio.gather(shell.run("a", 1), shell.run("b", 1))

        assert first.stdout == "out-a"
        assert second.stdout == "out-b"
        assert stream.unanswered_at_write == [0, 0]
        await shell.close()

    @pytest.mark.asyncio
    async def test_closed_shell_refuses(self):
        shell, stream = make_shell(lambda data: [f"{MARKER}:0\n"])
        await shell.close()

        result = await shell.run("true", timeout=1)

        assert result.exit_code == 255
        assert stream.written == []

    def test_markers_are_unique(self):
        markers = {new_marker() for _ in range(50)}

        assert len(markers) == 50
        assert all(m.startswith("__TRIAGENT_") for m in markers)


class FakeSFTP:
    def __init__(self, files=None, dirs=None):
        self.files = files or {}
        self.dirs = dirs or {}
        self.opened: list[str] = []
        self.exited = False

    def open(self, path, mode="r"):
        self.opened.append(path)
        sftp = self

        class _File:
            async def __aenter__(self):
                if path not in sftp.files:
                    raise FileNotFoundError(2, "No such file", path)
                return self

            async def __aexit__(self, *exc):
                return False

            async def read(self):
                return sftp.files[path]

        return _File()

    async def listdir(self, path):
        if path not in self.dirs:
            raise FileNotFoundError(2, "No such directory", path)
        return self.dirs[path]

    def exit(self):
        self.exited = True


class FakeProcess:
    def __init__(self, stream):
        self.stdin = stream
        self.stdout = stream
        self.closed = False

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, stream, sftp):
        self.stream = stream
        self.sftp = sftp
        self.process_options: dict = {}
        self.closed = False

    async def create_process(self, **options):
        self.process_options = options
        return FakeProcess(self.stream)

    async def start_sftp_client(self):
        return self.sftp

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def shell_responder(outputs=None, failing_prefix=None):
    outputs = outputs or {}

    def respond(data):
        command = command_of(data)
        status = 1 if failing_prefix and command.startswith(failing_prefix) else 0
        return [f"{outputs.get(command, '')}{marker_of(data)}:{status}\n"]

    return respond


class FakeConnector:
    """Stands in for asyncssh.connect; every call opens a fresh stream."""

    def __init__(self, responder=None, sftp=None, error: Exception | None = None):
        self.responder = responder or shell_responder()
        self.sftp = sftp or FakeSFTP()
        self.error = error
        self.calls: list[tuple[str, dict]] = []
        self.connections: list[FakeConnection] = []

    async def __call__(self, host, **options):
        self.calls.append((host, options))
        if self.error is not None:
            raise self.error
        conn = FakeConnection(FakeStream(self.responder), self.sftp)
        self.connections.append(conn)
        return conn


@pytest.fixture
def remote_config():
    return RemoteConfig.parse_target("sre@bastion:2222", workdir="/srv/app", key_file="/keys/id")


class TestRemoteShellBackend:
    """Tests for RemoteShellBackend over a fake connection."""

    @pytest.mark.asyncio
    async def test_connects_lazily_and_runs(self, remote_config):
        connector = FakeConnector(shell_responder({"kubectl get pods": "api-1 Running\n"}))
        backend = RemoteShellBackend(remote_config, connect=connector)

        result = await backend.execute("kubectl get pods")

        assert result.stdout == "api-1 Running"
        assert result.exit_code == 0
        host, options = connector.calls[0]
        assert host == "bastion"
        assert options["username"] == "sre"
        assert options["port"] == 2222
        assert options["client_keys"] == ["/keys/id"]
        assert "agent_path" not in options
        assert backend.connected is True
        await backend.close()

    @pytest.mark.asyncio
    async def test_shell_prepared_with_workdir(self, remote_config):
        connector = FakeConnector()
        backend = RemoteShellBackend(remote_config, connect=connector)

        await backend.start()

        setup = connector.connections[0].stream.written[0]
        assert "PS1=''" in setup
        assert "cd /srv/app" in setup
        assert connector.connections[0].process_options["term_type"] == "dumb"
        await backend.close()

    @pytest.mark.asyncio
    async def test_connect_failure_is_result(self, remote_config):
        connector = FakeConnector(error=OSError("Connection refused"))
        backend = RemoteShellBackend(remote_config, connect=connector)

        result = await backend.execute("uptime")

        assert result.exit_code == 255
        assert result.error_kind == ErrorKind.CONNECTION_ERROR
        assert "sre@bastion:2222" in result.stderr
        assert "Connection refused" in result.stderr

    @pytest.mark.asyncio
    async def test_setup_failure_raises(self, remote_config):
        connector = FakeConnector(shell_responder(failing_prefix="export"))
        backend = RemoteShellBackend(remote_config, connect=connector)

        with pytest.raises(BackendError, match="setup failed"):
            await backend.start()

        assert connector.connections[0].closed is True

    @pytest.mark.asyncio
    async def test_lost_session_is_not_reopened(self, remote_config):
        connector = FakeConnector()
        backend = RemoteShellBackend(remote_config, connect=connector)
        await backend.start()

        connector.connections[0].stream.eof()
        await asyncio.sleep(0.01)
        result = await backend.execute("uptime")

        assert result.exit_code == 255
        assert result.error_kind == ErrorKind.CONNECTION_ERROR
        assert len(connector.calls) == 1

        await backend.start()
        again = await backend.execute("uptime")

        assert again.exit_code == 0
        assert len(connector.calls) == 2
        await backend.close()

    @pytest.mark.asyncio
    async def test_output_truncated(self, remote_config):
        connector = FakeConnector(shell_responder({"cat big": "x" * 100 + "\n"}))
        backend = RemoteShellBackend(remote_config, max_output_bytes=10, connect=connector)

        result = await backend.execute("cat big")

        assert result.truncated is True
        assert result.stdout.startswith("xxxxxxxxxx\n")
        await backend.close()

    @pytest.mark.asyncio
    async def test_read_file_relative_to_workdir(self, remote_config):
        sftp = FakeSFTP(files={"/srv/app/values.yaml": b"replicas: 3\n"})
        backend = RemoteShellBackend(remote_config, connect=FakeConnector(sftp=sftp))

        data = await backend.read_file("values.yaml")

        assert data == b"replicas: 3\n"
        assert sftp.opened == ["/srv/app/values.yaml"]
        await backend.close()

    @pytest.mark.asyncio
    async def test_read_missing_raises(self, remote_config):
        backend = RemoteShellBackend(remote_config, connect=FakeConnector())

        with pytest.raises(BackendError, match="nope"):
            await backend.read_file("/etc/nope")
        await backend.close()

    @pytest.mark.asyncio
    async def test_list_dir_filters_dot_entries(self, remote_config):
        sftp = FakeSFTP(dirs={"/var/log": [".", "..", "syslog", "auth.log"]})
        backend = RemoteShellBackend(remote_config, connect=FakeConnector(sftp=sftp))

        assert await backend.list_dir("/var/log") == ["auth.log", "syslog"]
        await backend.close()

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, remote_config):
        connector = FakeConnector()
        backend = RemoteShellBackend(remote_config, connect=connector)
        await backend.start()

        await backend.close()
        await backend.close()

        assert connector.connections[0].closed is True
        assert connector.sftp.exited is True
        assert backend.connected is False

    def test_describe(self, remote_config):
        backend = RemoteShellBackend(remote_config, connect=FakeConnector())

        assert backend.describe() == {
            "kind": "remote",
            "target": "sre@bastion:2222",
            "workdir": "/srv/app",
            "connected": False,
        }


class TestRemoteTarget:
    """Tests for parsing user@host:port targets."""

    @pytest.mark.parametrize("text,expected", [
        ("bastion", RemoteTarget("bastion", "root", 22)),
        ("sre@bastion", RemoteTarget("bastion", "sre", 22)),
        ("sre@10.0.0.5:2222", RemoteTarget("10.0.0.5", "sre", 2222)),
        ("node-1:2200", RemoteTarget("node-1", "root", 2200)),
    ])
    def test_parse(self, text, expected):
        assert RemoteTarget.parse(text) == expected

    @pytest.mark.parametrize("text", ["", "sre@", "host:ssh"])
    def test_parse_invalid(self, text):
        with pytest.raises(ValueError):
            RemoteTarget.parse(text)

    def test_str(self):
        assert str(RemoteTarget("bastion", "sre", 2222)) == "sre@bastion:2222"
