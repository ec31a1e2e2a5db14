from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from sessiondock.errors import SessionDockError
from sessiondock.runtime.channel import ChannelResult
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.runtime.transport import (
    DirectoryStatus,
    LocalTransport,
    RemoteTransport,
    Transport,
    canonical_path,
    remote_path_expr,
    ssh_base_options,
    transport_for,
)


def _cp(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _remote_target(**overrides: object) -> ExecutionTarget:
    values: dict[str, object] = {
        "kind": "remote",
        "host": "hpc.example.org",
        "user": "alice",
        "key_path": Path("/home/alice/.ssh/sessiondock/id_ed25519_alice"),
    }
    values.update(overrides)
    return ExecutionTarget(**values)  # type: ignore[arg-type]


class _FakeChannel:
    def __init__(self, result: ChannelResult) -> None:
        self.result = result
        self.commands: list[tuple[str, str | None]] = []

    def exec(self, command: str, *, timeout_seconds: float, input_text: str | None = None) -> ChannelResult:
        self.commands.append((command, input_text))
        return self.result


def test_canonical_path_normalizes_separators() -> None:
    assert canonical_path("C:\\Users\\alice\\repo") == "C:/Users/alice/repo"
    assert canonical_path("//server/share") == "/server/share"


def test_remote_path_expr_keeps_home_expandable() -> None:
    assert remote_path_expr("~") == '"$HOME"'
    assert remote_path_expr("~/my repos") == "\"$HOME\"/'my repos'"
    assert remote_path_expr("/srv/data") == "/srv/data"


def test_ssh_base_options_are_batch_and_key_only() -> None:
    options = ssh_base_options("/k/id", port=2222)
    assert options[:4] == ["-o", "ConnectTimeout=10", "-o", "StrictHostKeyChecking=accept-new"]
    assert "BatchMode=yes" in options
    assert options[options.index("-i") + 1] == "/k/id"
    assert "IdentitiesOnly=yes" in options
    assert options[-2:] == ["-p", "2222"]


def test_remote_run_wraps_command_as_single_ssh_argument() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        calls.append(cmd)
        return _cp(0, "ok\n")

    transport = RemoteTransport(_remote_target(), runner=runner)
    result = transport.run(["docker", "ps", "--format", "{{.Names}}"], env={"DOCKER_HOST": "unix:///x"})

    assert result.ok
    command = calls[0]
    assert command[0] == "ssh"
    assert "BatchMode=yes" in command
    assert "IdentitiesOnly=yes" in command
    assert command[-2] == "alice@hpc.example.org"
    assert command[-1] == "env DOCKER_HOST=unix:///x docker ps --format '{{.Names}}'"


def test_remote_alias_is_used_as_destination() -> None:
    transport = RemoteTransport(_remote_target(alias="hpc"), runner=lambda *a, **k: _cp(0))
    assert transport.ssh_command("true")[-2] == "hpc"


def test_remote_ensure_directory_parses_markers() -> None:
    outputs = iter([_cp(0, "SESSIONDOCK_DIR_CREATED\n"), _cp(0, "SESSIONDOCK_DIR_EXISTS\n"), _cp(1, "", "denied")])

    transport = RemoteTransport(_remote_target(), runner=lambda *a, **k: next(outputs))

    assert transport.ensure_directory("~/out") == DirectoryStatus.CREATED
    assert transport.ensure_directory("~/out") == DirectoryStatus.EXISTS
    with pytest.raises(SessionDockError) as exc_info:
        transport.ensure_directory("/root/out")
    assert exc_info.value.hint == "denied"


def test_remote_read_file_returns_none_when_missing() -> None:
    transport = RemoteTransport(_remote_target(), runner=lambda *a, **k: _cp(1, "", "No such file"))
    assert transport.read_file("~/repo/inputs/sim_design.yaml") is None


def test_remote_write_file_streams_content_on_stdin() -> None:
    seen: dict[str, object] = {}

    def runner(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        seen["script"] = cmd[-1]
        seen["input"] = kwargs["input"]
        return _cp(0)

    RemoteTransport(_remote_target(), runner=runner).write_file("~/.ssh/sessiondock/key", "PRIVATE", mode=0o600)

    assert seen["input"] == "PRIVATE"
    assert "chmod 600" in str(seen["script"])
    assert 'mkdir -p "$HOME"/.ssh/sessiondock' in str(seen["script"])


def test_remote_home_is_cached() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        calls.append(cmd)
        return _cp(0, "/home/alice")

    transport = RemoteTransport(_remote_target(), runner=runner)

    assert transport.expand_user("~/repos") == "/home/alice/repos"
    assert transport.expand_user("~") == "/home/alice"
    assert len(calls) == 1


def test_password_channel_replaces_ssh_subprocess() -> None:
    channel = _FakeChannel(ChannelResult(returncode=0, stdout="hello", stderr=""))

    def runner(*_: object, **__: object) -> subprocess.CompletedProcess:
        raise AssertionError("ssh subprocess must not run in password mode")

    transport = RemoteTransport(_remote_target(), password_channel=channel, runner=runner)  # type: ignore[arg-type]
    result = transport.run(["echo", "hello"])

    assert result.stdout == "hello"
    assert channel.commands == [("echo hello", None)]


def test_remote_transport_rejects_local_target() -> None:
    with pytest.raises(SessionDockError):
        RemoteTransport(ExecutionTarget(kind="local"))


def test_local_transport_file_operations(tmp_path: Path) -> None:
    transport = LocalTransport()
    folder = str(tmp_path / "a" / "b")

    assert transport.ensure_directory(folder) == DirectoryStatus.CREATED
    assert transport.ensure_directory(folder) == DirectoryStatus.EXISTS

    file_path = transport.path_join(folder, "note.txt")
    transport.write_file(file_path, "content")
    assert transport.read_file(file_path) == "content"
    assert transport.read_file(transport.path_join(folder, "missing.txt")) is None


def test_local_transport_reports_file_in_the_way(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(SessionDockError, match="not a directory"):
        LocalTransport().ensure_directory(str(blocker))


def test_local_run_merges_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SESSIONDOCK_TEST_MARKER", "kept")
    seen: dict[str, object] = {}

    def runner(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        seen.update(kwargs)
        return _cp(0)

    LocalTransport(runner=runner).run(["docker", "ps"], env={"DOCKER_SSH_OPTS": "-i key"})

    env = seen["env"]
    assert isinstance(env, dict)
    assert env["SESSIONDOCK_TEST_MARKER"] == "kept"
    assert env["DOCKER_SSH_OPTS"] == "-i key"


def test_transport_for_picks_by_target_kind() -> None:
    assert isinstance(transport_for(ExecutionTarget(kind="local")), LocalTransport)
    assert isinstance(transport_for(_remote_target()), RemoteTransport)


def test_partial_transport_subclass_cannot_be_created() -> None:
    class _ReadOnly(Transport):
        def read_file(self, path: str) -> str | None:
            return None

    with pytest.raises(TypeError):
        _ReadOnly()  # type: ignore[abstract]
