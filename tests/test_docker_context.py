from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from sessiondock.docker.cli import DockerCli, DockerContextHandle, DockerInvocation
from sessiondock.docker.context import DockerContextManager, docker_ssh_options, local_endpoint, ssh_endpoint
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.progress import ProgressLog
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.runtime.transport import LocalTransport

Handler = Callable[[list[str]], subprocess.CompletedProcess]


def _cp(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class _Recorder:
    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.calls: list[list[str]] = []
        self.envs: list[object] = []

    def __call__(self, cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        self.calls.append(cmd)
        self.envs.append(kwargs.get("env"))
        return self.handler(cmd)

    def subcommands(self) -> list[tuple[str, ...]]:
        return [tuple(call[1:3]) for call in self.calls]


def _remote_target() -> ExecutionTarget:
    return ExecutionTarget(
        kind="remote",
        host="hpc.example.org",
        user="alice",
        port=2222,
        alias="hpc",
        key_path=Path("/keys/id_ed25519_alice"),
    )


def test_endpoints() -> None:
    assert local_endpoint("Linux") == "unix:///var/run/docker.sock"
    assert local_endpoint("Windows") == "npipe:////./pipe/docker_engine"
    assert ssh_endpoint(_remote_target()) == "ssh://hpc"
    assert ssh_endpoint(_remote_target(), direct=True) == "ssh://alice@hpc.example.org:2222"


def test_docker_ssh_options_pin_the_managed_key() -> None:
    options = docker_ssh_options("/keys/id")
    assert options.startswith("-i /keys/id -o IdentitiesOnly=yes")
    assert "BatchMode=yes" in options


def test_local_context_is_created_selected_and_checked() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if cmd[1:3] == ["context", "inspect"]:
            return _cp(1, "", "context not found")
        if "version" in cmd:
            return _cp(0, "27.1.1\n")
        return _cp(0)

    recorder = _Recorder(handler)
    progress = ProgressLog()
    manager = DockerContextManager(local=LocalTransport(runner=recorder), system_name="Linux", progress=progress)

    handle = manager.ensure_context(ExecutionTarget(kind="local"))

    assert handle == DockerContextHandle(name="sessiondock-local", endpoint="unix:///var/run/docker.sock")
    assert manager.current == handle
    assert recorder.subcommands() == [
        ("context", "inspect"),
        ("context", "create"),
        ("context", "use"),
        ("--context", "sessiondock-local"),
    ]
    assert "host=unix:///var/run/docker.sock" in recorder.calls[1]
    assert progress.states_for("docker-context") == ["started", "success"]


def test_matching_context_is_reused() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if cmd[1:3] == ["context", "inspect"]:
            return _cp(0, "unix:///var/run/docker.sock\n")
        return _cp(0, "27.1.1")

    recorder = _Recorder(handler)
    DockerContextManager(local=LocalTransport(runner=recorder), system_name="Linux").ensure_context(
        ExecutionTarget(kind="local")
    )

    assert ("context", "create") not in recorder.subcommands()
    assert ("context", "rm") not in recorder.subcommands()


def test_unreachable_local_engine_is_fatal() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if "version" in cmd:
            return _cp(1, "", "Cannot connect to the Docker daemon")
        return _cp(0, "unix:///var/run/docker.sock")

    manager = DockerContextManager(local=LocalTransport(runner=_Recorder(handler)), system_name="Linux")

    with pytest.raises(SessionDockError) as exc_info:
        manager.ensure_context(ExecutionTarget(kind="local"))

    assert exc_info.value.code == ExitCode.DOCKER_ERROR
    assert "Cannot connect" in exc_info.value.hint


def test_remote_context_passes_key_options_to_docker() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if cmd[1:3] == ["context", "inspect"]:
            return _cp(0, "ssh://hpc")
        return _cp(0, "27.1.1")

    recorder = _Recorder(handler)
    handle = DockerContextManager(local=LocalTransport(runner=recorder)).ensure_context(_remote_target())

    assert handle.name == "sessiondock-remote"
    assert handle.remote is True
    assert handle.invocation == DockerInvocation.CONTEXT
    check_env = recorder.envs[-1]
    assert isinstance(check_env, dict)
    assert "-i /keys/id_ed25519_alice" in check_env["DOCKER_SSH_OPTS"]


def test_failed_alias_check_retries_with_direct_endpoint() -> None:
    checks = iter([_cp(1, "", "ssh: Could not resolve hostname hpc"), _cp(0, "27.1.1")])

    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if cmd[1:3] == ["context", "inspect"]:
            return _cp(0, "ssh://hpc")
        if "version" in cmd:
            return next(checks)
        return _cp(0)

    recorder = _Recorder(handler)
    handle = DockerContextManager(local=LocalTransport(runner=recorder)).ensure_context(_remote_target())

    assert handle.endpoint == "ssh://alice@hpc.example.org:2222"
    assert ("context", "update") in recorder.subcommands()


def test_context_check_failure_falls_back_to_direct_ssh() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if cmd[1:3] == ["context", "inspect"]:
            return _cp(0, "ssh://hpc")
        if "version" in cmd:
            return _cp(1, "", "Permission denied (publickey)")
        return _cp(0)

    remote_calls: list[list[str]] = []

    def remote_runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        remote_calls.append(cmd)
        return _cp(0, "27.1.1")

    remote = LocalTransport(runner=remote_runner)
    manager = DockerContextManager(local=LocalTransport(runner=_Recorder(handler)))

    handle = manager.ensure_context(_remote_target(), remote=remote)

    assert handle.invocation == DockerInvocation.DIRECT_SSH
    assert remote_calls == [["docker", "version", "--format", "{{.Server.Version}}"]]
    cli = manager.cli(handle, _remote_target(), remote=remote)
    assert cli.command(["ps"]) == ["docker", "ps"]


def test_remote_engine_unreachable_without_fallback_transport() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if "version" in cmd:
            return _cp(1, "", "connection refused")
        return _cp(0, "ssh://hpc")

    manager = DockerContextManager(local=LocalTransport(runner=_Recorder(handler)))

    with pytest.raises(SessionDockError, match="not reachable"):
        manager.ensure_context(_remote_target())


def test_stale_context_that_cannot_be_removed_is_renamed_once() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if cmd[1:3] == ["context", "inspect"]:
            return _cp(1, "", "not found") if cmd[3].endswith("-2") else _cp(0, "tcp://old:2375")
        if cmd[1:3] == ["context", "rm"]:
            return _cp(1, "", "context is in use")
        return _cp(0, "27.1.1")

    recorder = _Recorder(handler)
    progress = ProgressLog()
    handle = DockerContextManager(
        local=LocalTransport(runner=recorder),
        system_name="Linux",
        progress=progress,
    ).ensure_context(ExecutionTarget(kind="local"))

    assert handle.name == "sessiondock-local-2"
    assert "warning" in progress.states_for("docker-context")


def test_renamed_context_failing_again_is_fatal() -> None:
    def handler(cmd: list[str]) -> subprocess.CompletedProcess:
        if cmd[1:3] == ["context", "inspect"]:
            return _cp(0, "tcp://old:2375")
        if cmd[1:3] == ["context", "rm"]:
            return _cp(1, "", "context is in use")
        return _cp(0)

    manager = DockerContextManager(local=LocalTransport(runner=_Recorder(handler)), system_name="Linux")

    with pytest.raises(SessionDockError, match="Could not replace docker context sessiondock-local-2"):
        manager.ensure_context(ExecutionTarget(kind="local"))


def test_docker_cli_routes_by_invocation() -> None:
    local_calls: list[list[str]] = []

    def local_runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        local_calls.append(cmd)
        return _cp(1, "", "boom")

    cli = DockerCli(DockerContextHandle(name="ctx", endpoint="unix:///x"), local=LocalTransport(runner=local_runner))

    with pytest.raises(SessionDockError) as exc_info:
        cli.check(["ps"], message="docker ps failed")

    assert local_calls == [["docker", "--context", "ctx", "ps"]]
    assert exc_info.value.hint == "boom"

    with pytest.raises(SessionDockError):
        DockerCli(
            DockerContextHandle(name="ctx", endpoint="ssh://h", invocation=DockerInvocation.DIRECT_SSH),
            local=LocalTransport(),
        )
