"""Uniform command and file access on the local host or a remote host over SSH."""

from __future__ import annotations

import logging as py_logging
import os
import posixpath
import shlex
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sessiondock.constants import SSH_COMMAND_TIMEOUT_SECONDS, SSH_CONNECT_TIMEOUT_SECONDS
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.runtime.channel import PasswordChannel
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.runtime.worker import Runner, run_with_deadline
from sessiondock.security import command_for_log, truncate_log

logger = py_logging.getLogger(__name__)

_DIRECTORY_CREATED = "SESSIONDOCK_DIR_CREATED"
_DIRECTORY_EXISTS = "SESSIONDOCK_DIR_EXISTS"


class DirectoryStatus(str, Enum):
    CREATED = "created"
    EXISTS = "exists"


@dataclass
class RuntimeResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        return (self.stderr or self.stdout or "").strip()


def canonical_path(value: str) -> str:
    """Return value with a single ``/`` separator style."""
    raw = value.replace("\\", "/")
    while raw.startswith("//"):
        raw = raw[1:]
    return raw


def ssh_base_options(
    key_path: Path | str | None,
    *,
    batch: bool = True,
    port: int = 22,
    connect_timeout: int = SSH_CONNECT_TIMEOUT_SECONDS,
) -> list[str]:
    options = [
        "-o",
        f"ConnectTimeout={connect_timeout}",
        "-o",
        "StrictHostKeyChecking=accept-new",
    ]
    if batch:
        options += ["-o", "BatchMode=yes"]
    if key_path:
        options += ["-o", "IdentitiesOnly=yes", "-i", str(key_path)]
    if port != 22:
        options += ["-p", str(port)]
    return options


def remote_path_expr(path: str) -> str:
    """Quote a remote path for a POSIX shell while keeping ``~`` expandable."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


class Transport(ABC):
    """Shared contract; see LocalTransport and RemoteTransport."""

    target: ExecutionTarget

    def __init__(
        self,
        *,
        runner: Runner | None = None,
        timeout_seconds: float = SSH_COMMAND_TIMEOUT_SECONDS,
        verbose_sink: Callable[[str], None] | None = None,
    ) -> None:
        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self.verbose_sink = verbose_sink

    @abstractmethod
    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float | None = None,
        env: dict[str, str] | None = None,
        input_text: str | None = None,
        step: str = "command",
    ) -> RuntimeResult:
        ...

    @abstractmethod
    def read_file(self, path: str) -> str | None:
        """Return the file's text, or None when it does not exist."""

    @abstractmethod
    def write_file(self, path: str, content: str, *, mode: int = 0o600) -> None: ...

    @abstractmethod
    def ensure_directory(self, path: str) -> DirectoryStatus: ...

    @abstractmethod
    def expand_user(self, path: str) -> str: ...

    def path_join(self, *parts: str) -> str:
        cleaned = [canonical_path(part) for part in parts if part]
        if not cleaned:
            return ""
        return posixpath.join(*cleaned)

    def _execute(
        self,
        command: list[str],
        *,
        timeout_seconds: float | None,
        env: dict[str, str] | None,
        input_text: str | None,
        step: str,
    ) -> RuntimeResult:
        completed = run_with_deadline(
            command=command,
            timeout_seconds=timeout_seconds or self.timeout_seconds,
            step=step,
            env=env,
            input_text=input_text,
            runner=self.runner,
            verbose_sink=self.verbose_sink,
        )
        result = RuntimeResult(
            command=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if not result.ok:
            logger.debug(
                "step=%s exit=%s stderr=%s", step, result.returncode, truncate_log(result.stderr, limit=220)
            )
        return result


class LocalTransport(Transport):
    def __init__(
        self,
        target: ExecutionTarget | None = None,
        *,
        runner: Runner | None = None,
        timeout_seconds: float = SSH_COMMAND_TIMEOUT_SECONDS,
        verbose_sink: Callable[[str], None] | None = None,
    ) -> None:
        super().__init__(runner=runner, timeout_seconds=timeout_seconds, verbose_sink=verbose_sink)
        self.target = target or ExecutionTarget(kind="local")

    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float | None = None,
        env: dict[str, str] | None = None,
        input_text: str | None = None,
        step: str = "command",
    ) -> RuntimeResult:
        run_env = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)
        return self._execute(
            list(command),
            timeout_seconds=timeout_seconds,
            env=run_env,
            input_text=input_text,
            step=step,
        )

    def read_file(self, path: str) -> str | None:
        try:
            return Path(self.expand_user(path)).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except IsADirectoryError:
            return None

    def write_file(self, path: str, content: str, *, mode: int = 0o600) -> None:
        target = Path(self.expand_user(path))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        try:
            target.chmod(mode)
        except OSError:
            logger.debug("chmod not supported for %s", target)

    def ensure_directory(self, path: str) -> DirectoryStatus:
        target = Path(self.expand_user(path))
        if target.is_dir():
            return DirectoryStatus.EXISTS
        try:
            target.mkdir(parents=True, exist_ok=False)
        except FileExistsError as exc:
            raise SessionDockError(
                f"Path exists but is not a directory: {path}",
                code=ExitCode.RUNTIME_ERROR,
                hint="Remove or rename the file and retry.",
            ) from exc
        except OSError as exc:
            raise SessionDockError(
                f"Could not create directory: {path}",
                code=ExitCode.RUNTIME_ERROR,
                hint=str(exc),
            ) from exc
        return DirectoryStatus.CREATED

    def expand_user(self, path: str) -> str:
        return canonical_path(os.path.expanduser(path))


class RemoteTransport(Transport):
    def __init__(
        self,
        target: ExecutionTarget,
        *,
        password_channel: PasswordChannel | None = None,
        runner: Runner | None = None,
        timeout_seconds: float = SSH_COMMAND_TIMEOUT_SECONDS,
        verbose_sink: Callable[[str], None] | None = None,
    ) -> None:
        super().__init__(runner=runner, timeout_seconds=timeout_seconds, verbose_sink=verbose_sink)
        if not target.is_remote:
            raise SessionDockError(
                "RemoteTransport requires a remote execution target.",
                code=ExitCode.VALIDATION_ERROR,
            )
        self.target = target
        self.password_channel = password_channel
        self._home: str | None = None

    def ssh_command(self, remote_command: str) -> list[str]:
        return [
            "ssh",
            *ssh_base_options(self.target.key_path, port=self.target.port),
            self.target.destination,
            remote_command,
        ]

    def run_script(
        self,
        script: str,
        *,
        timeout_seconds: float | None = None,
        input_text: str | None = None,
        step: str = "script",
    ) -> RuntimeResult:
        if self.password_channel is not None:
            logger.debug("step=%s via password channel", step)
            result = self.password_channel.exec(
                script,
                timeout_seconds=timeout_seconds or self.timeout_seconds,
                input_text=input_text,
            )
            return RuntimeResult(
                command=["ssh", self.target.destination, script],
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return self._execute(
            self.ssh_command(script),
            timeout_seconds=timeout_seconds,
            env=None,
            input_text=input_text,
            step=step,
        )

    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float | None = None,
        env: dict[str, str] | None = None,
        input_text: str | None = None,
        step: str = "command",
    ) -> RuntimeResult:
        argv = list(command)
        if env:
            argv = ["env", *(f"{key}={value}" for key, value in sorted(env.items())), *argv]
        script = " ".join(shlex.quote(part) for part in argv)
        logger.debug("step=%s remote=%s command=%s", step, self.target.describe(), command_for_log(argv))
        return self.run_script(script, timeout_seconds=timeout_seconds, input_text=input_text, step=step)

    def read_file(self, path: str) -> str | None:
        result = self.run_script(f"cat -- {remote_path_expr(path)}", step="read-file")
        if not result.ok:
            logger.debug("remote read failed path=%s detail=%s", path, truncate_log(result.detail, limit=200))
            return None
        return result.stdout

    def write_file(self, path: str, content: str, *, mode: int = 0o600) -> None:
        quoted = remote_path_expr(path)
        parent = remote_path_expr(posixpath.dirname(path) or ".")
        script = f"mkdir -p {parent} && cat > {quoted} && chmod {mode:o} {quoted}"
        result = self.run_script(script, input_text=content, step="write-file")
        if not result.ok:
            raise SessionDockError(
                f"Could not write remote file: {path}",
                code=ExitCode.RUNTIME_ERROR,
                hint=result.detail or "Check permissions on the remote host.",
            )

    def ensure_directory(self, path: str) -> DirectoryStatus:
        quoted = remote_path_expr(path)
        script = (
            f"if [ -d {quoted} ]; then echo {_DIRECTORY_EXISTS}; "
            f"else mkdir -p {quoted} && echo {_DIRECTORY_CREATED}; fi"
        )
        result = self.run_script(script, step="ensure-directory")
        output = result.stdout
        if result.ok and _DIRECTORY_EXISTS in output:
            return DirectoryStatus.EXISTS
        if result.ok and _DIRECTORY_CREATED in output:
            return DirectoryStatus.CREATED
        raise SessionDockError(
            f"Could not create remote directory: {path}",
            code=ExitCode.RUNTIME_ERROR,
            hint=result.detail or "Check permissions on the remote host.",
        )

    def home(self) -> str:
        if self._home is not None:
            return self._home
        result = self.run_script('printf "%s" "$HOME"', step="remote-home")
        home = result.stdout.strip()
        if not result.ok or not home.startswith("/"):
            raise SessionDockError(
                "Could not resolve the remote home directory.",
                code=ExitCode.SSH_ERROR,
                hint=result.detail or "Check SSH access to the remote host.",
            )
        self._home = home
        return home

    def expand_user(self, path: str) -> str:
        value = canonical_path(path)
        if value == "~":
            return self.home()
        if value.startswith("~/"):
            return posixpath.join(self.home(), value[2:])
        return value


def transport_for(
    target: ExecutionTarget,
    *,
    password_channel: PasswordChannel | None = None,
    runner: Runner | None = None,
    verbose_sink: Callable[[str], None] | None = None,
) -> Transport:
    if target.is_remote:
        return RemoteTransport(
            target,
            password_channel=password_channel,
            runner=runner,
            verbose_sink=verbose_sink,
        )
    return LocalTransport(target, runner=runner, verbose_sink=verbose_sink)
