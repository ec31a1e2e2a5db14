"""Public key installation strategies, tried in order until one succeeds."""

from __future__ import annotations

import importlib.util
import logging as py_logging
import shlex
import socket
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import paramiko

from sessiondock.constants import KEY_INSTALL_TIMEOUT_SECONDS, SSH_CONNECT_TIMEOUT_SECONDS
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.runtime.channel import resolve_endpoint
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.runtime.transport import ssh_base_options
from sessiondock.security import mask_secret
from sessiondock.ssh.keys import merge_authorized_key

logger = py_logging.getLogger(__name__)

INSTALL_MARKER = "SESSIONDOCK_KEY_INSTALLED"
_PREPARE_SSH_DIR = (
    'mkdir -p "$HOME" && mkdir -p "$HOME/.ssh" && chmod 700 "$HOME/.ssh" '
    '&& touch "$HOME/.ssh/authorized_keys" && chmod 600 "$HOME/.ssh/authorized_keys"'
)
_PASSWORD_PROMPTS = ("password:", "password for")


class KeyInstaller(Protocol):
    name: str

    def available(self) -> bool: ...

    def install(self, target: ExecutionTarget, password: str, public_key: str) -> None: ...


def authorized_key_script(public_key: str) -> str:
    """Shell script that appends public_key unless an identical line exists."""
    entry = shlex.quote(public_key.strip())
    return (
        f"{_PREPARE_SSH_DIR} && "
        f'(grep -qxF {entry} "$HOME/.ssh/authorized_keys" || '
        f'printf "%s\\n" {entry} >> "$HOME/.ssh/authorized_keys") && echo {INSTALL_MARKER}'
    )


class ParamikoKeyInstaller:
    name = "paramiko"

    def __init__(
        self,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
        ssh_config: Path | None = None,
    ) -> None:
        self._client_factory = client_factory or paramiko.SSHClient
        self._ssh_config = ssh_config

    def available(self) -> bool:
        return True

    def install(self, target: ExecutionTarget, password: str, public_key: str) -> None:
        endpoint = resolve_endpoint(target, self._ssh_config)
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=endpoint.host,
                port=endpoint.port,
                username=endpoint.user,
                password=password,
                timeout=SSH_CONNECT_TIMEOUT_SECONDS,
                auth_timeout=SSH_CONNECT_TIMEOUT_SECONDS,
                allow_agent=False,
                look_for_keys=False,
            )
            _, stdout, stderr = client.exec_command(_PREPARE_SSH_DIR, timeout=KEY_INSTALL_TIMEOUT_SECONDS)
            if stdout.channel.recv_exit_status() != 0:
                detail = stderr.read().decode("utf-8", errors="replace").strip()
                raise SessionDockError(
                    "Could not prepare ~/.ssh on the target.",
                    code=ExitCode.SSH_ERROR,
                    hint=detail or "Check the remote account's home directory permissions.",
                )
            sftp = client.open_sftp()
            try:
                try:
                    with sftp.open(".ssh/authorized_keys", "r") as handle:
                        existing = handle.read().decode("utf-8", errors="replace")
                except FileNotFoundError:
                    existing = ""
                merged, changed = merge_authorized_key(existing, public_key)
                if changed:
                    with sftp.open(".ssh/authorized_keys", "w") as handle:
                        handle.write(merged)
                    sftp.chmod(".ssh/authorized_keys", 0o600)
                    logger.info("Installed public key on %s via paramiko", target.describe())
                else:
                    logger.info("Public key already authorized on %s", target.describe())
            finally:
                sftp.close()
        except paramiko.AuthenticationException as exc:
            raise SessionDockError(
                f"Password authentication failed for {target.direct_destination}.",
                code=ExitCode.SSH_ERROR,
                hint="Check the password and retry.",
            ) from exc
        except (paramiko.SSHException, socket.error) as exc:
            raise SessionDockError(
                "Key installation over paramiko failed.",
                code=ExitCode.SSH_ERROR,
                hint=str(exc) or "Check that the host is reachable.",
            ) from exc
        finally:
            client.close()


PtySpawn = Callable[[list[str]], object]


def _spawn_with_pywinpty(command: list[str]) -> object:
    try:
        from winpty import PtyProcess
    except Exception as exc:
        raise SessionDockError(
            "pywinpty backend is unavailable.",
            code=ExitCode.RUNTIME_ERROR,
            hint="Install pywinpty on Windows to enable terminal-based key installation.",
        ) from exc
    return PtyProcess.spawn(subprocess.list2cmdline(command))


def _read_chunk(process: object) -> str:
    try:
        chunk = process.read(1024)  # type: ignore[attr-defined]
    except EOFError:
        return ""
    if chunk is None:
        return ""
    if isinstance(chunk, bytes):
        return chunk.decode("utf-8", errors="replace")
    return str(chunk)


def _is_alive(process: object) -> bool:
    if hasattr(process, "isalive"):
        try:
            return bool(process.isalive())
        except Exception:
            return False
    return False


class PtyKeyInstaller:
    """Drives the system ssh client through a pseudo terminal to answer the password prompt."""

    name = "pty"

    def __init__(
        self,
        *,
        spawn: PtySpawn | None = None,
        timeout_seconds: float = KEY_INSTALL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._spawn = spawn
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def available(self) -> bool:
        if self._spawn is not None:
            return True
        return importlib.util.find_spec("winpty") is not None

    def build_command(self, target: ExecutionTarget, public_key: str) -> list[str]:
        return [
            "ssh",
            *ssh_base_options(None, batch=False, port=target.port),
            "-o",
            "PubkeyAuthentication=no",
            "-o",
            "PreferredAuthentications=password,keyboard-interactive",
            target.direct_destination,
            authorized_key_script(public_key),
        ]

    def install(self, target: ExecutionTarget, password: str, public_key: str) -> None:
        spawn = self._spawn or _spawn_with_pywinpty
        process = spawn(self.build_command(target, public_key))
        deadline = self._clock() + self.timeout_seconds
        transcript = ""
        password_sent = False
        try:
            while self._clock() < deadline:
                chunk = _read_chunk(process)
                transcript += chunk
                lowered = transcript.lower()
                if INSTALL_MARKER in transcript:
                    logger.info("Installed public key on %s via pty", target.describe())
                    return
                if not password_sent and any(prompt in lowered for prompt in _PASSWORD_PROMPTS):
                    process.write(password + "\r\n")  # type: ignore[attr-defined]
                    password_sent = True
                    transcript = ""
                    continue
                if password_sent and "permission denied" in lowered:
                    raise SessionDockError(
                        f"Password authentication failed for {target.direct_destination}.",
                        code=ExitCode.SSH_ERROR,
                        hint="Check the password and retry.",
                    )
                if not chunk and not _is_alive(process):
                    break
        finally:
            if _is_alive(process) and hasattr(process, "terminate"):
                process.terminate()
        raise SessionDockError(
            "Terminal-based key installation did not complete.",
            code=ExitCode.SSH_ERROR,
            hint=mask_secret(transcript.strip()[-300:], password)
            or "The ssh client produced no output before the deadline.",
        )


def default_installers() -> list[KeyInstaller]:
    return [ParamikoKeyInstaller(), PtyKeyInstaller()]
