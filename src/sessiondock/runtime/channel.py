"""Password-authenticated SSH channel backed by paramiko."""

from __future__ import annotations

import logging as py_logging
import socket
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import paramiko

from sessiondock.constants import SSH_CONNECT_TIMEOUT_SECONDS
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.runtime.target import ExecutionTarget

logger = py_logging.getLogger(__name__)

ClientFactory = Callable[[], paramiko.SSHClient]
DEFAULT_SSH_CONFIG = Path("~/.ssh/config")


@dataclass(frozen=True)
class ChannelResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class SshEndpoint:
    host: str
    port: int
    user: str


def resolve_endpoint(target: ExecutionTarget, ssh_config: Path | None = None) -> SshEndpoint:
    """Address paramiko should dial for target.

    The system ssh client resolves aliases itself; paramiko needs the alias
    looked up in ``~/.ssh/config`` first.
    """
    endpoint = SshEndpoint(host=target.host, port=target.port, user=target.user)
    if not target.alias:
        return endpoint
    path = (ssh_config or DEFAULT_SSH_CONFIG).expanduser()
    if not path.is_file():
        return endpoint
    try:
        entry = paramiko.SSHConfig.from_path(str(path)).lookup(target.alias)
    except (OSError, ValueError, paramiko.SSHException) as exc:
        logger.warning("Could not read ssh config path=%s error=%s", path, exc)
        return endpoint
    hostname = entry.get("hostname", "")
    return SshEndpoint(
        host=hostname if hostname and hostname != target.alias else target.host,
        port=int(entry["port"]) if "port" in entry else target.port,
        user=entry.get("user") or target.user,
    )


class PasswordChannel:
    """Runs remote commands over a password-authenticated paramiko client.

    Used only on paths where key-based trust could not be verified.
    """

    def __init__(
        self,
        *,
        host: str,
        user: str,
        password: str,
        port: int = 22,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.host = host
        self.user = user
        self.port = port
        self._password = password
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: paramiko.SSHClient | None = None

    def connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.user,
                password=self._password,
                timeout=SSH_CONNECT_TIMEOUT_SECONDS,
                banner_timeout=SSH_CONNECT_TIMEOUT_SECONDS,
                auth_timeout=SSH_CONNECT_TIMEOUT_SECONDS,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise SessionDockError(
                f"Password authentication failed for {self.user}@{self.host}.",
                code=ExitCode.SSH_ERROR,
                hint="Check the password and retry.",
            ) from exc
        except (paramiko.SSHException, socket.error) as exc:
            client.close()
            raise SessionDockError(
                f"Could not connect to {self.host}:{self.port}.",
                code=ExitCode.SSH_ERROR,
                hint=str(exc) or "Check that the host is reachable.",
            ) from exc
        self._client = client
        return client

    def exec(self, command: str, *, timeout_seconds: float, input_text: str | None = None) -> ChannelResult:
        client = self.connect()
        logger.debug("password-channel exec host=%s", self.host)
        try:
            stdin, stdout, stderr = client.exec_command(command, timeout=timeout_seconds)
            if input_text is not None:
                stdin.write(input_text)
                stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            returncode = stdout.channel.recv_exit_status()
        except (socket.timeout, TimeoutError) as exc:
            self.close()
            raise SessionDockError(
                "Remote command timed out on the password channel.",
                code=ExitCode.RUNTIME_ERROR,
                hint="Check network access to the target and retry.",
            ) from exc
        except paramiko.SSHException as exc:
            self.close()
            raise SessionDockError(
                "Remote command failed on the password channel.",
                code=ExitCode.SSH_ERROR,
                hint=str(exc),
            ) from exc
        return ChannelResult(returncode=returncode, stdout=out, stderr=err)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
