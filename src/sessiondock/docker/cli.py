"""Docker CLI invocation through a context or directly over SSH."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from sessiondock.constants import DOCKER_COMMAND_TIMEOUT_SECONDS
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.runtime.transport import RuntimeResult, Transport
from sessiondock.security import command_for_log, truncate_log

logger = py_logging.getLogger(__name__)


class DockerInvocation(str, Enum):
    CONTEXT = "context"
    DIRECT_SSH = "direct-ssh"


@dataclass(frozen=True)
class DockerContextHandle:
    name: str
    endpoint: str
    invocation: DockerInvocation = DockerInvocation.CONTEXT
    remote: bool = False


class DockerCli:
    """Runs docker argument lists the way the context handle says to."""

    def __init__(
        self,
        handle: DockerContextHandle,
        *,
        local: Transport,
        remote: Transport | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if handle.invocation == DockerInvocation.DIRECT_SSH and remote is None:
            raise SessionDockError(
                "Direct SSH docker invocation needs a remote transport.",
                code=ExitCode.VALIDATION_ERROR,
            )
        self.handle = handle
        self.local = local
        self.remote = remote
        self.env = dict(env or {})

    def command(self, args: Sequence[str]) -> list[str]:
        if self.handle.invocation == DockerInvocation.DIRECT_SSH:
            return ["docker", *args]
        return ["docker", "--context", self.handle.name, *args]

    def run(
        self,
        args: Sequence[str],
        *,
        timeout_seconds: float = DOCKER_COMMAND_TIMEOUT_SECONDS,
        step: str = "docker",
    ) -> RuntimeResult:
        command = self.command(args)
        logger.debug("step=%s docker=%s", step, command_for_log(command))
        if self.handle.invocation == DockerInvocation.DIRECT_SSH:
            assert self.remote is not None
            return self.remote.run(command, timeout_seconds=timeout_seconds, step=step)
        return self.local.run(command, timeout_seconds=timeout_seconds, env=self.env or None, step=step)

    def check(
        self,
        args: Sequence[str],
        *,
        message: str,
        timeout_seconds: float = DOCKER_COMMAND_TIMEOUT_SECONDS,
        step: str = "docker",
    ) -> RuntimeResult:
        """Run and raise with docker's own output when the exit code is non-zero."""
        result = self.run(args, timeout_seconds=timeout_seconds, step=step)
        if result.ok:
            return result
        logger.error("step=%s failed exit=%s detail=%s", step, result.returncode, truncate_log(result.detail))
        raise SessionDockError(
            message,
            code=ExitCode.DOCKER_ERROR,
            hint=result.detail or f"docker exited with code {result.returncode}.",
        )
