"""Docker client context selection for the local engine or a remote one over SSH."""

from __future__ import annotations

import logging as py_logging
from pathlib import Path

from sessiondock.constants import (
    DOCKER_CHECK_TIMEOUT_SECONDS,
    DOCKER_SSH_OPTS_ENV,
    LOCAL_CONTEXT_NAME,
    REMOTE_CONTEXT_NAME,
    UNIX_DOCKER_ENDPOINT,
    WINDOWS_DOCKER_ENDPOINT,
)
from sessiondock.docker.cli import DockerCli, DockerContextHandle, DockerInvocation
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.progress import ProgressLog
from sessiondock.runtime.target import ExecutionTarget, is_windows
from sessiondock.runtime.transport import RuntimeResult, Transport

logger = py_logging.getLogger(__name__)


def local_endpoint(system_name: str | None = None) -> str:
    if is_windows(system_name):
        return WINDOWS_DOCKER_ENDPOINT
    return UNIX_DOCKER_ENDPOINT


def ssh_endpoint(target: ExecutionTarget, *, direct: bool = False) -> str:
    if direct:
        return f"ssh://{target.direct_destination}:{target.port}"
    return f"ssh://{target.destination}"


def docker_ssh_options(key_path: Path | str | None) -> str:
    options = ["-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
    if key_path:
        options = ["-i", str(key_path), "-o", "IdentitiesOnly=yes", *options]
    return " ".join(options)


class DockerContextManager:
    def __init__(
        self,
        *,
        local: Transport,
        system_name: str | None = None,
        progress: ProgressLog | None = None,
    ) -> None:
        self.local = local
        self.system_name = system_name
        self.progress = progress or ProgressLog()
        self.current: DockerContextHandle | None = None

    def _docker(self, args: list[str], *, env: dict[str, str] | None = None, step: str) -> RuntimeResult:
        return self.local.run(["docker", *args], timeout_seconds=DOCKER_CHECK_TIMEOUT_SECONDS, env=env, step=step)

    def _fail(self, message: str, result: RuntimeResult) -> SessionDockError:
        logger.error("%s exit=%s detail=%s", message, result.returncode, result.detail)
        return SessionDockError(
            message,
            code=ExitCode.DOCKER_ERROR,
            hint=result.detail or "Check that Docker is installed and running.",
        )

    def _create(self, name: str, endpoint: str) -> None:
        result = self._docker(
            [
                "context",
                "create",
                name,
                "--description",
                "SessionDock managed context",
                "--docker",
                f"host={endpoint}",
            ],
            step="docker-context-create",
        )
        if not result.ok:
            raise self._fail(f"Could not create docker context {name}.", result)

    def _prepare(self, name: str, endpoint: str, *, allow_rename: bool = True) -> str:
        inspect = self._docker(
            ["context", "inspect", name, "--format", "{{.Endpoints.docker.Host}}"],
            step="docker-context-inspect",
        )
        if inspect.ok:
            current_endpoint = inspect.stdout.strip()
            if current_endpoint == endpoint:
                logger.debug("Reusing docker context name=%s endpoint=%s", name, endpoint)
                return name
            logger.info(
                "Docker context endpoint changed name=%s old=%s new=%s",
                name,
                current_endpoint,
                endpoint,
            )
            removed = self._docker(["context", "rm", "-f", name], step="docker-context-rm")
            if not removed.ok:
                if not allow_rename:
                    raise self._fail(f"Could not replace docker context {name}.", removed)
                renamed = f"{name}-2"
                self.progress.record_warning(
                    "docker-context",
                    f"could not remove stale context {name}; using {renamed}",
                )
                return self._prepare(renamed, endpoint, allow_rename=False)
        self._create(name, endpoint)
        return name

    def _use(self, name: str) -> None:
        result = self._docker(["context", "use", name], step="docker-context-use")
        if not result.ok:
            raise self._fail(f"Could not select docker context {name}.", result)

    def _version_check(self, name: str, env: dict[str, str] | None) -> RuntimeResult:
        try:
            return self._docker(
                ["--context", name, "version", "--format", "{{.Server.Version}}"],
                env=env,
                step="docker-check",
            )
        except SessionDockError as exc:
            logger.warning("docker check did not finish context=%s error=%s", name, exc.message)
            return RuntimeResult(command=[], returncode=124, stdout="", stderr=exc.message)

    def _update_endpoint(self, name: str, endpoint: str) -> bool:
        result = self._docker(
            ["context", "update", name, "--docker", f"host={endpoint}"],
            step="docker-context-update",
        )
        return result.ok

    def ensure_context(
        self,
        target: ExecutionTarget,
        *,
        remote: Transport | None = None,
    ) -> DockerContextHandle:
        self.progress.record_started("docker-context", f"Selecting docker engine for {target.describe()}")
        if not target.is_remote:
            endpoint = local_endpoint(self.system_name)
            name = self._prepare(LOCAL_CONTEXT_NAME, endpoint)
            self._use(name)
            check = self._version_check(name, None)
            if not check.ok:
                self.progress.record_error("docker-context", "local docker engine is not reachable")
                raise SessionDockError(
                    "The local Docker engine is not reachable.",
                    code=ExitCode.DOCKER_ERROR,
                    hint=check.detail or "Start Docker Desktop (or the docker service) and retry.",
                )
            handle = DockerContextHandle(name=name, endpoint=endpoint)
            return self._select(handle)

        env = {DOCKER_SSH_OPTS_ENV: docker_ssh_options(target.key_path)}
        endpoint = ssh_endpoint(target)
        name = self._prepare(REMOTE_CONTEXT_NAME, endpoint)
        self._use(name)
        check = self._version_check(name, env)
        if check.ok:
            return self._select(DockerContextHandle(name=name, endpoint=endpoint, remote=True))

        self.progress.record_warning("docker-context", "ssh context check failed; retrying with direct host")
        direct = ssh_endpoint(target, direct=True)
        if direct != endpoint and self._update_endpoint(name, direct):
            check = self._version_check(name, env)
            if check.ok:
                return self._select(DockerContextHandle(name=name, endpoint=direct, remote=True))

        if remote is None:
            raise SessionDockError(
                "Remote docker engine is not reachable through the docker context.",
                code=ExitCode.DOCKER_ERROR,
                hint=check.detail or "Check that docker is installed on the remote host.",
            )
        direct_check = remote.run(
            ["docker", "version", "--format", "{{.Server.Version}}"],
            timeout_seconds=DOCKER_CHECK_TIMEOUT_SECONDS,
            step="docker-check-ssh",
        )
        if not direct_check.ok:
            self.progress.record_error("docker-context", "remote docker engine is not reachable")
            raise SessionDockError(
                "Remote docker engine is not reachable.",
                code=ExitCode.DOCKER_ERROR,
                hint=direct_check.detail or check.detail or "Check that docker runs on the remote host.",
            )
        self.progress.record_warning(
            "docker-context",
            "docker's ssh transport rejected key-only login; running docker commands over direct ssh",
        )
        handle = DockerContextHandle(
            name=name,
            endpoint=endpoint,
            invocation=DockerInvocation.DIRECT_SSH,
            remote=True,
        )
        return self._select(handle)

    def _select(self, handle: DockerContextHandle) -> DockerContextHandle:
        self.current = handle
        self.progress.record_success(
            "docker-context",
            f"using {handle.name} ({handle.endpoint}) via {handle.invocation.value}",
        )
        logger.info(
            "Docker context selected name=%s endpoint=%s invocation=%s",
            handle.name,
            handle.endpoint,
            handle.invocation.value,
        )
        return handle

    def cli(
        self,
        handle: DockerContextHandle,
        target: ExecutionTarget,
        *,
        remote: Transport | None = None,
    ) -> DockerCli:
        env = {DOCKER_SSH_OPTS_ENV: docker_ssh_options(target.key_path)} if handle.remote else None
        return DockerCli(handle, local=self.local, remote=remote, env=env)
