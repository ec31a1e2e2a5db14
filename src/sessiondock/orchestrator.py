"""Core API called by the presentation layer: trust, repository pick, start, stop."""

from __future__ import annotations

import logging as py_logging
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from sessiondock.config import AppConfig
from sessiondock.constants import MountMode
from sessiondock.docker.cli import DockerCli, DockerContextHandle, DockerInvocation
from sessiondock.docker.containers import ContainerLifecycleManager, StopOutcome, container_name, volume_name
from sessiondock.docker.context import DockerContextManager
from sessiondock.docker.images import ensure_image
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.git.reconciler import CommitPrompt, GitReconciler, PushPrompt, ReconcileResult, ReconcileStatus
from sessiondock.progress import ProgressLog
from sessiondock.runtime.channel import PasswordChannel, resolve_endpoint
from sessiondock.runtime.target import ExecutionTarget, local_user_name, require_tools, target_from_config
from sessiondock.runtime.transport import (
    LocalTransport,
    RemoteTransport,
    Transport,
    canonical_path,
    remote_path_expr,
    transport_for,
)
from sessiondock.runtime.worker import Runner
from sessiondock.session import Session, SessionState, key_mount_for
from sessiondock.ssh.bootstrap import (
    BootstrapResult,
    CredentialPrompt,
    PublishedKeypair,
    SshTrustBootstrapper,
    publish_keypair,
)
from sessiondock.ssh.installers import KeyInstaller
from sessiondock.ssh.keys import Keypair, keypair_for_user
from sessiondock.workspace.descriptor import resolve_all
from sessiondock.workspace.repo_discovery import RepositoryReference, local_repository, scan_remote_repositories

logger = py_logging.getLogger(__name__)

_REMOTE_REPO_GIT = "SESSIONDOCK_REPO_GIT"
_REMOTE_REPO_DIR = "SESSIONDOCK_REPO_DIR"


class ResultStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionRequest(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    repo_path: str
    user: str = ""
    port: int | None = Field(default=None, ge=1, le=65535)
    mount_mode: MountMode | None = None
    pull: bool = False


@dataclass
class SessionResult:
    status: ResultStatus
    session: Session | None = None
    url: str = ""
    error: str = ""
    hint: str = ""
    code: ExitCode = ExitCode.SUCCESS
    other_sessions: list[str] = field(default_factory=list)


@dataclass
class StopResult:
    status: ResultStatus
    outcome: StopOutcome | None = None
    reconcile: ReconcileResult | None = None
    error: str = ""
    hint: str = ""
    code: ExitCode = ExitCode.SUCCESS


@dataclass
class OrchestratorContext:
    """State shared by one workflow instance; passed to every core call."""

    config: AppConfig
    target: ExecutionTarget
    keypair: Keypair
    local: Transport
    transport: Transport
    progress: ProgressLog = field(default_factory=ProgressLog)
    trust: BootstrapResult | None = None
    published: PublishedKeypair | None = None
    docker_handle: DockerContextHandle | None = None
    runner: Runner | None = None
    installers: list[KeyInstaller] | None = None
    system_name: str | None = None
    sleep: Callable[[float], None] = time.sleep
    which: Callable[[str], str | None] = shutil.which
    editor_launcher: Callable[..., object] = subprocess.Popen


def build_context(
    config: AppConfig,
    *,
    runner: Runner | None = None,
    progress: ProgressLog | None = None,
    key_directory: Path | None = None,
    verbose_sink: Callable[[str], None] | None = None,
    **overrides: object,
) -> OrchestratorContext:
    user = config.remote_user.strip() or local_user_name()
    keypair = keypair_for_user(user, directory=key_directory)
    target = target_from_config(config, key_path=keypair.private_key)
    local = LocalTransport(runner=runner, verbose_sink=verbose_sink)
    transport = transport_for(target, runner=runner, verbose_sink=verbose_sink) if target.is_remote else local
    logger.debug("Built orchestrator context target=%s key=%s", target.describe(), keypair.private_key)
    return OrchestratorContext(
        config=config,
        target=target,
        keypair=keypair,
        local=local,
        transport=transport,
        progress=progress or ProgressLog(sink=verbose_sink),
        runner=runner,
        **overrides,  # type: ignore[arg-type]
    )


def _failed(exc: SessionDockError) -> SessionResult:
    return SessionResult(status=ResultStatus.FAILED, error=exc.message, hint=exc.hint, code=exc.code)


def bootstrap_trust(ctx: OrchestratorContext, credential_prompt: CredentialPrompt) -> BootstrapResult:
    """Make key login to the target work and wire the transport to the outcome."""
    bootstrapper = SshTrustBootstrapper(
        ctx.keypair,
        installers=ctx.installers,
        local=ctx.local,
        sleep=ctx.sleep,
        progress=ctx.progress,
    )
    result = bootstrapper.run(ctx.target, credential_prompt)
    ctx.trust = result
    if not ctx.target.is_remote or not result.usable:
        return result

    if result.password_fallback:
        endpoint = resolve_endpoint(ctx.target)
        channel = PasswordChannel(
            host=endpoint.host,
            user=endpoint.user,
            password=result.password,
            port=endpoint.port,
        )
        ctx.transport = RemoteTransport(ctx.target, password_channel=channel, runner=ctx.runner)
        logger.warning("Remote commands use password authentication target=%s", ctx.target.describe())

    ctx.progress.record_started("ssh-publish", "Publishing session key to the target")
    ctx.published = publish_keypair(ctx.transport, ctx.keypair)
    ctx.progress.record_success("ssh-publish", ctx.published.private_key)
    return result


def _remote_repository(ctx: OrchestratorContext, path: str) -> RepositoryReference:
    assert isinstance(ctx.transport, RemoteTransport)
    expanded = ctx.transport.expand_user(path)
    quoted = remote_path_expr(expanded)
    git_dir = remote_path_expr(f"{expanded.rstrip('/')}/.git")
    result = ctx.transport.run_script(
        f"if [ -e {git_dir} ]; then echo {_REMOTE_REPO_GIT}; "
        f"elif [ -d {quoted} ]; then echo {_REMOTE_REPO_DIR}; fi",
        step="repo-check",
    )
    if _REMOTE_REPO_GIT in result.stdout:
        return RepositoryReference(path=expanded, is_git_repo=True)
    if _REMOTE_REPO_DIR in result.stdout:
        return RepositoryReference(path=expanded, is_git_repo=False)
    raise SessionDockError(
        f"Repository folder does not exist on {ctx.target.describe()}: {path}",
        code=ExitCode.VALIDATION_ERROR,
        hint=result.detail or "Pick an existing folder on the remote host.",
    )


def select_repository(ctx: OrchestratorContext, local_path: str | None = None) -> list[RepositoryReference]:
    """Candidate repositories: a remote scan, or the single folder picked locally."""
    if not ctx.target.is_remote:
        if not local_path:
            raise SessionDockError(
                "No repository folder selected.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Pick a local repository folder.",
            )
        return [local_repository(local_path)]
    if local_path:
        return [_remote_repository(ctx, local_path)]
    assert isinstance(ctx.transport, RemoteTransport)
    return scan_remote_repositories(ctx.transport, ctx.config.remote_repos_root)


def _docker_cli(ctx: OrchestratorContext, manager: DockerContextManager, handle: DockerContextHandle) -> DockerCli:
    remote = ctx.transport if ctx.target.is_remote else None
    return manager.cli(handle, ctx.target, remote=remote)


def _repository(ctx: OrchestratorContext, path: str) -> RepositoryReference:
    if ctx.target.is_remote:
        return _remote_repository(ctx, path)
    return local_repository(path)


def _directories(ctx: OrchestratorContext, repo: RepositoryReference) -> dict[str, str]:
    descriptor_path = ctx.transport.path_join(repo.path, ctx.config.descriptor_name)
    return resolve_all(descriptor_path, ctx.config.path_keys, repo.path, transport=ctx.transport)


def _git_key_path(ctx: OrchestratorContext) -> str:
    if ctx.target.is_remote:
        return ctx.published.private_key if ctx.published else ""
    return str(ctx.keypair.private_key)


def start_session(ctx: OrchestratorContext, request: SessionRequest) -> SessionResult:
    if ctx.target.is_remote and (ctx.trust is None or not ctx.trust.usable):
        return SessionResult(
            status=ResultStatus.FAILED,
            error="SSH access to the remote host is not established.",
            hint="Run the SSH bootstrap before starting a session.",
            code=ExitCode.SSH_ERROR,
        )
    config = ctx.config
    try:
        require_tools(["docker", "ssh"] if ctx.target.is_remote else ["docker"], which=ctx.which)
        repo = _repository(ctx, request.repo_path)

        manager = DockerContextManager(local=ctx.local, system_name=ctx.system_name, progress=ctx.progress)
        remote = ctx.transport if ctx.target.is_remote else None
        handle = manager.ensure_context(ctx.target, remote=remote)
        ctx.docker_handle = handle
        docker = _docker_cli(ctx, manager, handle)

        build_files = ctx.transport if handle.invocation == DockerInvocation.DIRECT_SSH else ctx.local
        ensure_image(
            docker,
            image=config.image,
            build_context=config.build_context,
            dockerfile=config.dockerfile,
            files=build_files,
            progress=ctx.progress,
        )

        directories = _directories(ctx, repo)
        for directory in directories.values():
            ctx.transport.ensure_directory(directory)

        lifecycle = ContainerLifecycleManager(docker, config=config, sleep=ctx.sleep, progress=ctx.progress)
        port = lifecycle.allocate_port(request.port)
        user = request.user.strip() or local_user_name()
        name = container_name(repo.name, user)
        others = [active for active in lifecycle.list_active(user) if active != name]
        if others:
            logger.warning("User %s already has running sessions: %s", user, ", ".join(others))
            ctx.progress.record_warning("session-scan", f"{user} already runs {', '.join(others)}")

        if ctx.target.is_remote:
            key_mount = key_mount_for(ctx.published.private_key, ctx.published.known_hosts) if ctx.published else None
        elif ctx.keypair.exists():
            # Docker creates a missing bind source as a root-owned directory.
            known_hosts = ctx.keypair.known_hosts
            key_mount = key_mount_for(
                canonical_path(str(ctx.keypair.private_key)),
                canonical_path(str(known_hosts)) if known_hosts.is_file() else None,
            )
        else:
            key_mount = None

        session = Session(
            user=user,
            repo=repo,
            target=ctx.target,
            container=name,
            port=port,
            mode=request.mount_mode or config.mount_mode,
            directories=directories,
            key_mount=key_mount,
            password_fallback=bool(ctx.trust and ctx.trust.password_fallback),
            invocation=handle.invocation,
        )
        if repo.is_git_repo:
            reconciler = GitReconciler(ctx.transport, key_path=_git_key_path(ctx), progress=ctx.progress)
            session.git_baseline = reconciler.snapshot(repo.path, pull=request.pull)

        lifecycle.start(session)
    except SessionDockError as exc:
        logger.error("Session start failed code=%s message=%s", int(exc.code), exc.message)
        return _failed(exc)

    logger.info("Session ready container=%s url=%s", session.container, session.url)
    return SessionResult(status=ResultStatus.OK, session=session, url=session.url, other_sessions=others)


def attach_session(ctx: OrchestratorContext, request: SessionRequest) -> Session:
    """Rebuild the session record of a container started by an earlier invocation."""
    repo = _repository(ctx, request.repo_path)
    user = request.user.strip() or local_user_name()
    name = container_name(repo.name, user)
    mode = request.mount_mode or ctx.config.mount_mode
    directories = _directories(ctx, repo)
    volumes = {key: volume_name(name, key) for key in directories} if mode == "volume" else {}
    return Session(
        user=user,
        repo=repo,
        target=ctx.target,
        container=name,
        port=request.port or 0,
        mode=mode,
        state=SessionState.RUNNING,
        directories=directories,
        volumes=volumes,
        password_fallback=bool(ctx.trust and ctx.trust.password_fallback),
    )


def stop_session(
    ctx: OrchestratorContext,
    session: Session,
    commit_prompt: CommitPrompt,
    push_prompt: PushPrompt,
) -> StopResult:
    manager = DockerContextManager(local=ctx.local, system_name=ctx.system_name, progress=ctx.progress)
    try:
        handle = ctx.docker_handle
        if handle is None:
            remote = ctx.transport if ctx.target.is_remote else None
            handle = manager.ensure_context(ctx.target, remote=remote)
            ctx.docker_handle = handle
        docker = _docker_cli(ctx, manager, handle)
        lifecycle = ContainerLifecycleManager(docker, config=ctx.config, sleep=ctx.sleep, progress=ctx.progress)
        outcome = lifecycle.stop(session)
    except SessionDockError as exc:
        logger.error("Session stop failed code=%s message=%s", int(exc.code), exc.message)
        return StopResult(status=ResultStatus.FAILED, error=exc.message, hint=exc.hint, code=exc.code)

    if outcome.kept_volumes:
        return StopResult(
            status=ResultStatus.FAILED,
            outcome=outcome,
            error="Some volumes could not be synced back and were kept.",
            hint=f"Kept volumes: {', '.join(outcome.kept_volumes)}",
            code=ExitCode.DOCKER_ERROR,
        )
    if not session.repo.is_git_repo:
        return StopResult(status=ResultStatus.OK, outcome=outcome)

    reconciler = GitReconciler(
        ctx.transport,
        key_path=_git_key_path(ctx),
        editor=ctx.config.external_editor,
        editor_launcher=ctx.editor_launcher,
        progress=ctx.progress,
    )
    try:
        reconcile = reconciler.detect_and_commit(
            session.repo.path,
            session.git_baseline,
            commit_prompt,
            push_prompt,
            target=ctx.target,
        )
    except SessionDockError as exc:
        logger.error("Git reconcile failed code=%s message=%s", int(exc.code), exc.message)
        return StopResult(status=ResultStatus.FAILED, outcome=outcome, error=exc.message, hint=exc.hint, code=exc.code)

    if reconcile.status == ReconcileStatus.CANCELLED:
        return StopResult(status=ResultStatus.CANCELLED, outcome=outcome, reconcile=reconcile, code=ExitCode.CANCELLED)
    if reconcile.failure is not None:
        return StopResult(
            status=ResultStatus.FAILED,
            outcome=outcome,
            reconcile=reconcile,
            error=f"Push failed ({reconcile.failure.failure.value}).",
            hint=reconcile.failure.hint,
            code=ExitCode.GIT_ERROR,
        )
    return StopResult(status=ResultStatus.OK, outcome=outcome, reconcile=reconcile)
