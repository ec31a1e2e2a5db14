"""Session model shared by the container manager and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from sessiondock.constants import MountMode
from sessiondock.docker.cli import DockerInvocation
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.git.reconciler import GitState
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.workspace.repo_discovery import RepositoryReference


class SessionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.STOPPED: {SessionState.STARTING},
    SessionState.STARTING: {SessionState.RUNNING, SessionState.STOPPED},
    SessionState.RUNNING: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.STOPPED},
}


@dataclass(frozen=True)
class KeyMount:
    """Key material paths as seen by the docker engine host; empty known_hosts is not mounted."""

    private_key: str
    known_hosts: str = ""


@dataclass
class Session:
    user: str
    repo: RepositoryReference
    target: ExecutionTarget
    container: str
    port: int
    mode: MountMode = "bind"
    state: SessionState = SessionState.STOPPED
    directories: dict[str, str] = field(default_factory=dict)
    volumes: dict[str, str] = field(default_factory=dict)
    key_mount: KeyMount | None = None
    password_fallback: bool = False
    invocation: DockerInvocation = DockerInvocation.CONTEXT
    git_baseline: GitState | None = None

    @property
    def url(self) -> str:
        host = self.target.host if self.target.is_remote else "localhost"
        return f"http://{host}:{self.port}"

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SessionDockError(
                f"Session {self.container} cannot move from {self.state.value} to {new_state.value}.",
                code=ExitCode.VALIDATION_ERROR,
            )
        self.state = new_state


def key_mount_for(private_key: Path | str, known_hosts: Path | str | None = None) -> KeyMount:
    hosts = str(known_hosts).replace("\\", "/") if known_hosts else ""
    return KeyMount(private_key=str(private_key).replace("\\", "/"), known_hosts=hosts)
