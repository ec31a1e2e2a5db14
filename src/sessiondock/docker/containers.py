"""Per-user session container lifecycle: naming, ports, start, stop."""

from __future__ import annotations

import hashlib
import json
import logging as py_logging
import posixpath
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from sessiondock.config import AppConfig
from sessiondock.constants import CONTAINER_SERVICE_PORT, DOCKER_STOP_GRACE_SECONDS, MAX_PORT
from sessiondock.docker.cli import DockerCli
from sessiondock.docker.volumes import DataSyncEngine, SyncResult
from sessiondock.errors import ExitCode, PortInUseError, SessionDockError
from sessiondock.progress import ProgressLog
from sessiondock.security import truncate_log
from sessiondock.session import Session, SessionState

logger = py_logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9.-]")
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
# Sanitized parts carry this suffix; a raw part that already looks like one is hashed too.
_DIGEST_SUFFIX = re.compile(r"-[0-9a-f]{8}$")
# Matches "0.0.0.0:8787->8787/tcp" and ":::8787->8787/tcp".
_PUBLISHED_PORT = re.compile(r":(?P<host>\d+)->(?P<internal>\d+)/tcp")
_LOG_TAIL_LINES = "200"


class ContainerStatus(str, Enum):
    ABSENT = "absent"
    RUNNING = "running"
    EXITED = "exited"


@dataclass(frozen=True)
class StopOutcome:
    stopped: bool
    was_running: bool
    synced: list[SyncResult] = field(default_factory=list)
    removed_volumes: list[str] = field(default_factory=list)
    kept_volumes: list[str] = field(default_factory=list)


def sanitize_name_part(value: str) -> str:
    """Map a name part onto docker-safe characters without an underscore.

    Parts that change on the way get a digest of the raw value appended, so
    `my_model` and `my-model` stay apart.
    """
    cleaned = _UNSAFE_NAME_CHARS.sub("-", value)
    if value and cleaned == value and not _DIGEST_SUFFIX.search(value):
        return value
    digest = hashlib.sha1(value.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned}-{digest}"


def container_name(repo: str, user: str) -> str:
    return f"{sanitize_name_part(repo)}_{sanitize_name_part(user)}"


def volume_name(container: str, key: str) -> str:
    return f"{container}_{_UNSAFE_KEY_CHARS.sub('-', key) or '-'}"


def parse_published_ports(payload: str, internal_port: int = CONTAINER_SERVICE_PORT) -> set[int]:
    ports: set[int] = set()
    for match in _PUBLISHED_PORT.finditer(payload):
        if int(match.group("internal")) == internal_port:
            ports.add(int(match.group("host")))
    return ports


class ContainerLifecycleManager:
    def __init__(
        self,
        docker: DockerCli,
        *,
        config: AppConfig,
        sync: DataSyncEngine | None = None,
        sleep: Callable[[float], None] = time.sleep,
        progress: ProgressLog | None = None,
    ) -> None:
        self.docker = docker
        self.config = config
        self.progress = progress or ProgressLog()
        self.sync = sync or DataSyncEngine(
            docker,
            uid=config.container_uid,
            gid=config.container_gid,
            utility_image=config.utility_image,
            sync_image=config.sync_image,
            progress=self.progress,
        )
        self.sleep = sleep

    def list_active(self, user: str) -> list[str]:
        result = self.docker.check(
            ["ps", "--format", "{{.Names}}"],
            message="Could not list running containers.",
            step="docker-ps",
        )
        suffix = f"_{sanitize_name_part(user)}"
        return sorted(name.strip() for name in result.stdout.splitlines() if name.strip().endswith(suffix))

    def used_ports(self) -> set[int]:
        result = self.docker.check(
            ["ps", "--format", "{{.Ports}}"],
            message="Could not list published container ports.",
            step="docker-ps-ports",
        )
        return parse_published_ports(result.stdout)

    def allocate_port(self, requested: int | None = None) -> int:
        used = self.used_ports()
        if requested is not None:
            if requested in used:
                raise PortInUseError(requested, used)
            return requested
        port = self.config.default_port
        while port in used:
            port += 1
        if port > MAX_PORT:
            raise SessionDockError(
                "No free host port is left for a new session.",
                code=ExitCode.DOCKER_ERROR,
                hint="Stop an existing session and retry.",
            )
        if port != self.config.default_port:
            logger.info("Default port busy; allocated port=%s", port)
        return port

    def status(self, name: str) -> ContainerStatus:
        result = self.docker.run(["inspect", "-f", "{{.State.Status}}", name], step="docker-inspect")
        if not result.ok:
            return ContainerStatus.ABSENT
        if result.stdout.strip() == "running":
            return ContainerStatus.RUNNING
        return ContainerStatus.EXITED

    def mounted_volumes(self, name: str) -> dict[str, str]:
        """Named volumes mounted by a container, keyed by mount point."""
        result = self.docker.run(["inspect", "-f", "{{json .Mounts}}", name], step="docker-inspect-mounts")
        if not result.ok:
            return {}
        try:
            mounts = json.loads(result.stdout.strip() or "[]") or []
        except json.JSONDecodeError:
            logger.warning("Unreadable mount list name=%s output=%s", name, truncate_log(result.stdout, limit=200))
            return {}
        return {
            mount["Destination"]: mount["Name"]
            for mount in mounts
            if mount.get("Type") == "volume" and mount.get("Name") and mount.get("Destination")
        }

    def adopt_mounts(self, session: Session) -> None:
        """Take mount mode and managed volumes from the container rather than the caller."""
        volumes: dict[str, str] = {}
        for destination, volume in self.mounted_volumes(session.container).items():
            key = posixpath.basename(destination.rstrip("/"))
            if volume == volume_name(session.container, key):
                volumes[key] = volume
        if volumes != session.volumes:
            logger.info("Using mounts of container=%s volumes=%s", session.container, sorted(volumes.values()))
        session.volumes = volumes
        session.mode = "volume" if volumes else "bind"

    def _container_home_path(self, *parts: str) -> str:
        return "/".join([self.config.container_home.rstrip("/"), *parts])

    def run_arguments(self, session: Session) -> list[str]:
        args = [
            "run",
            "-d",
            "--name",
            session.container,
            "-p",
            f"{session.port}:{CONTAINER_SERVICE_PORT}",
            "-e",
            f"USER={session.user}",
            "-e",
            f"USERID={self.config.container_uid}",
            "-e",
            f"GROUPID={self.config.container_gid}",
            "-e",
            f"SESSION_NAME={session.container}",
            "-v",
            f"{session.repo.path}:{self._container_home_path(session.repo.name)}",
        ]
        for key, directory in sorted(session.directories.items()):
            source = session.volumes[key] if session.mode == "volume" else directory
            args.extend(["-v", f"{source}:{self._container_home_path(key)}"])
        if session.key_mount is not None:
            args.extend(["-v", f"{session.key_mount.private_key}:{self._container_home_path('.ssh', 'id_ed25519')}:ro"])
            if session.key_mount.known_hosts:
                args.extend(
                    ["-v", f"{session.key_mount.known_hosts}:{self._container_home_path('.ssh', 'known_hosts')}:ro"]
                )
        if session.target.is_remote and self.config.high_demand:
            if self.config.cpu_limit:
                args.extend(["--cpus", self.config.cpu_limit])
            if self.config.memory_limit:
                args.extend(["--memory", self.config.memory_limit])
        args.append(self.config.image)
        return args

    def _remove_volumes(self, session: Session) -> list[str]:
        return [volume for volume in session.volumes.values() if self.sync.remove_volume(volume)]

    def start(self, session: Session, dirs: dict[str, str] | None = None) -> Session:
        """Start the session container and confirm it survives its first seconds."""
        if dirs is not None:
            session.directories = dict(dirs)
        existing = self.status(session.container)
        if existing == ContainerStatus.RUNNING:
            raise SessionDockError(
                f"Session {session.container} is already running.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Stop the running session before starting it again.",
            )
        if existing == ContainerStatus.EXITED:
            logger.info("Removing stale container name=%s", session.container)
            self.docker.check(
                ["rm", "-f", session.container],
                message=f"Could not remove stale container {session.container}.",
                step="docker-rm",
            )

        session.transition(SessionState.STARTING)
        step = "container-start"
        self.progress.record_started(step, f"Starting {session.container} on port {session.port}")
        try:
            if session.mode == "volume":
                session.volumes = {key: volume_name(session.container, key) for key in session.directories}
                for key, directory in sorted(session.directories.items()):
                    self.sync.populate(session.volumes[key], directory)
            self.docker.check(
                self.run_arguments(session),
                message=f"Could not start container {session.container}.",
                step="docker-run",
            )
            self.sleep(self.config.verify_delay_seconds)
            if self.status(session.container) != ContainerStatus.RUNNING:
                logs = self.docker.run(["logs", "--tail", _LOG_TAIL_LINES, session.container], step="docker-logs")
                self.docker.run(["rm", "-f", session.container], step="docker-rm")
                raise SessionDockError(
                    f"Container {session.container} exited right after start.",
                    code=ExitCode.DOCKER_ERROR,
                    hint=logs.detail or "The container produced no output.",
                )
        except SessionDockError as exc:
            if session.mode == "volume" and session.volumes:
                self._remove_volumes(session)
                session.volumes = {}
            session.transition(SessionState.STOPPED)
            self.progress.record_error(step, exc.message)
            raise

        session.transition(SessionState.RUNNING)
        self.progress.record_success(step, session.url)
        logger.info("Session started container=%s port=%s mode=%s", session.container, session.port, session.mode)
        return session

    def stop(self, session: Session) -> StopOutcome:
        existing = self.status(session.container)
        if existing == ContainerStatus.ABSENT:
            logger.info("Stop requested for absent container name=%s", session.container)
            if session.state != SessionState.STOPPED:
                session.state = SessionState.STOPPED
            return StopOutcome(stopped=False, was_running=False)

        step = "container-stop"
        self.progress.record_started(step, f"Stopping {session.container}")
        self.adopt_mounts(session)
        if session.state == SessionState.RUNNING:
            session.transition(SessionState.STOPPING)
        was_running = existing == ContainerStatus.RUNNING
        if was_running:
            stopped = self.docker.run(
                ["stop", "-t", str(DOCKER_STOP_GRACE_SECONDS), session.container],
                timeout_seconds=DOCKER_STOP_GRACE_SECONDS + 30,
                step="docker-stop",
            )
            if not stopped.ok:
                logger.warning(
                    "docker stop failed; killing name=%s detail=%s",
                    session.container,
                    truncate_log(stopped.detail),
                )
                self.progress.record_warning(step, "graceful stop failed; killing container")
                self.docker.run(["kill", session.container], step="docker-kill")
        self.docker.check(
            ["rm", "-f", session.container],
            message=f"Could not remove container {session.container}.",
            step="docker-rm",
        )

        synced: list[SyncResult] = []
        removed: list[str] = []
        kept: list[str] = []
        if session.mode == "volume":
            for key, volume in sorted(session.volumes.items()):
                destination = session.directories.get(key, "")
                if not destination:
                    logger.error("No host folder for volume=%s key=%s; keeping it", volume, key)
                    self.progress.record_warning(step, f"kept {volume}: no host folder for {key}")
                    kept.append(volume)
                    continue
                try:
                    synced.append(self.sync.sync_back(volume, destination))
                except SessionDockError as exc:
                    logger.error("Keeping volume after failed sync volume=%s error=%s", volume, exc.message)
                    self.progress.record_warning(step, f"kept {volume}: {exc.message}")
                    kept.append(volume)
                    continue
                if self.sync.remove_volume(volume):
                    removed.append(volume)
                else:
                    kept.append(volume)
            session.volumes = {key: volume for key, volume in session.volumes.items() if volume in kept}

        session.state = SessionState.STOPPED
        self.progress.record_success(step, f"{session.container} removed")
        return StopOutcome(
            stopped=True,
            was_running=was_running,
            synced=synced,
            removed_volumes=removed,
            kept_volumes=kept,
        )
