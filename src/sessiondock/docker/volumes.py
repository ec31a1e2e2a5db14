"""Copy data into managed volumes before start and back out after stop."""

from __future__ import annotations

import logging as py_logging
import re
from dataclasses import dataclass, field

from sessiondock.constants import DOCKER_SYNC_TIMEOUT_SECONDS
from sessiondock.docker.cli import DockerCli
from sessiondock.errors import SessionDockError
from sessiondock.progress import ProgressLog

logger = py_logging.getLogger(__name__)

# rsync --itemize-changes: first char is the update type, "." means attributes only.
_ITEMIZED_WRITE = re.compile(r"^[<>ch][fLDS]\S*\s+(?P<path>.+)$")
_VOLUME_MOUNT = "/volume"
_SOURCE_MOUNT = "/source"
_DEST_MOUNT = "/dest"


@dataclass(frozen=True)
class SyncResult:
    volume: str
    destination: str
    files_written: int
    changes: list[str] = field(default_factory=list)


def parse_itemized_changes(output: str) -> list[str]:
    """Return the paths rsync actually wrote, skipping directories and attribute-only lines."""
    written: list[str] = []
    for raw_line in output.splitlines():
        match = _ITEMIZED_WRITE.match(raw_line.strip())
        if match:
            written.append(match.group("path"))
    return written


class DataSyncEngine:
    def __init__(
        self,
        docker: DockerCli,
        *,
        uid: int,
        gid: int,
        utility_image: str,
        sync_image: str,
        progress: ProgressLog | None = None,
    ) -> None:
        self.docker = docker
        self.uid = uid
        self.gid = gid
        self.utility_image = utility_image
        self.sync_image = sync_image
        self.progress = progress or ProgressLog()

    def create_volume(self, volume: str) -> None:
        self.docker.check(
            ["volume", "create", volume],
            message=f"Could not create volume {volume}.",
            step="volume-create",
        )

    def populate(self, volume: str, source_dir: str) -> None:
        step = f"volume-populate:{volume}"
        self.progress.record_started(step, f"Copying {source_dir} into {volume}")
        self.create_volume(volume)
        owner = f"{self.uid}:{self.gid}"
        self.docker.check(
            ["run", "--rm", "-v", f"{volume}:{_VOLUME_MOUNT}", self.utility_image, "chown", owner, _VOLUME_MOUNT],
            message=f"Could not set ownership on volume {volume}.",
            step=f"volume-chown:{volume}",
        )
        copy_script = f"cp -a {_SOURCE_MOUNT}/. {_VOLUME_MOUNT}/ && chown -R {owner} {_VOLUME_MOUNT}"
        try:
            self.docker.check(
                [
                    "run",
                    "--rm",
                    "-v",
                    f"{source_dir}:{_SOURCE_MOUNT}:ro",
                    "-v",
                    f"{volume}:{_VOLUME_MOUNT}",
                    self.utility_image,
                    "sh",
                    "-c",
                    copy_script,
                ],
                message=f"Could not copy {source_dir} into volume {volume}.",
                timeout_seconds=DOCKER_SYNC_TIMEOUT_SECONDS,
                step=f"volume-copy:{volume}",
            )
        except SessionDockError as exc:
            self.progress.record_error(step, exc.message)
            raise
        self.progress.record_success(step, "copied")

    def sync_back(self, volume: str, dest_dir: str) -> SyncResult:
        step = f"volume-sync:{volume}"
        self.progress.record_started(step, f"Syncing {volume} back to {dest_dir}")
        try:
            result = self.docker.check(
                [
                    "run",
                    "--rm",
                    "--entrypoint",
                    "rsync",
                    "-v",
                    f"{volume}:{_VOLUME_MOUNT}:ro",
                    "-v",
                    f"{dest_dir}:{_DEST_MOUNT}",
                    self.sync_image,
                    "-rc",
                    "--no-owner",
                    "--no-group",
                    "--no-perms",
                    "--omit-dir-times",
                    "--itemize-changes",
                    f"{_VOLUME_MOUNT}/",
                    f"{_DEST_MOUNT}/",
                ],
                message=f"Could not sync volume {volume} back to {dest_dir}.",
                timeout_seconds=DOCKER_SYNC_TIMEOUT_SECONDS,
                step=step,
            )
        except SessionDockError as exc:
            self.progress.record_error(step, exc.message)
            raise
        changes = parse_itemized_changes(result.stdout)
        self.progress.record_success(step, f"{len(changes)} file(s) updated")
        logger.info("Synced volume=%s dest=%s written=%s", volume, dest_dir, len(changes))
        return SyncResult(volume=volume, destination=dest_dir, files_written=len(changes), changes=changes)

    def remove_volume(self, volume: str) -> bool:
        result = self.docker.run(["volume", "rm", volume], step=f"volume-rm:{volume}")
        if not result.ok:
            logger.warning("Volume removal failed volume=%s detail=%s", volume, result.detail)
            self.progress.record_warning(f"volume-rm:{volume}", result.detail or "removal failed")
        return result.ok
