"""Repository selection: a folder picked locally or a scan of the remote repos root."""

from __future__ import annotations

import logging as py_logging
import posixpath
from dataclasses import dataclass
from pathlib import Path

from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.runtime.transport import RemoteTransport, canonical_path, remote_path_expr

logger = py_logging.getLogger(__name__)

_REPO_MARKER = "SESSIONDOCK_REPO"


@dataclass(frozen=True)
class RepositoryReference:
    path: str
    is_git_repo: bool

    @property
    def name(self) -> str:
        return posixpath.basename(canonical_path(self.path).rstrip("/"))


def local_repository(path: str | Path) -> RepositoryReference:
    """Validate a folder picked on the local machine."""
    folder = Path(path).expanduser()
    if not folder.is_dir():
        raise SessionDockError(
            f"Repository folder does not exist: {path}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Pick an existing folder.",
        )
    resolved = folder.resolve()
    return RepositoryReference(path=canonical_path(str(resolved)), is_git_repo=(resolved / ".git").exists())


def parse_remote_scan(payload: str) -> list[RepositoryReference]:
    repos: dict[str, RepositoryReference] = {}
    for raw_line in payload.splitlines():
        line = raw_line.strip()
        if not line.startswith(_REPO_MARKER):
            continue
        parts = line.split("\t")
        if len(parts) != 3:
            continue
        _, flag, path = parts
        path = path.strip().rstrip("/")
        if not path:
            continue
        repos[path] = RepositoryReference(path=path, is_git_repo=flag == "git")
    return sorted(repos.values(), key=lambda item: item.path.lower())


def scan_remote_repositories(transport: RemoteTransport, root: str) -> list[RepositoryReference]:
    """List the direct child folders of root on the target, flagging git checkouts."""
    script = (
        f"for d in {remote_path_expr(root.rstrip('/') or '/')}/*/; do "
        '[ -d "$d" ] || continue; '
        f'if [ -e "$d.git" ]; then printf "{_REPO_MARKER}\\tgit\\t%s\\n" "$d"; '
        f'else printf "{_REPO_MARKER}\\tdir\\t%s\\n" "$d"; fi; done'
    )
    result = transport.run_script(script, step="repo-scan")
    if not result.ok:
        raise SessionDockError(
            f"Could not list repositories under {root}.",
            code=ExitCode.RUNTIME_ERROR,
            hint=result.detail or "Check that the folder exists on the remote host.",
        )
    repos = parse_remote_scan(result.stdout)
    logger.debug("Remote scan root=%s found=%s", root, len(repos))
    return repos
