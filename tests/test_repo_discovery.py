from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from sessiondock.errors import SessionDockError
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.runtime.transport import RemoteTransport
from sessiondock.workspace.repo_discovery import (
    RepositoryReference,
    local_repository,
    parse_remote_scan,
    scan_remote_repositories,
)


def _init_repo(path: Path) -> None:
    (path / ".git").mkdir(parents=True)


def _cp(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_local_repository_flags_git_checkouts(tmp_path: Path) -> None:
    repo = tmp_path / "modelA"
    _init_repo(repo)
    plain = tmp_path / "scratch"
    plain.mkdir()

    assert local_repository(repo) == RepositoryReference(path=repo.resolve().as_posix(), is_git_repo=True)
    assert local_repository(plain).is_git_repo is False
    assert local_repository(repo).name == "modelA"


def test_local_repository_rejects_missing_folder(tmp_path: Path) -> None:
    with pytest.raises(SessionDockError, match="does not exist"):
        local_repository(tmp_path / "missing")


def test_parse_remote_scan_dedupes_and_sorts() -> None:
    payload = (
        "motd banner\n"
        "SESSIONDOCK_REPO\tgit\t/home/alice/repos/modelB/\n"
        "SESSIONDOCK_REPO\tdir\t/home/alice/repos/Archive/\n"
        "SESSIONDOCK_REPO\tgit\t/home/alice/repos/modelB/\n"
        "SESSIONDOCK_REPO\tbroken\n"
    )

    assert parse_remote_scan(payload) == [
        RepositoryReference(path="/home/alice/repos/Archive", is_git_repo=False),
        RepositoryReference(path="/home/alice/repos/modelB", is_git_repo=True),
    ]


def test_scan_remote_repositories_globs_under_home() -> None:
    scripts: list[str] = []

    def runner(cmd: list[str], **_: object) -> subprocess.CompletedProcess:
        scripts.append(cmd[-1])
        return _cp(0, "SESSIONDOCK_REPO\tgit\t/home/alice/repos/modelA/\n")

    transport = RemoteTransport(ExecutionTarget(kind="remote", host="hpc", user="alice"), runner=runner)
    repos = scan_remote_repositories(transport, "~/repos")

    assert repos == [RepositoryReference(path="/home/alice/repos/modelA", is_git_repo=True)]
    assert 'for d in "$HOME"/repos/*/; do' in scripts[0]


def test_scan_remote_repositories_failure_is_reported() -> None:
    transport = RemoteTransport(
        ExecutionTarget(kind="remote", host="hpc", user="alice"),
        runner=lambda *a, **k: _cp(1, "", "ls: cannot access"),
    )
    with pytest.raises(SessionDockError):
        scan_remote_repositories(transport, "/srv/repos")
