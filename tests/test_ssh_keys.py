from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.runtime.transport import LocalTransport
from sessiondock.ssh.keys import ensure_keypair, keypair_for_user, merge_authorized_key


def _cp(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_keypair_paths_are_scoped_per_user(tmp_path: Path) -> None:
    keypair = keypair_for_user("dr alice/x", directory=tmp_path)

    assert keypair.private_key == tmp_path / "id_ed25519_dr-alice-x"
    assert keypair.public_key.name == "id_ed25519_dr-alice-x.pub"
    assert keypair.comment == "dr-alice-x@sessiondock"
    assert keypair.known_hosts == tmp_path.parent / "known_hosts"


def test_existing_keypair_is_reused_without_keygen(tmp_path: Path) -> None:
    keypair = keypair_for_user("alice", directory=tmp_path)
    keypair.private_key.write_text("PRIVATE", encoding="utf-8")
    keypair.public_key.write_text("ssh-ed25519 AAAA alice@sessiondock\n", encoding="utf-8")

    def runner(*_: object, **__: object) -> subprocess.CompletedProcess:
        raise AssertionError("ssh-keygen must not run for an existing key")

    assert ensure_keypair(keypair, transport=LocalTransport(runner=runner)) is False
    assert keypair.public_key_text() == "ssh-ed25519 AAAA alice@sessiondock"


def test_missing_keypair_runs_non_interactive_keygen(tmp_path: Path) -> None:
    keypair = keypair_for_user("alice", directory=tmp_path / "keys")
    seen: dict[str, object] = {}

    def runner(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        seen["cmd"] = cmd
        seen["input"] = kwargs["input"]
        keypair.private_key.write_text("PRIVATE", encoding="utf-8")
        keypair.public_key.write_text("ssh-ed25519 AAAA", encoding="utf-8")
        return _cp(0)

    assert ensure_keypair(keypair, transport=LocalTransport(runner=runner)) is True
    assert seen["cmd"] == [
        "ssh-keygen",
        "-t",
        "ed25519",
        "-N",
        "",
        "-C",
        "alice@sessiondock",
        "-f",
        str(keypair.private_key),
        "-q",
    ]
    assert seen["input"] == "n\n"


def test_failed_keygen_is_fatal(tmp_path: Path) -> None:
    keypair = keypair_for_user("alice", directory=tmp_path)

    transport = LocalTransport(runner=lambda *a, **k: _cp(1, "", "ssh-keygen: unknown key type"))

    with pytest.raises(SessionDockError) as exc_info:
        ensure_keypair(keypair, transport=transport)

    assert exc_info.value.code == ExitCode.SSH_ERROR
    assert "unknown key type" in exc_info.value.hint


def test_merge_authorized_key_appends_once() -> None:
    merged, changed = merge_authorized_key("ssh-rsa OTHER", "ssh-ed25519 AAAA alice@sessiondock\n")
    assert changed is True
    assert merged == "ssh-rsa OTHER\nssh-ed25519 AAAA alice@sessiondock\n"

    again, changed_again = merge_authorized_key(merged, "ssh-ed25519 AAAA alice@sessiondock")
    assert changed_again is False
    assert again == merged


def test_merge_authorized_key_into_empty_file() -> None:
    assert merge_authorized_key("", "ssh-ed25519 AAAA") == ("ssh-ed25519 AAAA\n", True)
