"""Per-user SSH keypair management."""

from __future__ import annotations

import logging as py_logging
import re
from dataclasses import dataclass
from pathlib import Path

from sessiondock.constants import KEY_DIRECTORY_NAME, KEYGEN_TIMEOUT_SECONDS
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.runtime.transport import LocalTransport, Transport
from sessiondock.security import truncate_log

logger = py_logging.getLogger(__name__)

_SAFE_USER = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class Keypair:
    private_key: Path
    public_key: Path
    comment: str

    def exists(self) -> bool:
        return self.private_key.is_file() and self.public_key.is_file()

    def public_key_text(self) -> str:
        return self.public_key.read_text(encoding="utf-8").strip()

    @property
    def known_hosts(self) -> Path:
        return self.private_key.parent.parent / "known_hosts"


def default_key_directory() -> Path:
    return Path("~/.ssh").expanduser() / KEY_DIRECTORY_NAME


def keypair_for_user(user: str, *, directory: Path | None = None) -> Keypair:
    safe_user = _SAFE_USER.sub("-", user).strip("-") or "user"
    base = directory or default_key_directory()
    private_key = base / f"id_ed25519_{safe_user}"
    return Keypair(
        private_key=private_key,
        public_key=private_key.with_name(private_key.name + ".pub"),
        comment=f"{safe_user}@sessiondock",
    )


def ensure_keypair(keypair: Keypair, *, transport: Transport | None = None) -> bool:
    """Generate the keypair when absent. Returns True when a key was created."""
    if keypair.exists():
        logger.debug("ssh keypair present path=%s", keypair.private_key)
        return False

    local = transport or LocalTransport()
    keypair.private_key.parent.mkdir(parents=True, exist_ok=True)
    try:
        keypair.private_key.parent.chmod(0o700)
    except OSError:
        logger.debug("chmod not supported for %s", keypair.private_key.parent)

    command = [
        "ssh-keygen",
        "-t",
        "ed25519",
        "-N",
        "",
        "-C",
        keypair.comment,
        "-f",
        str(keypair.private_key),
        "-q",
    ]
    result = local.run(command, timeout_seconds=KEYGEN_TIMEOUT_SECONDS, input_text="n\n", step="ssh-keygen")
    if result.returncode != 0 and not keypair.public_key.exists():
        logger.error("ssh-keygen failed exit=%s stderr=%s", result.returncode, truncate_log(result.stderr))
        raise SessionDockError(
            "Could not generate an SSH key.",
            code=ExitCode.SSH_ERROR,
            hint=result.detail or "Check that OpenSSH (ssh-keygen) is installed.",
        )
    if result.returncode != 0:
        logger.warning("ssh-keygen exited %s but the public key exists; continuing", result.returncode)
    logger.info("Generated ssh keypair path=%s", keypair.private_key)
    return True


def merge_authorized_key(existing: str, public_key: str) -> tuple[str, bool]:
    """Return authorized_keys content containing public_key exactly once.

    The boolean is True when content changed.
    """
    entry = public_key.strip()
    lines = existing.splitlines()
    if any(line.strip() == entry for line in lines):
        return existing, False
    prefix = existing
    if prefix and not prefix.endswith("\n"):
        prefix += "\n"
    return f"{prefix}{entry}\n", True
