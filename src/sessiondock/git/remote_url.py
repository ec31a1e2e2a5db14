"""Remote URL classification and HTTPS to SSH rewriting."""

from __future__ import annotations

from sessiondock.constants import HTTPS_REMOTE_PATTERN, SCP_REMOTE_PATTERN


def is_https_url(url: str) -> bool:
    return HTTPS_REMOTE_PATTERN.match(url.strip()) is not None


def is_ssh_url(url: str) -> bool:
    value = url.strip()
    if value.startswith("ssh://"):
        return True
    return SCP_REMOTE_PATTERN.match(value) is not None


def https_to_ssh(url: str) -> str | None:
    """``https://github.com/owner/repo(.git)`` -> ``git@github.com:owner/repo.git``."""
    match = HTTPS_REMOTE_PATTERN.match(url.strip())
    if match is None:
        return None
    path = match.group("path").strip("/")
    if not path:
        return None
    return f"git@{match.group('host')}:{path}.git"
