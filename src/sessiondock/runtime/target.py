"""Execution target model and host platform resolution."""

from __future__ import annotations

import getpass
import platform
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from sessiondock.config import AppConfig
from sessiondock.errors import ExitCode, SessionDockError


@dataclass(frozen=True)
class ExecutionTarget:
    kind: str
    host: str = ""
    user: str = ""
    port: int = 22
    alias: str = ""
    key_path: Path | None = None

    @property
    def is_remote(self) -> bool:
        return self.kind == "remote"

    @property
    def destination(self) -> str:
        """``user@host`` (or the ssh alias) for ssh command lines."""
        if self.alias:
            return self.alias
        if self.user:
            return f"{self.user}@{self.host}"
        return self.host

    @property
    def direct_destination(self) -> str:
        if self.user:
            return f"{self.user}@{self.host}"
        return self.host

    def describe(self) -> str:
        if not self.is_remote:
            return "local"
        return f"{self.direct_destination}:{self.port}"


def is_windows(system_name: str | None = None) -> bool:
    return (system_name or platform.system()) == "Windows"


def local_user_name() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "user"


def require_tools(
    names: list[str],
    *,
    which: Callable[[str], str | None] | None = None,
) -> None:
    which_func = which or shutil.which
    missing = [name for name in names if not which_func(name)]
    if missing:
        raise SessionDockError(
            f"Required command-line tools were not found: {', '.join(missing)}",
            code=ExitCode.CONFIG_ERROR,
            hint="Install the missing tools and ensure they are available in PATH.",
        )


def target_from_config(config: AppConfig, *, key_path: Path | None = None) -> ExecutionTarget:
    if config.target_kind != "remote":
        return ExecutionTarget(kind="local", key_path=key_path)
    host = config.remote_host.strip()
    if not host and not config.ssh_alias.strip():
        raise SessionDockError(
            "Remote target selected without a host.",
            code=ExitCode.CONFIG_ERROR,
            hint="Set remote_host in the config file or SESSIONDOCK_REMOTE_HOST.",
        )
    return ExecutionTarget(
        kind="remote",
        host=host or config.ssh_alias.strip(),
        user=config.remote_user.strip() or local_user_name(),
        port=config.remote_port,
        alias=config.ssh_alias.strip(),
        key_path=key_path,
    )
