"""XDG config loading/saving."""

from __future__ import annotations

import os
import sys
from contextlib import suppress
from pathlib import Path
from typing import Literal, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from sessiondock.constants import DEFAULT_HOST_PORT

DEFAULT_CONFIG_PATH = Path("~/.config/sessiondock/config.toml").expanduser()
DEFAULT_TARGET_KIND: Literal["local", "remote"] = "local"
DEFAULT_MOUNT_MODE: Literal["bind", "volume"] = "bind"
DEFAULT_IMAGE = "sessiondock-rstudio:latest"
DEFAULT_DESCRIPTOR = "inputs/sim_design.yaml"
DEFAULT_PATH_KEYS = ["output_dir", "synthpop_dir"]
REMOTE_HOST_ENV = "SESSIONDOCK_REMOTE_HOST"

_VALID_TARGET_KINDS = {"local", "remote"}
_VALID_MOUNT_MODES = {"bind", "volume"}
_STRING_FIELDS = (
    "remote_host",
    "remote_user",
    "ssh_alias",
    "remote_repos_root",
    "image",
    "build_context",
    "dockerfile",
    "container_home",
    "descriptor_name",
    "cpu_limit",
    "memory_limit",
    "sync_image",
    "utility_image",
    "external_editor",
)


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    target_kind: Literal["local", "remote"] = DEFAULT_TARGET_KIND
    remote_host: str = ""
    remote_user: str = ""
    remote_port: int = Field(default=22, ge=1, le=65535)
    ssh_alias: str = ""
    remote_repos_root: str = "~/repos"
    image: str = DEFAULT_IMAGE
    build_context: str = ""
    dockerfile: str = "Dockerfile"
    default_port: int = Field(default=DEFAULT_HOST_PORT, ge=1024, le=65535)
    mount_mode: Literal["bind", "volume"] = DEFAULT_MOUNT_MODE
    container_uid: int = Field(default=1000, ge=0)
    container_gid: int = Field(default=1000, ge=0)
    container_home: str = "/home/rstudio"
    descriptor_name: str = DEFAULT_DESCRIPTOR
    path_keys: list[str] = Field(default_factory=lambda: list(DEFAULT_PATH_KEYS))
    high_demand: bool = False
    cpu_limit: str = ""
    memory_limit: str = ""
    sync_image: str = "eeacms/rsync:latest"
    utility_image: str = "alpine:3.20"
    external_editor: str = "code"
    verify_delay_seconds: float = Field(default=3.0, ge=0.0, le=60.0)

    @field_validator("target_kind")
    @classmethod
    def _validate_target_kind(cls, value: str) -> str:
        if value not in _VALID_TARGET_KINDS:
            raise ValueError(f"Invalid target kind: {value}")
        return value

    @field_validator("mount_mode")
    @classmethod
    def _validate_mount_mode(cls, value: str) -> str:
        if value not in _VALID_MOUNT_MODES:
            raise ValueError(f"Invalid mount mode: {value}")
        return value


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_scalar(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _int_in_range(value: object, low: int, high: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and low <= value <= high


def _normalize_path_keys(value: object) -> list[str]:
    if not isinstance(value, list):
        return list(DEFAULT_PATH_KEYS)
    keys: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        key = item.strip().rstrip(":")
        if key and key not in keys:
            keys.append(key)
    return keys or list(DEFAULT_PATH_KEYS)


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    target_kind = raw.get("target_kind", cfg.target_kind)
    if isinstance(target_kind, str) and target_kind in _VALID_TARGET_KINDS:
        cfg.target_kind = cast(Literal["local", "remote"], target_kind)

    mount_mode = raw.get("mount_mode", cfg.mount_mode)
    if isinstance(mount_mode, str) and mount_mode in _VALID_MOUNT_MODES:
        cfg.mount_mode = cast(Literal["bind", "volume"], mount_mode)

    for name in _STRING_FIELDS:
        value = raw.get(name)
        if isinstance(value, str):
            setattr(cfg, name, value.strip())

    remote_port = raw.get("remote_port")
    if _int_in_range(remote_port, 1, 65535):
        cfg.remote_port = cast(int, remote_port)

    default_port = raw.get("default_port")
    if _int_in_range(default_port, 1024, 65535):
        cfg.default_port = cast(int, default_port)

    for name in ("container_uid", "container_gid"):
        value = raw.get(name)
        if _int_in_range(value, 0, 2**31 - 1):
            setattr(cfg, name, value)

    high_demand = raw.get("high_demand", cfg.high_demand)
    if isinstance(high_demand, bool):
        cfg.high_demand = high_demand

    verify_delay = raw.get("verify_delay_seconds")
    if isinstance(verify_delay, (int, float)) and not isinstance(verify_delay, bool):
        if 0.0 <= float(verify_delay) <= 60.0:
            cfg.verify_delay_seconds = float(verify_delay)

    cfg.path_keys = _normalize_path_keys(raw.get("path_keys", cfg.path_keys))

    env_host = os.getenv(REMOTE_HOST_ENV, "").strip()
    if env_host:
        cfg.remote_host = env_host

    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({})
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _sanitize({})
    if not isinstance(raw, dict):
        return _sanitize({})
    return _sanitize(raw)


def save_config(config: AppConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)

    lines = [f"target_kind = {_toml_scalar(config.target_kind)}"]
    for name in _STRING_FIELDS:
        lines.append(f"{name} = {_toml_scalar(getattr(config, name))}")
    lines.extend(
        [
            f"remote_port = {_toml_scalar(config.remote_port)}",
            f"default_port = {_toml_scalar(config.default_port)}",
            f"mount_mode = {_toml_scalar(config.mount_mode)}",
            f"container_uid = {_toml_scalar(config.container_uid)}",
            f"container_gid = {_toml_scalar(config.container_gid)}",
            f"path_keys = {_toml_scalar(list(config.path_keys))}",
            f"high_demand = {_toml_scalar(config.high_demand)}",
            f"verify_delay_seconds = {_toml_scalar(config.verify_delay_seconds)}",
        ]
    )

    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved


def set_remote_host(host: str, user: str = "", path: str | Path | None = None) -> AppConfig:
    config = load_config(path)
    config.remote_host = host.strip()
    if user.strip():
        config.remote_user = user.strip()
    config.target_kind = "remote"
    save_config(config, path)
    return config
