"""Directory lookup in the flat ``key: value`` workspace descriptor."""

from __future__ import annotations

import logging as py_logging
import posixpath
import re

from sessiondock.runtime.transport import Transport, canonical_path

logger = py_logging.getLogger(__name__)

_DRIVE_ROOTED = re.compile(r"^[A-Za-z]:[\\/]")


def descriptor_value(text: str, key: str) -> str | None:
    """Return the value of the first ``key:`` line, without comments or quotes."""
    prefix = f"{key.strip()}:"
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line.startswith(prefix):
            continue
        value = line[len(prefix) :]
        if "#" in value:
            value = value.split("#", 1)[0]
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1].strip()
        return value or None
    return None


def is_absolute(value: str) -> bool:
    return value.startswith(("/", "\\")) or bool(_DRIVE_ROOTED.match(value))


def resolve_value(value: str, base_dir: str) -> str:
    """Absolute values keep their shape; relative ones are joined to base_dir."""
    normalized = canonical_path(value)
    if is_absolute(value):
        return normalized
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return posixpath.normpath(f"{canonical_path(base_dir)}/{normalized}")


def resolve(
    descriptor_path: str,
    key: str,
    base_dir: str,
    *,
    transport: Transport,
) -> str | None:
    text = transport.read_file(descriptor_path)
    if text is None:
        logger.warning("Descriptor not found path=%s", descriptor_path)
        return None
    value = descriptor_value(text, key)
    if value is None:
        logger.warning("Descriptor key missing key=%s path=%s", key, descriptor_path)
        return None
    resolved = resolve_value(value, base_dir)
    logger.debug("Resolved descriptor key=%s value=%s path=%s", key, value, resolved)
    return resolved


def resolve_all(
    descriptor_path: str,
    keys: list[str],
    base_dir: str,
    *,
    transport: Transport,
) -> dict[str, str]:
    """Resolve each key, reading the descriptor once; missing keys are omitted."""
    text = transport.read_file(descriptor_path)
    if text is None:
        logger.warning("Descriptor not found path=%s", descriptor_path)
        return {}
    resolved: dict[str, str] = {}
    for key in keys:
        value = descriptor_value(text, key)
        if value is None:
            logger.warning("Descriptor key missing key=%s path=%s", key, descriptor_path)
            continue
        resolved[key] = resolve_value(value, base_dir)
    return resolved
