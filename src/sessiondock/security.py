"""Masking of credentials before text reaches logs, progress lines or hints."""

from __future__ import annotations

import shlex

from sessiondock.constants import (
    AUTH_BEARER_PATTERN,
    DEFAULT_LOG_TRUNCATE_LIMIT,
    GH_TOKEN_PATTERN,
    PASSWORD_ENV_PATTERN,
    PRIVATE_KEY_BLOCK_PATTERN,
    TERMINAL_LOG_TRUNCATE_LIMIT,
    URL_CREDENTIAL_PATTERN,
)

_REPLACEMENTS = (
    (PRIVATE_KEY_BLOCK_PATTERN, "<private key>"),
    (AUTH_BEARER_PATTERN, r"\1 ***"),
    (URL_CREDENTIAL_PATTERN, r"\1***:***@"),
    (GH_TOKEN_PATTERN, "***"),
    (PASSWORD_ENV_PATTERN, r"\1=***"),
)


def truncate_log(value: str, limit: int = DEFAULT_LOG_TRUNCATE_LIMIT) -> str:
    value = value.strip()
    if len(value) > limit:
        return value[: max(0, limit - 3)] + "..."
    return value


def sanitize_log_text(value: str, limit: int = DEFAULT_LOG_TRUNCATE_LIMIT) -> str:
    """Mask private keys, tokens, URL credentials and password env values, then truncate."""
    for pattern, replacement in _REPLACEMENTS:
        value = pattern.sub(replacement, value)
    return truncate_log(value, limit)


def sanitize_progress_text(value: str) -> str:
    return sanitize_log_text(value, limit=TERMINAL_LOG_TRUNCATE_LIMIT)


def mask_secret(text: str, secret: str) -> str:
    """Replace a known secret, such as the password typed for key installation."""
    return text.replace(secret, "***") if secret else text


def command_for_log(args: list[str]) -> str:
    return sanitize_log_text(shlex.join(args))
