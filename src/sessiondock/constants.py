"""Shared runtime constants."""

from __future__ import annotations

import re
from typing import Literal

# =============================================================================
# TIMEOUT CONSTANTS (in seconds)
# =============================================================================

SSH_CONNECT_TIMEOUT_SECONDS: int = 10
SSH_COMMAND_TIMEOUT_SECONDS: int = 30
SSH_AUTH_CHECK_TIMEOUT_SECONDS: int = 15
KEYGEN_TIMEOUT_SECONDS: int = 30
KEY_INSTALL_TIMEOUT_SECONDS: int = 30
DOCKER_CHECK_TIMEOUT_SECONDS: int = 20
DOCKER_COMMAND_TIMEOUT_SECONDS: int = 120
DOCKER_BUILD_TIMEOUT_SECONDS: int = 1800
DOCKER_SYNC_TIMEOUT_SECONDS: int = 900
DOCKER_STOP_GRACE_SECONDS: int = 10
GIT_TIMEOUT_SECONDS: int = 30
GIT_PUSH_TIMEOUT_SECONDS: int = 120
COMMAND_HEARTBEAT_SECONDS: int = 10
WORKER_JOIN_GRACE_SECONDS: int = 5

# =============================================================================
# LIMIT CONSTANTS
# =============================================================================

TERMINAL_LOG_TRUNCATE_LIMIT: int = 320
DEFAULT_LOG_TRUNCATE_LIMIT: int = 700

# =============================================================================
# SESSION CONSTANTS
# =============================================================================

CONTAINER_SERVICE_PORT: int = 8787
DEFAULT_HOST_PORT: int = 8787
MAX_PORT: int = 65535
KEY_DIRECTORY_NAME: str = "sessiondock"
LOCAL_CONTEXT_NAME: str = "sessiondock-local"
REMOTE_CONTEXT_NAME: str = "sessiondock-remote"
WINDOWS_DOCKER_ENDPOINT: str = "npipe:////./pipe/docker_engine"
UNIX_DOCKER_ENDPOINT: str = "unix:///var/run/docker.sock"
DOCKER_SSH_OPTS_ENV: str = "DOCKER_SSH_OPTS"

# =============================================================================
# REGEX PATTERNS (compiled at module level)
# =============================================================================

AUTH_BEARER_PATTERN: re.Pattern[str] = re.compile(
    r"(Authorization:\s*Bearer)\s+\S+",
    re.IGNORECASE,
)

URL_CREDENTIAL_PATTERN: re.Pattern[str] = re.compile(
    r"(https?://)([^/\s:@]+):([^@\s]+)@",
)

GH_TOKEN_PATTERN: re.Pattern[str] = re.compile(
    r"\bgh[pousr]_[A-Za-z0-9_]{36,}\b",
)

PASSWORD_ENV_PATTERN: re.Pattern[str] = re.compile(
    r"\b((?:SSH)?PASSWORD|SSHPASS)=\S+",
)

PRIVATE_KEY_BLOCK_PATTERN: re.Pattern[str] = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
    re.DOTALL,
)

HTTPS_REMOTE_PATTERN: re.Pattern[str] = re.compile(
    r"^https?://(?:[^@/\s]+@)?(?P<host>[^/\s:]+)(?::\d+)?/(?P<path>[^\s]+?)(?:\.git)?/?$",
    re.IGNORECASE,
)

SCP_REMOTE_PATTERN: re.Pattern[str] = re.compile(
    r"^(?:[A-Za-z0-9._-]+@)?[A-Za-z0-9._-]+:(?!//)\S+$",
)

# =============================================================================
# TYPE ALIASES
# =============================================================================

TargetKind = Literal["local", "remote"]
MountMode = Literal["bind", "volume"]
