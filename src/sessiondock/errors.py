"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    GIT_ERROR = 5
    SSH_ERROR = 6
    VALIDATION_ERROR = 7
    DOCKER_ERROR = 8
    CANCELLED = 9


@dataclass
class SessionDockError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


class PortInUseError(SessionDockError):
    """Requested host port is already published by another container."""

    def __init__(self, port: int, used: set[int]) -> None:
        super().__init__(
            f"Port {port} is already used by a running session.",
            code=ExitCode.VALIDATION_ERROR,
            hint=f"Ports in use: {', '.join(str(item) for item in sorted(used))}. Choose another port.",
        )
        self.port = port
        self.used = set(used)


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
