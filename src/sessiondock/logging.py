"""Logger setup for the ``sessiondock`` namespace.

Every handler installed here carries :class:`SecretMaskingFilter`, so a
password or token that slips into a command line or tool stderr is masked
before it reaches the console or the log file.
"""

from __future__ import annotations

import logging as py_logging
import sys
from pathlib import Path
from typing import TextIO

from sessiondock.security import sanitize_log_text

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
ROOT_LOGGER_NAME = "sessiondock"
DEFAULT_LOG_PATH = Path("~/.config/sessiondock/logs/sessiondock.log")
_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_RECORD_LIMIT = 4000


class SecretMaskingFilter(py_logging.Filter):
    def filter(self, record: py_logging.LogRecord) -> bool:
        record.msg = sanitize_log_text(record.getMessage(), limit=_RECORD_LIMIT)
        record.args = None
        return True


def level_for(name: str) -> int:
    key = name.strip().upper()
    if key == "WARNING":
        key = "WARN"
    return LOG_LEVELS.get(key, py_logging.INFO)


def default_log_path() -> Path:
    try:
        return DEFAULT_LOG_PATH.expanduser().resolve()
    except RuntimeError:
        # No resolvable home directory.
        return (Path.cwd() / ".sessiondock" / "logs" / "sessiondock.log").resolve()


def _attach(logger: py_logging.Logger, handler: py_logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(py_logging.Formatter(_LOG_FORMAT))
    handler.addFilter(SecretMaskingFilter())
    logger.addHandler(handler)


def _open_log_file(log_file: str | Path) -> py_logging.Handler | None:
    path = Path(log_file).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return py_logging.FileHandler(path.resolve(), encoding="utf-8")
    except OSError as exc:
        print(f"sessiondock: log file disabled ({exc})", file=sys.stderr)
        return None


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    """Install a console handler (and optionally a DEBUG file handler).

    Calling this again replaces the handlers from the previous call.
    """
    console_level = level_for(level)
    logger = py_logging.getLogger(ROOT_LOGGER_NAME)
    while logger.handlers:
        stale = logger.handlers[0]
        logger.removeHandler(stale)
        stale.close()

    logger.setLevel(console_level)
    logger.propagate = False
    _attach(logger, py_logging.StreamHandler(stream or sys.stderr), console_level)

    file_handler = _open_log_file(log_file) if log_file else None
    if file_handler is not None:
        logger.setLevel(py_logging.DEBUG)
        _attach(logger, file_handler, py_logging.DEBUG)
    return logger
