"""Deadline-bound subprocess execution with heartbeat progress."""

from __future__ import annotations

import logging as py_logging
import subprocess
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from sessiondock import constants
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.progress import emit_progress
from sessiondock.security import command_for_log

logger = py_logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


def run_with_deadline(
    *,
    command: list[str],
    timeout_seconds: float,
    step: str,
    env: dict[str, str] | None = None,
    input_text: str | None = None,
    runner: Runner | None = None,
    verbose_sink: Callable[[str], None] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run command in a worker with a hard deadline.

    The child gets the deadline as its own timeout, so it is killed when the
    deadline passes; the join also gives up after a short grace period. Both
    paths raise ``SessionDockError`` and no partial output is returned.
    """
    run = runner or subprocess.run
    logger.debug("step=%s run command=%s timeout=%ss", step, command_for_log(command), timeout_seconds)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sessiondock-{step}")
    future = executor.submit(
        run,
        command,
        capture_output=True,
        text=True,
        check=False,
        env=env,
        input=input_text,
        timeout=timeout_seconds,
    )
    try:
        started = time.monotonic()
        hard_deadline = started + timeout_seconds + constants.WORKER_JOIN_GRACE_SECONDS
        next_heartbeat = constants.COMMAND_HEARTBEAT_SECONDS
        while True:
            remaining = hard_deadline - time.monotonic()
            if remaining <= 0:
                break
            done, _ = wait([future], timeout=min(1.0, remaining), return_when=FIRST_COMPLETED)
            if done:
                break
            elapsed = int(time.monotonic() - started)
            if elapsed >= next_heartbeat:
                emit_progress(
                    verbose_sink,
                    level="WAIT",
                    step=step,
                    message=f"still running elapsed={elapsed}s timeout={timeout_seconds}s",
                )
                next_heartbeat += constants.COMMAND_HEARTBEAT_SECONDS

        if not future.done():
            future.cancel()
            raise _timeout_error(step, timeout_seconds, verbose_sink)
        try:
            return future.result()
        except subprocess.TimeoutExpired as exc:
            raise _timeout_error(step, timeout_seconds, verbose_sink) from exc
        except OSError as exc:
            logger.error("step=%s could not start command=%s error=%s", step, command_for_log(command), exc)
            raise SessionDockError(
                f"Could not run command for step {step}.",
                code=ExitCode.RUNTIME_ERROR,
                hint=str(exc),
            ) from exc
    finally:
        executor.shutdown(wait=False)


def _timeout_error(
    step: str,
    timeout_seconds: float,
    verbose_sink: Callable[[str], None] | None,
) -> SessionDockError:
    logger.error("step=%s timed out after %ss", step, timeout_seconds)
    emit_progress(verbose_sink, level="TIMEOUT", step=step, message=f"timeout={timeout_seconds}s")
    return SessionDockError(
        f"Step timed out: {step}",
        code=ExitCode.RUNTIME_ERROR,
        hint="The command took longer than expected. Check network access to the target and retry.",
    )
