"""Step progress log rendered by the dialog layer."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sessiondock.security import sanitize_progress_text


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    state: str
    message: str


def format_progress_line(level: str, step: str, message: str) -> str:
    stamp = datetime.now().strftime("%H:%M:%S")
    step_name = step.strip() or "session"
    detail = sanitize_progress_text(message)
    return f"[SessionDock][{stamp}][{level}] {step_name}: {detail}"


def emit_progress(
    sink: Callable[[str], None] | None,
    *,
    level: str,
    step: str,
    message: str,
) -> None:
    """Emit a formatted progress line to sink when available."""
    if sink is None:
        return
    sink(format_progress_line(level, step, message))


class ProgressLog:
    def __init__(self, *, sink: Callable[[str], None] | None = None) -> None:
        self.events: list[ProgressEvent] = []
        self.sink = sink

    def _record(self, step: str, state: str, message: str) -> None:
        self.events.append(ProgressEvent(step=step, state=state, message=message))
        emit_progress(self.sink, level=state.upper(), step=step, message=message or state)

    def record_started(self, step: str, message: str = "") -> None:
        self._record(step, "started", message)

    def record_success(self, step: str, message: str = "") -> None:
        self._record(step, "success", message)

    def record_warning(self, step: str, message: str) -> None:
        self._record(step, "warning", message)

    def record_error(self, step: str, message: str) -> None:
        self._record(step, "error", message)

    def states_for(self, step: str) -> list[str]:
        return [event.state for event in self.events if event.step == step]
