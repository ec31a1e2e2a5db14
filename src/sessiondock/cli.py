"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import getpass
import logging as py_logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from .config import load_config, set_remote_host
from .errors import ExitCode, SessionDockError, user_facing_error
from .git.reconciler import GitState, PushDecision, PushFailureReport
from .logging import configure_logging, default_log_path
from .orchestrator import (
    OrchestratorContext,
    ResultStatus,
    SessionRequest,
    StopResult,
    attach_session,
    bootstrap_trust,
    build_context,
    select_repository,
    start_session,
    stop_session,
)
from .runtime.target import ExecutionTarget

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
_VALID_MOUNT_MODES = ("bind", "volume")
_PUSH_CHOICES = {
    "r": PushDecision.RETRY,
    "retry": PushDecision.RETRY,
    "e": PushDecision.EDITOR,
    "editor": PushDecision.EDITOR,
    "a": PushDecision.ABORT,
    "abort": PushDecision.ABORT,
}

ContextFactory = Callable[[argparse.Namespace], OrchestratorContext]


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _port_type(value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--port must be an integer") from exc
    if port < 1 or port > 65535:
        raise argparse.ArgumentTypeError("--port must be between 1 and 65535")
    return port


def _add_session_arguments(parser: argparse.ArgumentParser, *, with_port: bool = True) -> None:
    parser.add_argument("--repo", required=True, help="Repository folder on the execution target")
    parser.add_argument("--user", default="", help="Session user name (defaults to the login name)")
    parser.add_argument("--mode", choices=_VALID_MOUNT_MODES, default=None)
    if with_port:
        parser.add_argument("--port", type=_port_type, default=None)
        parser.add_argument("--pull", action="store_true", help="Pull the repository before starting")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sessiondock")
    parser.add_argument("--log-level", type=_log_level_type, default="INFO")
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("--config", type=Path, default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    bootstrap = commands.add_parser("bootstrap", help="Set up passwordless SSH access to the target")
    bootstrap.add_argument("--host", default=None, help="Save this remote host as the target before connecting")
    bootstrap.add_argument("--remote-user", default="", help="Login name on the remote host")
    repos = commands.add_parser("repos", help="List repositories on the target")
    repos.add_argument("--path", default=None, help="Check a single folder instead of scanning")
    _add_session_arguments(commands.add_parser("start", help="Start a session container"))
    _add_session_arguments(commands.add_parser("stop", help="Stop a session and reconcile git"), with_port=False)
    _add_session_arguments(commands.add_parser("run", help="Start, wait for Enter, then stop"))
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


class ConsolePrompts:
    """getpass/input prompts; EOF or empty input counts as cancellation."""

    def __init__(
        self,
        *,
        read_line: Callable[[str], str] = input,
        read_secret: Callable[[str], str] = getpass.getpass,
        write: Callable[[str], None] | None = None,
    ) -> None:
        self.read_line = read_line
        self.read_secret = read_secret
        self.write = write or (lambda text: print(text, file=sys.stderr))
        self.cancelled = False

    def _ask(self, reader: Callable[[str], str], prompt: str) -> str | None:
        try:
            value = reader(prompt)
        except (EOFError, KeyboardInterrupt):
            self.cancelled = True
            return None
        if not value.strip():
            self.cancelled = True
            return None
        return value

    def password(self, target: ExecutionTarget) -> str | None:
        return self._ask(self.read_secret, f"Password for {target.describe()}: ")

    def commit_message(self, state: GitState) -> str | None:
        self.write(f"{len(state.modified)} modified and {len(state.untracked)} untracked file(s) after the session.")
        return self._ask(self.read_line, "Commit message (empty to skip): ")

    def push_decision(self, report: PushFailureReport) -> PushDecision:
        self.write(f"Push failed ({report.failure.value}): {report.hint}")
        answer = self._ask(self.read_line, "[r]etry, open [e]ditor or [a]bort? ")
        if answer is None:
            return PushDecision.ABORT
        return _PUSH_CHOICES.get(answer.strip().lower(), PushDecision.ABORT)

    def wait_for_enter(self, prompt: str) -> None:
        try:
            self.read_line(prompt)
        except (EOFError, KeyboardInterrupt):
            return


def _default_context(namespace: argparse.Namespace) -> OrchestratorContext:
    config = load_config(namespace.config)
    return build_context(config)


def _request(namespace: argparse.Namespace) -> SessionRequest:
    return SessionRequest(
        repo_path=namespace.repo,
        user=namespace.user,
        port=getattr(namespace, "port", None),
        mount_mode=namespace.mode,
        pull=getattr(namespace, "pull", False),
    )


def _ensure_trust(ctx: OrchestratorContext, prompts: ConsolePrompts) -> int:
    result = bootstrap_trust(ctx, prompts.password)
    if result.usable:
        if result.password_fallback:
            prompts.write("Warning: passwordless login could not be verified; using the password for this run.")
        return int(ExitCode.SUCCESS)
    if prompts.cancelled:
        return int(ExitCode.CANCELLED)
    raise SessionDockError(
        "SSH access to the target could not be established.",
        code=ExitCode.SSH_ERROR,
        hint=result.detail,
    )


def _report_stop(result: StopResult, prompts: ConsolePrompts) -> int:
    if result.outcome is not None and not result.outcome.stopped:
        prompts.write("No running session container was found.")
    for synced in result.outcome.synced if result.outcome else []:
        prompts.write(f"Synced {synced.files_written} file(s) from {synced.volume} to {synced.destination}.")
    if result.reconcile is not None:
        prompts.write(f"Git: {result.reconcile.status.value}")
    if result.status == ResultStatus.FAILED:
        print(user_facing_error(result.error, hint=result.hint), file=sys.stderr)
    return int(result.code)


def run_command(namespace: argparse.Namespace, ctx: OrchestratorContext, prompts: ConsolePrompts) -> int:
    code = _ensure_trust(ctx, prompts)
    if code != ExitCode.SUCCESS or namespace.command == "bootstrap":
        if code == ExitCode.SUCCESS:
            prompts.write(f"SSH trust: {ctx.trust.state.value if ctx.trust else 'unknown'}")
        return code

    if namespace.command == "repos":
        for repo in select_repository(ctx, namespace.path):
            marker = "git" if repo.is_git_repo else "dir"
            print(f"{marker}\t{repo.path}")
        return int(ExitCode.SUCCESS)

    if namespace.command == "stop":
        session = attach_session(ctx, _request(namespace))
        return _report_stop(stop_session(ctx, session, prompts.commit_message, prompts.push_decision), prompts)

    started = start_session(ctx, _request(namespace))
    if started.status != ResultStatus.OK or started.session is None:
        print(user_facing_error(started.error, hint=started.hint), file=sys.stderr)
        return int(started.code)
    print(started.url)
    if started.other_sessions:
        prompts.write(f"Also running for this user: {', '.join(started.other_sessions)}")
    if namespace.command == "start":
        return int(ExitCode.SUCCESS)

    prompts.wait_for_enter(f"Session running at {started.url}. Press Enter to stop it. ")
    return _report_stop(stop_session(ctx, started.session, prompts.commit_message, prompts.push_decision), prompts)


def main(
    argv: Sequence[str] | None = None,
    *,
    context_factory: ContextFactory | None = None,
    prompts: ConsolePrompts | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    try:
        if getattr(namespace, "host", None):
            saved = set_remote_host(namespace.host, namespace.remote_user, namespace.config)
            logger.info("Saved remote target host=%s user=%s", saved.remote_host, saved.remote_user or "-")
        ctx = (context_factory or _default_context)(namespace)
        logger.debug("Running command=%s target=%s", namespace.command, ctx.target.describe())
        return run_command(namespace, ctx, prompts or ConsolePrompts())
    except SessionDockError as exc:
        logger.error(
            "Handled SessionDockError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        print(user_facing_error("Unexpected runtime failure", hint=f"Inspect logs: {log_path}"), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
