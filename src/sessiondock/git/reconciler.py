"""Post-session git reconciliation: snapshot, commit, push with auth inference."""

from __future__ import annotations

import logging as py_logging
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sessiondock.constants import GIT_PUSH_TIMEOUT_SECONDS, GIT_TIMEOUT_SECONDS
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.git.remote_url import https_to_ssh, is_https_url, is_ssh_url
from sessiondock.progress import ProgressLog
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.runtime.transport import RuntimeResult, Transport
from sessiondock.security import truncate_log

logger = py_logging.getLogger(__name__)

_AGENT_SSH_COMMAND = "ssh -o BatchMode=yes"
_NON_INTERACTIVE_ENV = {"GIT_TERMINAL_PROMPT": "0"}


class PushFailure(str, Enum):
    MISSING_KEY = "missing-key"
    EXPIRED_TOKEN = "expired-token"
    NON_FAST_FORWARD = "non-fast-forward"
    NETWORK = "network"
    UNKNOWN = "unknown"


class PushDecision(str, Enum):
    RETRY = "retry"
    EDITOR = "editor"
    ABORT = "abort"


class ReconcileStatus(str, Enum):
    CLEAN = "clean"
    PUSHED = "pushed"
    CANCELLED = "cancelled"
    EDITOR_OPENED = "editor-opened"
    PUSH_FAILED = "push-failed"


_FAILURE_MARKERS: tuple[tuple[PushFailure, tuple[str, ...]], ...] = (
    (
        PushFailure.NON_FAST_FORWARD,
        ("non-fast-forward", "fetch first", "updates were rejected", "[rejected]"),
    ),
    (
        PushFailure.MISSING_KEY,
        ("permission denied (publickey", "no such identity", "host key verification failed", "identity file"),
    ),
    (
        PushFailure.EXPIRED_TOKEN,
        ("authentication failed", "token", "invalid credentials", "401", "403", "could not read username"),
    ),
    (
        PushFailure.NETWORK,
        (
            "could not resolve host",
            "connection timed out",
            "connection refused",
            "network is unreachable",
            "operation timed out",
            "timed out",
        ),
    ),
)

_FAILURE_HINTS = {
    PushFailure.MISSING_KEY: "Add the session public key to your git host account, then retry the push.",
    PushFailure.EXPIRED_TOKEN: (
        "Your stored git credentials were rejected; refresh the token or switch to an SSH remote."
    ),
    PushFailure.NON_FAST_FORWARD: "The remote has new commits; pull and merge in your editor, then push again.",
    PushFailure.NETWORK: "The git host could not be reached; check the network connection and retry.",
    PushFailure.UNKNOWN: "Open the repository in your editor to inspect the push error.",
}


@dataclass(frozen=True)
class GitState:
    commit: str
    modified: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    pull_error: str = ""

    @property
    def is_dirty(self) -> bool:
        return bool(self.modified or self.untracked)


@dataclass(frozen=True)
class PushFailureReport:
    failure: PushFailure
    hint: str
    detail: str


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    state: GitState
    commit_message: str = ""
    session_commits: bool = False
    rewritten_remote: str = ""
    push_attempts: int = 0
    failure: PushFailureReport | None = None


CommitPrompt = Callable[[GitState], str | None]
PushPrompt = Callable[[PushFailureReport], PushDecision]


def classify_push_failure(output: str) -> PushFailure:
    text = output.lower()
    for failure, markers in _FAILURE_MARKERS:
        if any(marker in text for marker in markers):
            return failure
    return PushFailure.UNKNOWN


def failure_report(output: str) -> PushFailureReport:
    failure = classify_push_failure(output)
    return PushFailureReport(failure=failure, hint=_FAILURE_HINTS[failure], detail=output.strip())


def parse_porcelain(output: str) -> list[str]:
    """Tracked paths with changes; untracked entries are reported separately."""
    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4 or line.startswith("??"):
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


def editor_command(editor: str, path: str, *, target: ExecutionTarget | None = None) -> list[str]:
    argv = shlex.split(editor) or ["code"]
    if target is not None and target.is_remote and argv[0] in {"code", "code.cmd", "code-insiders"}:
        return [*argv, "--remote", f"ssh-remote+{target.destination}", path]
    return [*argv, path]


def open_external_editor(
    editor: str,
    path: str,
    *,
    target: ExecutionTarget | None = None,
    launcher: Callable[..., object] = subprocess.Popen,
) -> list[str]:
    command = editor_command(editor, path, target=target)
    try:
        launcher(command)
    except OSError as exc:
        raise SessionDockError(
            f"Could not launch editor: {command[0]}",
            code=ExitCode.RUNTIME_ERROR,
            hint=str(exc),
        ) from exc
    logger.info("Opened external editor command=%s", command)
    return command


class GitReconciler:
    def __init__(
        self,
        transport: Transport,
        *,
        key_path: str = "",
        editor: str = "code",
        editor_launcher: Callable[..., object] = subprocess.Popen,
        progress: ProgressLog | None = None,
    ) -> None:
        self.transport = transport
        self.key_path = key_path
        self.editor = editor
        self.editor_launcher = editor_launcher
        self.progress = progress or ProgressLog()

    def _git(
        self,
        repo: str,
        args: list[str],
        *,
        env: dict[str, str] | None = None,
        timeout_seconds: float = GIT_TIMEOUT_SECONDS,
        step: str = "git",
    ) -> RuntimeResult:
        merged = {**_NON_INTERACTIVE_ENV, **(env or {})}
        return self.transport.run(
            ["git", "-C", repo, *args],
            timeout_seconds=timeout_seconds,
            env=merged,
            step=step,
        )

    def _check(self, repo: str, args: list[str], *, message: str, step: str) -> RuntimeResult:
        result = self._git(repo, args, step=step)
        if not result.ok:
            logger.error(
                "step=%s repo=%s exit=%s detail=%s", step, repo, result.returncode, truncate_log(result.detail)
            )
            raise SessionDockError(
                message,
                code=ExitCode.GIT_ERROR,
                hint=result.detail or "Check the repository state.",
            )
        return result

    def snapshot(self, repo: str, *, pull: bool = False) -> GitState:
        pull_error = ""
        if pull:
            pulled = self._git(
                repo,
                ["pull", "--ff-only"],
                env={"GIT_SSH_COMMAND": _AGENT_SSH_COMMAND},
                timeout_seconds=GIT_PUSH_TIMEOUT_SECONDS,
                step="git-pull",
            )
            if not pulled.ok:
                pull_error = pulled.detail or f"git pull exited with code {pulled.returncode}"
                logger.warning("Best-effort pull failed repo=%s detail=%s", repo, truncate_log(pull_error))
                self.progress.record_warning("git-pull", pull_error)

        head = self._git(repo, ["rev-parse", "HEAD"], step="git-rev-parse")
        commit = head.stdout.strip() if head.ok else ""
        status = self._check(
            repo,
            ["status", "--porcelain"],
            message=f"Could not read git status for {repo}.",
            step="git-status",
        )
        untracked = self._check(
            repo,
            ["ls-files", "--others", "--exclude-standard"],
            message=f"Could not list untracked files for {repo}.",
            step="git-ls-files",
        )
        state = GitState(
            commit=commit,
            modified=parse_porcelain(status.stdout),
            untracked=[line.strip() for line in untracked.stdout.splitlines() if line.strip()],
            pull_error=pull_error,
        )
        logger.debug(
            "Git snapshot repo=%s commit=%s modified=%s untracked=%s",
            repo,
            commit[:12],
            len(state.modified),
            len(state.untracked),
        )
        return state

    def remote_url(self, repo: str, remote: str = "origin") -> str:
        result = self._git(repo, ["remote", "get-url", remote], step="git-remote")
        return result.stdout.strip() if result.ok else ""

    def ensure_ssh_remote(self, repo: str, remote: str = "origin") -> str:
        """Rewrite an HTTPS remote to its SSH form. Returns the new URL, or "" when unchanged."""
        url = self.remote_url(repo, remote)
        if not url or not is_https_url(url):
            return ""
        rewritten = https_to_ssh(url)
        if rewritten is None:
            return ""
        self._check(
            repo,
            ["remote", "set-url", remote, rewritten],
            message=f"Could not switch {remote} to an SSH remote.",
            step="git-remote-set-url",
        )
        logger.info("Rewrote remote to ssh repo=%s remote=%s", repo, remote)
        self.progress.record_warning("git-push", f"switched {remote} from HTTPS to {rewritten}")
        return rewritten

    def _push_strategies(self, url: str) -> list[tuple[str, dict[str, str]]]:
        if not is_ssh_url(url):
            return [("default", {})]
        strategies = [("agent", {"GIT_SSH_COMMAND": _AGENT_SSH_COMMAND})]
        if self.key_path:
            key = self.key_path if self.key_path.startswith("~/") else shlex.quote(self.key_path)
            strategies.append(
                ("key", {"GIT_SSH_COMMAND": f"ssh -i {key} -o IdentitiesOnly=yes -o BatchMode=yes"})
            )
        return strategies

    def push(self, repo: str) -> RuntimeResult:
        """Push HEAD trying the ssh agent first and the session key second."""
        url = self.remote_url(repo)
        result: RuntimeResult | None = None
        for name, env in self._push_strategies(url):
            result = self._git(repo, ["push"], env=env, timeout_seconds=GIT_PUSH_TIMEOUT_SECONDS, step="git-push")
            if result.ok:
                logger.info("Pushed repo=%s strategy=%s", repo, name)
                return result
            logger.warning("Push failed repo=%s strategy=%s detail=%s", repo, name, truncate_log(result.detail))
        assert result is not None
        return result

    def detect_and_commit(
        self,
        repo: str,
        before: GitState | None,
        commit_prompt: CommitPrompt,
        push_prompt: PushPrompt,
        *,
        target: ExecutionTarget | None = None,
    ) -> ReconcileResult:
        after = self.snapshot(repo)
        session_commits = before is not None and bool(before.commit) and before.commit != after.commit
        if not after.is_dirty:
            self.progress.record_success("git-reconcile", "working tree clean")
            return ReconcileResult(status=ReconcileStatus.CLEAN, state=after, session_commits=session_commits)

        self.progress.record_started(
            "git-reconcile",
            f"{len(after.modified)} modified, {len(after.untracked)} untracked file(s)",
        )
        self._check(repo, ["add", "-A"], message="Could not stage changes.", step="git-add")
        message = commit_prompt(after)
        if message is None or not message.strip():
            self._git(repo, ["reset", "-q"], step="git-reset")
            self.progress.record_warning("git-reconcile", "commit cancelled")
            return ReconcileResult(status=ReconcileStatus.CANCELLED, state=after, session_commits=session_commits)

        self._check(repo, ["commit", "-m", message.strip()], message="git commit failed.", step="git-commit")
        rewritten = self.ensure_ssh_remote(repo)
        attempts = 0
        while True:
            attempts += 1
            pushed = self.push(repo)
            if pushed.ok:
                self.progress.record_success("git-reconcile", "changes committed and pushed")
                return ReconcileResult(
                    status=ReconcileStatus.PUSHED,
                    state=after,
                    commit_message=message.strip(),
                    session_commits=True,
                    rewritten_remote=rewritten,
                    push_attempts=attempts,
                )
            report = failure_report(pushed.detail)
            self.progress.record_error("git-push", f"{report.failure.value}: {report.hint}")
            decision = push_prompt(report)
            if decision == PushDecision.RETRY:
                continue
            status = ReconcileStatus.PUSH_FAILED
            if decision == PushDecision.EDITOR:
                open_external_editor(self.editor, repo, target=target, launcher=self.editor_launcher)
                status = ReconcileStatus.EDITOR_OPENED
            return ReconcileResult(
                status=status,
                state=after,
                commit_message=message.strip(),
                session_commits=True,
                rewritten_remote=rewritten,
                push_attempts=attempts,
                failure=report,
            )
