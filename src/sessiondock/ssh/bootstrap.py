"""SSH trust bootstrap: make key-based access to a target work without passwords.

The bootstrap walks a fixed state machine::

    NO_KEY -> KEY_GENERATED -> AUTHENTICATED
                            -> KEY_AUTH_FAILED -> PASSWORD_COLLECTED -> KEY_INSTALLING
                               -> PASSWORDLESS_VERIFIED | INSTALLED_UNVERIFIED | FAILED

Only key generation failure is fatal. Every other failure ends in a result
the caller can inspect; cancelling the password prompt ends in ``FAILED``.
"""

from __future__ import annotations

import logging as py_logging
import posixpath
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from sessiondock.constants import KEY_DIRECTORY_NAME, SSH_AUTH_CHECK_TIMEOUT_SECONDS
from sessiondock.errors import SessionDockError
from sessiondock.progress import ProgressLog
from sessiondock.retry import RecoverableError, RetryPolicy, run_with_retry
from sessiondock.runtime.target import ExecutionTarget
from sessiondock.runtime.transport import LocalTransport, Transport, ssh_base_options
from sessiondock.security import truncate_log
from sessiondock.ssh.installers import KeyInstaller, default_installers
from sessiondock.ssh.keys import Keypair, ensure_keypair

logger = py_logging.getLogger(__name__)

AUTH_CHECK_MARKER = "SESSIONDOCK_SSH_OK"
CredentialPrompt = Callable[[ExecutionTarget], str | None]


class TrustState(str, Enum):
    NO_KEY = "no-key"
    KEY_GENERATED = "key-generated"
    AUTHENTICATED = "authenticated"
    KEY_AUTH_FAILED = "key-auth-failed"
    PASSWORD_COLLECTED = "password-collected"
    KEY_INSTALLING = "key-installing"
    PASSWORDLESS_VERIFIED = "passwordless-verified"
    INSTALLED_UNVERIFIED = "installed-unverified"
    FAILED = "failed"


_USABLE_STATES = {
    TrustState.AUTHENTICATED,
    TrustState.PASSWORDLESS_VERIFIED,
    TrustState.INSTALLED_UNVERIFIED,
}


@dataclass
class BootstrapResult:
    state: TrustState
    keypair: Keypair
    key_generated: bool = False
    installer: str = ""
    password_fallback: bool = False
    detail: str = ""
    history: list[TrustState] = field(default_factory=list)
    password: str = field(default="", repr=False)

    @property
    def usable(self) -> bool:
        return self.state in _USABLE_STATES

    @property
    def passwordless(self) -> bool:
        return self.state in {TrustState.AUTHENTICATED, TrustState.PASSWORDLESS_VERIFIED}


@dataclass(frozen=True)
class PublishedKeypair:
    private_key: str
    known_hosts: str


class SshTrustBootstrapper:
    def __init__(
        self,
        keypair: Keypair,
        *,
        installers: list[KeyInstaller] | None = None,
        local: Transport | None = None,
        verify_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        progress: ProgressLog | None = None,
    ) -> None:
        self.keypair = keypair
        self.installers = installers if installers is not None else default_installers()
        self.local = local or LocalTransport()
        self.verify_policy = verify_policy or RetryPolicy(max_attempts=3, initial_backoff_seconds=1.0)
        self.sleep = sleep
        self.progress = progress or ProgressLog()

    def test_key_auth(self, target: ExecutionTarget) -> bool:
        """Single bounded attempt at key-only login."""
        command = [
            "ssh",
            *ssh_base_options(self.keypair.private_key, port=target.port),
            target.destination,
            f"echo {AUTH_CHECK_MARKER}",
        ]
        try:
            result = self.local.run(command, timeout_seconds=SSH_AUTH_CHECK_TIMEOUT_SECONDS, step="ssh-key-check")
        except SessionDockError as exc:
            logger.warning("ssh key check failed target=%s error=%s", target.describe(), exc.message)
            return False
        accepted = result.ok and AUTH_CHECK_MARKER in result.stdout
        if not accepted:
            logger.info(
                "ssh key auth rejected target=%s exit=%s detail=%s",
                target.describe(),
                result.returncode,
                truncate_log(result.detail, limit=200),
            )
        return accepted

    def _verify_with_retry(self, target: ExecutionTarget) -> bool:
        def attempt() -> bool:
            if not self.test_key_auth(target):
                raise RecoverableError("key auth not yet accepted")
            return True

        def on_retry(attempt_number: int, _: Exception) -> None:
            self.progress.record_warning(
                "ssh-verify",
                f"key login not accepted yet (attempt {attempt_number}/{self.verify_policy.max_attempts})",
            )

        try:
            return run_with_retry(attempt, policy=self.verify_policy, sleep=self.sleep, on_retry=on_retry)
        except RecoverableError:
            return False

    def _install(self, target: ExecutionTarget, password: str) -> tuple[str, str]:
        public_key = self.keypair.public_key_text()
        failures: list[str] = []
        for installer in self.installers:
            if not installer.available():
                logger.debug("key installer unavailable name=%s", installer.name)
                continue
            try:
                installer.install(target, password, public_key)
            except SessionDockError as exc:
                logger.warning("key installer failed name=%s error=%s", installer.name, exc)
                failures.append(f"{installer.name}: {exc}")
                continue
            return installer.name, ""
        if not failures:
            failures.append("no key installation strategy is available on this machine")
        return "", "; ".join(failures)

    def run(self, target: ExecutionTarget, credential_prompt: CredentialPrompt) -> BootstrapResult:
        history = [TrustState.NO_KEY]
        self.progress.record_started("ssh-key", f"Checking SSH key {self.keypair.private_key}")
        generated = ensure_keypair(self.keypair, transport=self.local)
        history.append(TrustState.KEY_GENERATED)
        self.progress.record_success("ssh-key", "created" if generated else "present")

        def finish(state: TrustState, **values: object) -> BootstrapResult:
            history.append(state)
            result = BootstrapResult(
                state=state,
                keypair=self.keypair,
                key_generated=generated,
                history=list(history),
                **values,  # type: ignore[arg-type]
            )
            logger.info("ssh bootstrap finished target=%s state=%s", target.describe(), state.value)
            return result

        if not target.is_remote:
            return finish(TrustState.AUTHENTICATED)

        self.progress.record_started("ssh-auth", f"Testing key login to {target.describe()}")
        if self.test_key_auth(target):
            self.progress.record_success("ssh-auth", "key login accepted")
            return finish(TrustState.AUTHENTICATED)
        history.append(TrustState.KEY_AUTH_FAILED)
        self.progress.record_warning("ssh-auth", "key login not accepted; a password is required once")

        password = credential_prompt(target)
        if not password:
            self.progress.record_error("ssh-auth", "password entry cancelled")
            return finish(TrustState.FAILED, detail="Password entry was cancelled.")
        history.append(TrustState.PASSWORD_COLLECTED)

        history.append(TrustState.KEY_INSTALLING)
        self.progress.record_started("ssh-install", "Installing public key on the target")
        installer_name, failure = self._install(target, password)
        if not installer_name:
            self.progress.record_error("ssh-install", failure)
            return finish(TrustState.FAILED, detail=failure)
        self.progress.record_success("ssh-install", f"installed with {installer_name}")

        self.progress.record_started("ssh-verify", "Verifying passwordless login")
        if self._verify_with_retry(target):
            self.progress.record_success("ssh-verify", "passwordless login works")
            return finish(TrustState.PASSWORDLESS_VERIFIED, installer=installer_name)

        self.progress.record_warning(
            "ssh-verify",
            "key installed but passwordless login could not be verified; using password-based access",
        )
        return finish(
            TrustState.INSTALLED_UNVERIFIED,
            installer=installer_name,
            password_fallback=True,
            password=password,
            detail="Key installed but key-based login could not be verified.",
        )


def publish_keypair(transport: Transport, keypair: Keypair) -> PublishedKeypair:
    """Copy the private key and known_hosts to a stable path on the target."""
    directory = transport.expand_user(f"~/.ssh/{KEY_DIRECTORY_NAME}")
    transport.ensure_directory(directory)
    private_key = posixpath.join(directory, keypair.private_key.name)
    known_hosts = posixpath.join(directory, "known_hosts")
    transport.write_file(private_key, keypair.private_key.read_text(encoding="utf-8"), mode=0o600)
    local_known_hosts = ""
    if keypair.known_hosts.is_file():
        local_known_hosts = keypair.known_hosts.read_text(encoding="utf-8")
    transport.write_file(known_hosts, local_known_hosts, mode=0o644)
    logger.info("Published ssh key to target path=%s", private_key)
    return PublishedKeypair(private_key=private_key, known_hosts=known_hosts)
