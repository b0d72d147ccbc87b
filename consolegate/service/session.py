from __future__ import annotations

import re
import threading
from typing import Callable, List, Optional

from consolegate.logging import get_logger
from consolegate.service.async_state import (
    IDLE,
    PENDING,
    AsyncState,
    Failed,
    Succeeded,
    is_pending,
)
from consolegate.service.errors import (
    AuthenticationError,
    InvalidTransitionError,
    MfaCodeRejectedError,
    ServiceError,
)
from consolegate.service.verifier import CredentialVerifier
from consolegate.storage.models import (
    Credentials,
    Operator,
    Phase,
    SessionSnapshot,
)
from consolegate.storage.token_store import AUTH_TOKEN_KEY, REFRESH_TOKEN_KEY, TokenStorage

logger = get_logger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."
MFA_ATTEMPTS_EXHAUSTED_MESSAGE = "Too many incorrect codes. Please sign in again."
MFA_CODE_FORMAT_MESSAGE = "Please enter a 6-digit code."

_MFA_CODE_RE = re.compile(r"^\d{6}$")

Listener = Callable[[SessionSnapshot], None]


def normalize_mfa_code(code: Optional[str]) -> Optional[str]:
    """Return the 6-digit code with whitespace removed, or None if malformed."""
    if not code:
        return None
    compact = re.sub(r"\s+", "", code)
    return compact if _MFA_CODE_RE.match(compact) else None


class SessionStore:
    """Owner of the console session: phase, operator, bearer and challenge tokens.

    All mutations go through the transition methods below. Each one replaces
    the whole :class:`SessionSnapshot` in a single commit, so observers never
    see a phase that disagrees with the token fields. Verifier responses are
    tagged with a generation number and dropped if the session moved on while
    they were in flight.
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        storage: TokenStorage,
        *,
        mfa_max_attempts: Optional[int] = None,
    ) -> None:
        self.verifier = verifier
        self.storage = storage
        self.mfa_max_attempts = mfa_max_attempts
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._generation = 0
        self._failed_mfa_attempts = 0
        self.login_state: AsyncState = IDLE
        self.verify_state: AsyncState = IDLE
        stored = self._read_storage(AUTH_TOKEN_KEY)
        # A stored token still has to be validated by initialize()
        self._snapshot = SessionSnapshot.anonymous(initialized=stored is None)

    # -- observation -------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def phase(self) -> Phase:
        return self.snapshot.phase

    @property
    def operator(self) -> Optional[Operator]:
        return self.snapshot.operator

    @property
    def bearer_token(self) -> Optional[str]:
        return self.snapshot.bearer_token

    @property
    def is_authenticated(self) -> bool:
        return self.snapshot.is_authenticated

    @property
    def failed_mfa_attempts(self) -> int:
        return self._failed_mfa_attempts

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every committed snapshot until unsubscribed."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # -- internals ---------------------------------------------------------

    def _read_storage(self, key: str) -> Optional[str]:
        try:
            return self.storage.get(key)
        except Exception as exc:
            logger.error("token_storage_read_failed", key_name=key, error=str(exc))
            return None

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _commit(self, snapshot: SessionSnapshot, reason: str) -> SessionSnapshot:
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
            listeners = list(self._listeners)
        if previous.phase is not snapshot.phase:
            logger.info(
                "session_phase_changed",
                from_phase=previous.phase.value,
                to_phase=snapshot.phase.value,
                reason=reason,
            )
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as exc:
                logger.error("session_listener_failed", reason=reason, error=str(exc))
        return snapshot

    def _forget_tokens(self) -> None:
        for key in (AUTH_TOKEN_KEY, REFRESH_TOKEN_KEY):
            try:
                self.storage.delete(key)
            except Exception as exc:
                # Memory is cleared regardless; a leftover token fails validation on restart
                logger.error("token_storage_delete_failed", key_name=key, error=str(exc))

    def _clear(self, reason: str, last_error: Optional[str] = None) -> SessionSnapshot:
        self._forget_tokens()
        self._failed_mfa_attempts = 0
        return self._commit(SessionSnapshot.anonymous(last_error=last_error), reason)

    def _establish(self, credentials: Credentials, reason: str) -> SessionSnapshot:
        try:
            self.storage.set(AUTH_TOKEN_KEY, credentials.token)
            if credentials.refresh_token:
                self.storage.set(REFRESH_TOKEN_KEY, credentials.refresh_token)
            else:
                self.storage.delete(REFRESH_TOKEN_KEY)
        except Exception as exc:
            logger.error("session_persist_failed", reason=reason, error=str(exc))
            self._forget_tokens()
            return self._commit(
                self.snapshot.with_error("Unable to save your session. Please try again."),
                "session_persist_failed",
            )
        self._failed_mfa_attempts = 0
        logger.info(
            "session_established",
            operator_id=credentials.operator.id,
            mfa_enabled=credentials.operator.mfa_enabled,
            capability_count=len(credentials.operator.capabilities),
            reason=reason,
        )
        return self._commit(
            SessionSnapshot.authenticated(credentials.operator, credentials.token), reason
        )

    # -- transitions -------------------------------------------------------

    async def initialize(self) -> SessionSnapshot:
        """Restore an authenticated session from durable storage, if any."""
        if self.phase is not Phase.ANONYMOUS:
            return self.snapshot
        token = self._read_storage(AUTH_TOKEN_KEY)
        if token is None:
            if not self.snapshot.initialized:
                return self._commit(SessionSnapshot.anonymous(), "no_stored_session")
            return self.snapshot

        generation = self._next_generation()
        refresh_token = self._read_storage(REFRESH_TOKEN_KEY)
        try:
            operator = await self.verifier.get_profile(token)
            credentials = Credentials(operator, token, refresh_token)
        except AuthenticationError:
            if not self._is_current(generation):
                return self.snapshot
            credentials = await self._restore_with_refresh(refresh_token)
            if credentials is None:
                if not self._is_current(generation):
                    return self.snapshot
                logger.info("stored_session_rejected")
                return self._clear("stored_session_rejected")
        except ServiceError as exc:
            if not self._is_current(generation):
                return self.snapshot
            # Keep the stored token so a later initialize() can retry
            logger.warning("session_restore_unavailable", error_code=exc.error_code)
            return self._commit(
                SessionSnapshot.anonymous(last_error=exc.message), "session_restore_failed"
            )

        if not self._is_current(generation) or self.phase is not Phase.ANONYMOUS:
            logger.info("stale_session_restore_ignored")
            return self.snapshot
        return self._establish(credentials, "session_restored")

    async def _restore_with_refresh(self, refresh_token: Optional[str]) -> Optional[Credentials]:
        if not refresh_token:
            return None
        try:
            pair = await self.verifier.refresh(refresh_token)
            operator = await self.verifier.get_profile(pair.token)
        except ServiceError as exc:
            logger.info("session_refresh_failed", error_code=exc.error_code)
            return None
        return Credentials(operator, pair.token, pair.refresh_token or refresh_token)

    async def login(self, email: str, password: str) -> SessionSnapshot:
        """Submit the first factor.

        Credential and service failures are recorded in ``last_error`` and
        never raised; calling this while signed in is a caller error.
        """
        if self.phase is Phase.AUTHENTICATED:
            raise InvalidTransitionError("Already signed in. Log out first.")
        if is_pending(self.login_state):
            logger.info("login_already_in_progress")
            return self.snapshot

        generation = self._next_generation()
        if self.phase is Phase.AWAITING_MFA:
            logger.info("mfa_challenge_discarded", reason="new_login")
            self._failed_mfa_attempts = 0
        email = (email or "").strip()
        if not email or not password:
            self.login_state = IDLE
            return self._commit(
                SessionSnapshot.anonymous(last_error="Email and password are required."),
                "login_invalid_input",
            )
        self._commit(SessionSnapshot.anonymous(), "login_started")

        self.login_state = PENDING
        try:
            result = await self.verifier.login(email, password)
        except ServiceError as exc:
            if not self._is_current(generation):
                logger.info("stale_login_response_ignored")
                return self.snapshot
            self.login_state = Failed(exc)
            logger.info("login_failed", error_code=exc.error_code)
            return self._commit(self.snapshot.with_error(exc.message), "login_failed")
        except Exception as exc:
            if self._is_current(generation):
                self.login_state = Failed(exc)
            raise

        if not self._is_current(generation) or self.phase is not Phase.ANONYMOUS:
            logger.info("stale_login_response_ignored")
            return self.snapshot

        if result.mfa_required and result.mfa_token:
            self.login_state = Succeeded(Phase.AWAITING_MFA)
            self._failed_mfa_attempts = 0
            return self._commit(SessionSnapshot.awaiting_mfa(result.mfa_token), "mfa_required")
        if result.credentials is not None:
            snapshot = self._establish(result.credentials, "password_login")
            self.login_state = Succeeded(snapshot.phase)
            return snapshot

        error = ServiceError("Unexpected response from the authentication service.")
        self.login_state = Failed(error)
        logger.error("login_response_incomplete")
        return self._commit(self.snapshot.with_error(error.message), "login_failed")

    async def verify_mfa(self, code: str) -> SessionSnapshot:
        """Submit the second factor for the pending login challenge.

        A rejected code keeps the same challenge open for another try, up to
        ``mfa_max_attempts`` when configured.
        """
        if self.phase is not Phase.AWAITING_MFA:
            raise InvalidTransitionError("No sign-in is waiting for a verification code.")
        if is_pending(self.verify_state):
            # The challenge is single-use; let the first submission settle
            logger.info("mfa_verification_already_in_progress")
            return self.snapshot

        normalized = normalize_mfa_code(code)
        if normalized is None:
            return self._commit(self.snapshot.with_error(MFA_CODE_FORMAT_MESSAGE), "mfa_code_malformed")

        challenge = self.snapshot.mfa_challenge_token
        generation = self._next_generation()
        self.verify_state = PENDING
        try:
            credentials = await self.verifier.verify_mfa(challenge, normalized)
        except MfaCodeRejectedError as exc:
            if not self._is_current(generation):
                logger.info("stale_mfa_response_ignored")
                return self.snapshot
            self._failed_mfa_attempts += 1
            self.verify_state = Failed(exc)
            logger.info("mfa_code_rejected", attempts=self._failed_mfa_attempts)
            if self.mfa_max_attempts and self._failed_mfa_attempts >= self.mfa_max_attempts:
                logger.warning("mfa_attempts_exhausted", attempts=self._failed_mfa_attempts)
                return self._clear("mfa_attempts_exhausted", MFA_ATTEMPTS_EXHAUSTED_MESSAGE)
            return self._commit(self.snapshot.with_error(exc.message), "mfa_rejected")
        except ServiceError as exc:
            if not self._is_current(generation):
                logger.info("stale_mfa_response_ignored")
                return self.snapshot
            self.verify_state = Failed(exc)
            logger.info("mfa_verify_failed", error_code=exc.error_code)
            return self._commit(self.snapshot.with_error(exc.message), "mfa_verify_failed")
        except Exception as exc:
            if self._is_current(generation):
                self.verify_state = Failed(exc)
            raise

        if not self._is_current(generation) or self.phase is not Phase.AWAITING_MFA:
            logger.info("stale_mfa_response_ignored")
            return self.snapshot
        snapshot = self._establish(credentials, "mfa_verified")
        self.verify_state = Succeeded(snapshot.phase)
        return snapshot

    def cancel_mfa(self) -> SessionSnapshot:
        """Abandon the pending challenge; safe to call in any phase."""
        self._next_generation()
        self.login_state = IDLE
        self.verify_state = IDLE
        if self.phase is not Phase.AWAITING_MFA:
            return self.snapshot
        self._failed_mfa_attempts = 0
        return self._commit(SessionSnapshot.anonymous(), "mfa_cancelled")

    async def logout(self) -> SessionSnapshot:
        """Clear the session locally, then tell the service (best effort)."""
        token = self.bearer_token
        self._next_generation()
        self.login_state = IDLE
        self.verify_state = IDLE
        snapshot = self._clear("logout")
        if token:
            try:
                await self.verifier.logout(token)
            except ServiceError as exc:
                logger.info("server_logout_failed", error_code=exc.error_code)
        return snapshot

    def session_expired(self) -> SessionSnapshot:
        """Drop everything after the service rejected the bearer token."""
        if self.phase is Phase.ANONYMOUS and self._read_storage(AUTH_TOKEN_KEY) is None:
            return self.snapshot
        self._next_generation()
        self.login_state = IDLE
        self.verify_state = IDLE
        logger.warning("session_expired", phase=self.phase.value)
        return self._clear("session_expired", SESSION_EXPIRED_MESSAGE)

    def token_refreshed(self, token: str, refresh_token: Optional[str] = None) -> SessionSnapshot:
        snapshot = self.snapshot
        if snapshot.phase is not Phase.AUTHENTICATED:
            logger.info("token_refresh_ignored", phase=snapshot.phase.value)
            return snapshot
        try:
            self.storage.set(AUTH_TOKEN_KEY, token)
            if refresh_token:
                self.storage.set(REFRESH_TOKEN_KEY, refresh_token)
        except Exception as exc:
            # The rotated-out tokens are dead server-side; keep them off disk
            logger.error("stored_session_stale", reason="token_refreshed", error=str(exc))
            self._forget_tokens()
        return self._commit(SessionSnapshot.authenticated(snapshot.operator, token), "token_refreshed")

    async def refresh_profile(self) -> SessionSnapshot:
        """Re-read the operator profile, e.g. after MFA was enabled."""
        if self.phase is not Phase.AUTHENTICATED:
            raise InvalidTransitionError("Sign in to load your profile.")
        generation = self._generation
        operator = await self.verifier.get_profile()
        snapshot = self.snapshot
        if not self._is_current(generation) or snapshot.phase is not Phase.AUTHENTICATED:
            logger.info("stale_profile_ignored")
            return snapshot
        return self._commit(
            SessionSnapshot.authenticated(operator, snapshot.bearer_token), "profile_refreshed"
        )

    def clear_error(self) -> SessionSnapshot:
        snapshot = self.snapshot
        if snapshot.last_error is None:
            return snapshot
        return self._commit(snapshot.with_error(None), "error_cleared")


__all__ = [
    "SessionStore",
    "normalize_mfa_code",
    "SESSION_EXPIRED_MESSAGE",
    "MFA_ATTEMPTS_EXHAUSTED_MESSAGE",
    "MFA_CODE_FORMAT_MESSAGE",
]
