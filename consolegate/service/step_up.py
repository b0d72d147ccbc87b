from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from consolegate.logging import get_logger
from consolegate.service.action_token import ActionTokenChannel
from consolegate.service.async_state import (
    IDLE,
    PENDING,
    AsyncState,
    Failed,
    Succeeded,
    error_message,
    is_pending,
)
from consolegate.service.errors import (
    AuthenticationError,
    ServiceError,
    StepUpBusyError,
    ValidationError,
)
from consolegate.service.session import MFA_CODE_FORMAT_MESSAGE, SessionStore, normalize_mfa_code
from consolegate.service.verifier import CredentialVerifier

logger = get_logger(__name__)

DEFAULT_ACTION_DESCRIPTION = "This action requires MFA verification to proceed."

Operation = Callable[[Optional[str]], Awaitable[Any]]


@dataclass
class StepUpRequest:
    action_name: str
    action_description: str
    operation: Operation
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ModalConfig:
    action_name: str
    action_description: str


class StepUpCoordinator:
    """Runs one sensitive operation behind a fresh second-factor check.

    When the operator has MFA enabled, :meth:`execute_with_mfa` parks the
    operation and opens a challenge; :meth:`handle_mfa_verified` exchanges the
    code for a one-time action token and runs the parked operation with that
    token exposed on the channel. At most one challenge is open at a time.
    """

    def __init__(
        self,
        session: SessionStore,
        verifier: CredentialVerifier,
        channel: ActionTokenChannel,
        action_name: str,
        action_description: Optional[str] = None,
        *,
        on_challenge: Optional[Callable[[StepUpRequest], None]] = None,
        on_success: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self.session = session
        self.verifier = verifier
        self.channel = channel
        self.action_name = action_name
        self.action_description = action_description or DEFAULT_ACTION_DESCRIPTION
        self.on_challenge = on_challenge
        self.on_success = on_success
        self.on_error = on_error
        self.verification: AsyncState = IDLE
        self.operation: AsyncState = IDLE
        self._request: Optional[StepUpRequest] = None

    @property
    def pending_request(self) -> Optional[StepUpRequest]:
        return self._request

    @property
    def is_challenge_open(self) -> bool:
        return self._request is not None

    @property
    def is_loading(self) -> bool:
        return is_pending(self.verification) or is_pending(self.operation)

    @property
    def error(self) -> Optional[str]:
        return error_message(self.verification) or error_message(self.operation)

    @property
    def modal_config(self) -> ModalConfig:
        return ModalConfig(self.action_name, self.action_description)

    async def execute_with_mfa(self, operation: Operation) -> Any:
        """Run ``operation`` now, or park it behind a challenge.

        Returns the operation's result when no second factor is needed and
        ``None`` when a challenge was opened instead.
        """
        snapshot = self.session.snapshot
        if not snapshot.is_authenticated:
            raise AuthenticationError("Sign in to continue.")
        if self._request is not None:
            logger.warning("step_up_busy", action=self.action_name)
            raise StepUpBusyError(
                "Another verification is already in progress for this action."
            )

        self.verification = IDLE
        self.operation = IDLE
        if not snapshot.operator.mfa_enabled:
            return await self._run(operation, None)

        request = StepUpRequest(self.action_name, self.action_description, operation)
        self._request = request
        logger.info("step_up_challenge_opened", action=self.action_name)
        if self.on_challenge is not None:
            self.on_challenge(request)
        return None

    async def handle_mfa_verified(self, code: str) -> Any:
        """Verify ``code`` for the open challenge and run the parked operation.

        A rejected code leaves the challenge open with :attr:`error` set and
        returns ``None``. Errors raised by the operation itself propagate.
        """
        request = self._request
        if request is None:
            logger.info("step_up_verification_without_challenge", action=self.action_name)
            return None
        if is_pending(self.verification) or is_pending(self.operation):
            logger.info("step_up_verification_in_progress", action=self.action_name)
            return None

        normalized = normalize_mfa_code(code)
        if normalized is None:
            self.verification = Failed(ValidationError(MFA_CODE_FORMAT_MESSAGE))
            return None

        self.verification = PENDING
        try:
            action_token = await self.verifier.verify_action_mfa(normalized, self.action_name)
        except ServiceError as exc:
            if self._request is not request:
                logger.info("stale_step_up_verification_ignored", action=self.action_name)
                return None
            self.verification = Failed(exc)
            logger.info(
                "step_up_code_rejected", action=self.action_name, error_code=exc.error_code
            )
            if not self.session.is_authenticated:
                self._request = None
            return None
        except Exception as exc:
            self.verification = Failed(exc)
            logger.error(
                "step_up_verification_error", action=self.action_name, error=str(exc)
            )
            raise

        if self._request is not request:
            logger.info("stale_step_up_verification_ignored", action=self.action_name)
            return None
        self.verification = Succeeded()
        self._request = None
        logger.info("step_up_verified", action=self.action_name)
        with self.channel.issued(action_token):
            return await self._run(request.operation, action_token)

    def close_challenge(self) -> None:
        """Drop the parked operation without running it."""
        if self._request is not None:
            logger.info("step_up_challenge_closed", action=self.action_name)
        self._request = None
        self.verification = IDLE

    def bind(self, mutation: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """Wrap ``mutation(action_token, *args)`` as ``execute(*args)``."""

        async def execute(*args: Any) -> Any:
            async def operation(action_token: Optional[str]) -> Any:
                return await mutation(action_token, *args)

            return await self.execute_with_mfa(operation)

        return execute

    async def _run(self, operation: Operation, action_token: Optional[str]) -> Any:
        self.operation = PENDING
        try:
            result = await operation(action_token)
        except Exception as exc:
            self.operation = Failed(exc)
            logger.info("step_up_operation_failed", action=self.action_name, error=str(exc))
            if self.on_error is not None:
                self.on_error(exc)
            raise
        self.operation = Succeeded(result)
        logger.info("step_up_operation_completed", action=self.action_name)
        if self.on_success is not None:
            self.on_success(result)
        return result


__all__ = [
    "DEFAULT_ACTION_DESCRIPTION",
    "ModalConfig",
    "StepUpCoordinator",
    "StepUpRequest",
]
