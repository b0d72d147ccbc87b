from __future__ import annotations

import threading
from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from consolegate.config import Settings, TokenStorageBackend, get_settings
from consolegate.logging import get_logger
from consolegate.service.action_token import ActionTokenChannel
from consolegate.service.guards import GuardDecision
from consolegate.service.routes import guard_route
from consolegate.service.session import SessionStore
from consolegate.service.step_up import StepUpCoordinator, StepUpRequest
from consolegate.service.transport import ConsoleAuth
from consolegate.service.verifier import REFRESH_PATH, HttpCredentialVerifier
from consolegate.storage.token_store import TokenStorage, build_token_storage

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class ConsoleRuntime:
    """Wires storage, transport, verifier and session for one console process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        storage: Optional[TokenStorage] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        backend = TokenStorageBackend(self.settings.token_storage)
        logger.info(
            "runtime_init_started",
            api_base_url=self.settings.api_base_url,
            token_storage=backend.value,
            test_mode=self.settings.test_mode,
        )

        if storage is None:
            if backend is TokenStorageBackend.REDIS and not self.settings.redis_url:
                raise RuntimeError(
                    "CONSOLE_TOKEN_STORAGE=redis requires REDIS_URL to be set."
                )
            try:
                storage = build_token_storage(self.settings)
            except Exception as exc:
                logger.error(
                    "runtime_storage_init_failed",
                    token_storage=backend.value,
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.storage = storage

        self.channel = ActionTokenChannel()
        self.auth = ConsoleAuth(
            self.channel,
            self.storage,
            refresh_url=f"{self.settings.api_base_url}{REFRESH_PATH}",
            action_token_header=self.settings.action_token_header,
        )
        self.verifier = HttpCredentialVerifier.from_settings(
            self.settings, auth=self.auth, transport=transport
        )
        self.session = SessionStore(
            self.verifier,
            self.storage,
            mfa_max_attempts=self.settings.mfa_max_attempts,
        )
        self.auth.attach(self.session)
        logger.info(
            "runtime_init_completed",
            has_stored_session=not self.session.snapshot.initialized,
            mfa_max_attempts=self.settings.mfa_max_attempts,
        )

    def step_up(
        self,
        action_name: str,
        action_description: Optional[str] = None,
        *,
        on_challenge: Optional[Callable[[StepUpRequest], None]] = None,
        on_success: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> StepUpCoordinator:
        """Create a coordinator for one sensitive action, bound to this session."""
        return StepUpCoordinator(
            self.session,
            self.verifier,
            self.channel,
            action_name,
            action_description,
            on_challenge=on_challenge,
            on_success=on_success,
            on_error=on_error,
        )

    def guard(self, location: str) -> GuardDecision:
        return guard_route(self.session, location, settings=self.settings)

    async def aclose(self) -> None:
        await self.verifier.aclose()
        client = getattr(self.storage, "client", None)
        if client is not None and hasattr(client, "close"):
            client.close()


runtime: ConsoleRuntime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> ConsoleRuntime:
    """Get or create the process-wide runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = ConsoleRuntime()
        return runtime


def reset_runtime_for_tests(runtime_instance: Optional[ConsoleRuntime] = None) -> Optional[ConsoleRuntime]:
    """Replace the process-wide runtime; ``None`` forces a rebuild on next use."""
    global runtime
    with _runtime_lock:
        runtime = runtime_instance
        return runtime


__all__ = ["ConsoleRuntime", "get_runtime", "reset_runtime_for_tests"]
