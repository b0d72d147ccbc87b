from __future__ import annotations

from typing import TYPE_CHECKING, AsyncGenerator, Generator, Optional

import httpx

from consolegate.logging import get_logger
from consolegate.service.action_token import ActionTokenChannel
from consolegate.service.verifier import UNAUTHENTICATED_PATHS
from consolegate.storage.token_store import REFRESH_TOKEN_KEY, TokenStorage

if TYPE_CHECKING:
    from consolegate.service.session import SessionStore

logger = get_logger(__name__)

DEFAULT_ACTION_TOKEN_HEADER = "X-MFA-Action-Token"


class ConsoleAuth(httpx.Auth):
    """Outbound request hook for the console's HTTP client.

    - adds ``Authorization: Bearer`` from the live session unless the caller
      already set one;
    - adds the step-up action token while the channel holds one;
    - on a 401 for a request it authorised, rotates tokens through one
      refresh call and retries once, otherwise expires the session.

    The flow overrides ``async_auth_flow`` directly, so response bodies it
    inspects must be read here.
    """

    def __init__(
        self,
        channel: ActionTokenChannel,
        storage: TokenStorage,
        *,
        refresh_url: str,
        action_token_header: str = DEFAULT_ACTION_TOKEN_HEADER,
    ) -> None:
        self.channel = channel
        self.storage = storage
        self.refresh_url = refresh_url
        self.action_token_header = action_token_header
        self._session: Optional["SessionStore"] = None

    def attach(self, session: "SessionStore") -> None:
        """Bind the session store whose bearer token this hook injects."""
        self._session = session

    def sync_auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("ConsoleAuth requires httpx.AsyncClient")

    def _is_unauthenticated_path(self, path: str) -> bool:
        return any(path.endswith(p) for p in UNAUTHENTICATED_PATHS)

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        authorised = False
        if "Authorization" not in request.headers and self._session is not None:
            token = self._session.bearer_token
            if token:
                request.headers["Authorization"] = f"Bearer {token}"
                authorised = True

        # Read once per request; the coordinator clears it right after the call
        action_token = self.channel.current
        if action_token:
            request.headers[self.action_token_header] = action_token

        response = yield request

        if (
            response.status_code != 401
            or not authorised
            or self._session is None
            or self._is_unauthenticated_path(request.url.path)
        ):
            return

        new_token: Optional[str] = None
        new_refresh: Optional[str] = None
        refresh_token = self.storage.get(REFRESH_TOKEN_KEY)
        if refresh_token:
            refresh_response = yield httpx.Request(
                "POST",
                self.refresh_url,
                json={"refreshToken": refresh_token},
                headers={"Content-Type": "application/json"},
            )
            if refresh_response.is_success:
                await refresh_response.aread()
                try:
                    payload = refresh_response.json()
                except ValueError:
                    payload = {}
                if isinstance(payload, dict):
                    new_token = payload.get("accessToken")
                    new_refresh = payload.get("refreshToken")
            else:
                logger.info(
                    "token_refresh_rejected", status_code=refresh_response.status_code
                )

        if not new_token:
            logger.warning("session_rejected_by_service", path=request.url.path)
            self._session.session_expired()
            return

        self._session.token_refreshed(new_token, new_refresh)
        request.headers["Authorization"] = f"Bearer {new_token}"
        retry_response = yield request
        if retry_response.status_code == 401:
            # Fresh token rejected too; do not refresh again
            logger.warning("session_rejected_after_refresh", path=request.url.path)
            self._session.session_expired()


__all__ = ["ConsoleAuth", "DEFAULT_ACTION_TOKEN_HEADER"]
