from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Type

import httpx

from consolegate.config import Settings
from consolegate.logging import get_logger, sanitize_error_message
from consolegate.service.errors import (
    CredentialError,
    ForbiddenError,
    MfaCodeRejectedError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ServiceUnavailableError,
    SessionExpiredError,
    ValidationError,
)
from consolegate.storage.models import (
    ActiveSession,
    Credentials,
    LoginResult,
    MfaSetup,
    MfaStatus,
    Operator,
    TokenPair,
    parse_capabilities,
)

logger = get_logger(__name__)

LOGIN_PATH = "/auth/admin/login"
VERIFY_MFA_PATH = "/auth/admin/verify-mfa"
PROFILE_PATH = "/auth/admin/me"
LOGOUT_PATH = "/auth/admin/logout"
LOGOUT_ALL_PATH = "/auth/admin/logout-all"
REFRESH_PATH = "/auth/admin/refresh"
CHANGE_PASSWORD_PATH = "/auth/admin/change-password"
FORGOT_PASSWORD_PATH = "/auth/admin/forgot-password"
SET_PASSWORD_PATH = "/auth/admin/set-password"
SESSIONS_PATH = "/auth/admin/sessions"
MFA_STATUS_PATH = "/auth/admin/mfa/status"
MFA_SETUP_PATH = "/auth/admin/mfa/start-setup"
MFA_ENABLE_PATH = "/auth/admin/mfa/enable"
MFA_DISABLE_PATH = "/auth/admin/mfa/disable"
MFA_BACKUP_CODES_PATH = "/auth/admin/mfa/backup-codes"
MFA_VERIFY_ACTION_PATH = "/auth/admin/mfa/verify-action"

# Endpoints reachable without a bearer token; a 401 from these is a
# credential problem, never an expired session
UNAUTHENTICATED_PATHS = frozenset(
    {LOGIN_PATH, VERIFY_MFA_PATH, REFRESH_PATH, FORGOT_PASSWORD_PATH, SET_PASSWORD_PATH}
)

_STATUS_MESSAGES = {
    400: "Bad request. Please check your input.",
    401: "Your session has expired. Please sign in again.",
    403: "You do not have permission to perform this action.",
    404: "The requested resource was not found.",
    409: "A conflict occurred. Please refresh and try again.",
    422: "Validation error. Please check your input.",
    429: "Too many requests. Please wait and try again.",
    500: "Server error. Please try again later.",
    502: "Service temporarily unavailable.",
    503: "Service temporarily unavailable.",
    504: "Service temporarily unavailable.",
}


class CredentialVerifier(Protocol):
    """Calls into the external authentication service."""

    async def login(self, email: str, password: str) -> LoginResult: ...

    async def verify_mfa(self, mfa_token: str, code: str) -> Credentials: ...

    async def get_profile(self, token: Optional[str] = None) -> Operator: ...

    async def logout(self, token: str) -> None: ...

    async def refresh(self, refresh_token: str) -> TokenPair: ...

    async def get_mfa_status(self) -> MfaStatus: ...

    async def setup_mfa(self) -> MfaSetup: ...

    async def enable_mfa(self, code: str) -> List[str]: ...

    async def disable_mfa(self, code: str) -> None: ...

    async def get_backup_codes(self) -> List[str]: ...

    async def verify_action_mfa(self, code: str, action_name: str) -> str: ...

    async def change_password(self, current_password: str, new_password: str) -> None: ...

    async def request_password_reset(self, email: str) -> None: ...

    async def reset_password(self, token: str, new_password: str) -> None: ...

    async def list_sessions(self) -> List[ActiveSession]: ...

    async def revoke_session(self, session_id: str) -> None: ...

    async def revoke_other_sessions(self) -> None: ...


def _server_message(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if data.get("message"):
        return str(data["message"])
    if data.get("error"):
        return str(data["error"])
    errors = data.get("errors")
    if isinstance(errors, list) and errors:
        return str(errors[0])
    return None


def error_from_response(
    response: httpx.Response,
    *,
    credential_error: Optional[Type[CredentialError]] = None,
) -> ServiceError:
    """Map a non-2xx response onto the error taxonomy."""
    status = response.status_code
    raw = _server_message(response)
    message = sanitize_error_message(raw) if raw else _STATUS_MESSAGES.get(
        status, "An unexpected error occurred."
    )
    detail: Dict[str, Any] = {"path": response.request.url.path}

    if credential_error is not None and status in {400, 401, 422}:
        if not raw:
            message = (
                "Invalid verification code. Please try again."
                if issubclass(credential_error, MfaCodeRejectedError)
                else "Invalid email or password."
            )
        return credential_error(message, status_code=status, detail=detail)
    if status == 401:
        return SessionExpiredError(message, detail=detail)
    if status == 403:
        return ForbiddenError(message, detail=detail)
    if status == 429:
        retry_after = response.headers.get("retry-after")
        if retry_after and retry_after.isdigit():
            detail["retry_after"] = int(retry_after)
        return RateLimitedError(message, detail=detail)
    if status in {502, 503, 504}:
        return ServiceUnavailableError(message, status_code=status, detail=detail)
    if status >= 500:
        return ServerError(message, status_code=status, detail=detail)
    if status == 404:
        return ServiceError(message, status_code=404, error_code="not_found", detail=detail)
    if status == 409:
        return ServiceError(message, status_code=409, error_code="conflict", detail=detail)
    return ValidationError(message, status_code=status, detail=detail)


class HttpCredentialVerifier:
    """Credential verifier speaking the console's ``/auth/admin`` HTTP API.

    Bearer and action tokens are attached by the client's ``auth`` hook
    (see :class:`consolegate.service.transport.ConsoleAuth`); methods that
    must use a specific token take it explicitly.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        auth: Optional[httpx.Auth] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "HttpCredentialVerifier":
        client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.request_timeout_seconds,
            headers={"Content-Type": "application/json"},
            auth=auth,
            transport=transport,
        )
        return cls(client)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        token: Optional[str] = None,
        credential_error: Optional[Type[CredentialError]] = None,
        allow_list: bool = False,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self.client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("auth_service_timeout", path=path, method=method)
            raise ServiceUnavailableError("Request timeout. Please try again.") from exc
        except httpx.TransportError as exc:
            logger.warning(
                "auth_service_unreachable", path=path, method=method, error=str(exc)
            )
            raise ServiceUnavailableError(
                "Network error. Please check your connection."
            ) from exc

        if not response.is_success:
            error = error_from_response(response, credential_error=credential_error)
            logger.info(
                "auth_service_rejected",
                path=path,
                method=method,
                status_code=response.status_code,
                error_code=error.error_code,
            )
            raise error

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("auth_service_bad_payload", path=path, method=method)
            raise ServerError("Unexpected response from the authentication service.") from exc
        if not isinstance(payload, dict) and not (allow_list and isinstance(payload, list)):
            logger.error("auth_service_bad_payload", path=path, method=method)
            raise ServerError("Unexpected response from the authentication service.")
        return payload

    def _operator(self, admin: Any) -> Operator:
        if not isinstance(admin, dict) or "id" not in admin:
            raise ServerError("Authentication service returned no operator profile.")
        _, unknown = parse_capabilities((admin.get("dynamicRole") or {}).get("permissions"))
        if unknown:
            logger.warning("unknown_capabilities_ignored", operator_id=str(admin["id"]), tags=unknown)
        return Operator.from_api(admin)

    def _credentials(self, data: Dict[str, Any]) -> Credentials:
        token = data.get("accessToken") or data.get("token")
        if not token:
            raise ServerError("Authentication service returned no access token.")
        return Credentials(
            operator=self._operator(data.get("admin")),
            token=token,
            refresh_token=data.get("refreshToken"),
        )

    async def login(self, email: str, password: str) -> LoginResult:
        data = await self._request(
            "POST",
            LOGIN_PATH,
            json={"email": email, "password": password},
            credential_error=CredentialError,
        )
        if data.get("requiresMfa"):
            mfa_token = data.get("mfaToken")
            if not mfa_token:
                raise ServerError("Authentication service requested MFA without a challenge.")
            return LoginResult(mfa_required=True, mfa_token=mfa_token)
        return LoginResult(mfa_required=False, credentials=self._credentials(data))

    async def verify_mfa(self, mfa_token: str, code: str) -> Credentials:
        data = await self._request(
            "POST",
            VERIFY_MFA_PATH,
            json={"mfaToken": mfa_token, "code": code},
            credential_error=MfaCodeRejectedError,
        )
        return self._credentials(data)

    async def get_profile(self, token: Optional[str] = None) -> Operator:
        data = await self._request("GET", PROFILE_PATH, token=token)
        admin = data.get("admin", data) if isinstance(data, dict) else data
        return self._operator(admin)

    async def logout(self, token: str) -> None:
        await self._request("POST", LOGOUT_PATH, token=token)

    async def refresh(self, refresh_token: str) -> TokenPair:
        data = await self._request(
            "POST", REFRESH_PATH, json={"refreshToken": refresh_token}
        )
        token = data.get("accessToken")
        if not token:
            raise ServerError("Authentication service returned no access token.")
        return TokenPair(token=token, refresh_token=data.get("refreshToken"))

    async def get_mfa_status(self) -> MfaStatus:
        data = await self._request("GET", MFA_STATUS_PATH)
        return MfaStatus(
            mfa_enabled=bool(data.get("mfaEnabled", False)),
            mfa_required=bool(data.get("mfaRequired", False)),
        )

    async def setup_mfa(self) -> MfaSetup:
        data = await self._request("POST", MFA_SETUP_PATH)
        secret = data.get("secret")
        if not secret:
            raise ServerError("Authentication service returned no MFA secret.")
        return MfaSetup(
            secret=secret,
            qr_code=data.get("qrCodeUrl") or data.get("qrCode") or "",
            backup_codes=list(data.get("backupCodes") or []),
        )

    async def enable_mfa(self, code: str) -> List[str]:
        data = await self._request(
            "POST", MFA_ENABLE_PATH, json={"code": code}, credential_error=MfaCodeRejectedError
        )
        return list(data.get("backupCodes") or [])

    async def disable_mfa(self, code: str) -> None:
        await self._request(
            "POST", MFA_DISABLE_PATH, json={"code": code}, credential_error=MfaCodeRejectedError
        )

    async def get_backup_codes(self) -> List[str]:
        data = await self._request("GET", MFA_BACKUP_CODES_PATH)
        return list(data.get("backupCodes") or [])

    async def verify_action_mfa(self, code: str, action_name: str) -> str:
        data = await self._request(
            "POST",
            MFA_VERIFY_ACTION_PATH,
            json={"code": code, "action": action_name},
            credential_error=MfaCodeRejectedError,
        )
        action_token = data.get("actionToken")
        if not action_token:
            raise ServerError("Authentication service returned no action token.")
        return action_token

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self._request(
            "POST",
            CHANGE_PASSWORD_PATH,
            json={"currentPassword": current_password, "newPassword": new_password},
        )

    async def request_password_reset(self, email: str) -> None:
        await self._request("POST", FORGOT_PASSWORD_PATH, json={"email": email})

    async def reset_password(self, token: str, new_password: str) -> None:
        await self._request(
            "POST", SET_PASSWORD_PATH, json={"token": token, "password": new_password}
        )

    async def list_sessions(self) -> List[ActiveSession]:
        data = await self._request("GET", SESSIONS_PATH, allow_list=True)
        items = data.get("sessions", []) if isinstance(data, dict) else data
        return [ActiveSession.from_api(item) for item in items or []]

    async def revoke_session(self, session_id: str) -> None:
        await self._request("DELETE", f"{SESSIONS_PATH}/{session_id}")

    async def revoke_other_sessions(self) -> None:
        await self._request("POST", LOGOUT_ALL_PATH)


__all__ = [
    "CredentialVerifier",
    "HttpCredentialVerifier",
    "UNAUTHENTICATED_PATHS",
    "error_from_response",
]
