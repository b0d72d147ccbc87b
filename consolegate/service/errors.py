from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for console auth errors.

    Each subclass carries the HTTP status it corresponds to and a stable
    ``error_code`` so callers can branch without parsing messages:
    - validation_error (400)
    - invalid_credentials / invalid_mfa_code / unauthorized (401)
    - forbidden (403)
    - invalid_transition / step_up_pending (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)

    ``message`` is always safe to show to an operator.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class CredentialError(AuthenticationError):
    """Email/password pair rejected at login (401)."""
    error_code = "invalid_credentials"


class MfaCodeRejectedError(CredentialError):
    """A second-factor code was rejected (401)."""
    error_code = "invalid_mfa_code"


class SessionExpiredError(AuthenticationError):
    """Bearer token is no longer accepted (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient capabilities (403)."""
    status_code = 403
    error_code = "forbidden"


class InvalidTransitionError(ServiceError):
    """Operation is not allowed in the current session phase (409)."""
    status_code = 409
    error_code = "invalid_transition"


class StepUpBusyError(ServiceError):
    """A step-up challenge is already open for this action (409)."""
    status_code = 409
    error_code = "step_up_pending"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Authentication service failed (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """Authentication service unreachable, timed out or overloaded (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "CredentialError",
    "MfaCodeRejectedError",
    "SessionExpiredError",
    "ForbiddenError",
    "InvalidTransitionError",
    "StepUpBusyError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
