from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - expired_ticket (401)
    - not_found (401)
    - conflict (401, or 409 for duplicate resources)
    - feature_disabled (404)
    - downstream_unavailable (503)
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
    """Malformed or missing input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Wrong password, OTP or TOTP code (401)."""
    status_code = 401
    error_code = "unauthorized"


class DisabledUserError(AuthenticationError):
    """The user exists but may not sign in (401)."""
    error_code = "disabled_user"


class ExpiredTicketError(ServiceError):
    """Ticket or code presented at or after its expiry (401)."""
    status_code = 401
    error_code = "expired_ticket"


class NotFoundError(ServiceError):
    """Unknown ticket, user or phone number (401)."""
    status_code = 401
    error_code = "not_found"


class ConflictError(ServiceError):
    """Ticket already consumed by another caller (401)."""
    status_code = 401
    error_code = "conflict"


class FeatureDisabledError(ServiceError):
    """The sign-in method or feature is not activated (404)."""
    status_code = 404
    error_code = "feature_disabled"


class DownstreamUnavailableError(ServiceError):
    """Breach lookup, email, SMS or provider call failed or timed out (503)."""
    status_code = 503
    error_code = "downstream_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "DisabledUserError",
    "ExpiredTicketError",
    "NotFoundError",
    "ConflictError",
    "FeatureDisabledError",
    "DownstreamUnavailableError",
]
