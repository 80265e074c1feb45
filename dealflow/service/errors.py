from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients branch on:
    - validation_error (400)
    - invalid_credentials / unauthorized / invalid_two_factor_code (401)
    - two_factor_required / TIER_RESTRICTED / forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked / rate_limited (429)
    - server_error (500)
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
    """Authentication failed or missing (401).

    Missing, expired, revoked and version-mismatched tokens all surface as
    this one error so a client cannot tell them apart.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password (401); the message never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTwoFactorCodeError(AuthenticationError):
    """Submitted TOTP code did not match (401)."""
    error_code = "invalid_two_factor_code"

    def __init__(self, message: str = "Invalid two-factor code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class TwoFactorRequiredError(ForbiddenError):
    """Authenticated, but the session has not passed the second factor (403)."""
    error_code = "two_factor_required"

    def __init__(
        self, message: str = "Two-factor verification required", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class TierRestrictedError(ForbiddenError):
    """Subscription tier too low for the requested feature (403)."""
    error_code = "TIER_RESTRICTED"

    def __init__(
        self,
        required_tier: dict,
        message: str = "Upgrade required to access this feature",
        **kwargs,
    ) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail["requiredTier"] = required_tier
        super().__init__(message, detail=detail, **kwargs)
        self.required_tier = required_tier


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class AccountLockedError(RateLimitedError):
    """Too many failed logins; the lock window has not elapsed (429)."""
    error_code = "account_locked"

    def __init__(
        self, message: str = "Account temporarily locked. Try again later.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


InternalError = ServerError


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTwoFactorCodeError",
    "ForbiddenError",
    "TwoFactorRequiredError",
    "TierRestrictedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
    "InternalError",
]
