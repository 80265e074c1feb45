from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from dealflow.logging import get_correlation_id
from dealflow.storage.models import Account

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_credentials",
    "account_locked",
    "unauthorized",
    "two_factor_required",
    "invalid_two_factor_code",
    "TIER_RESTRICTED",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
})

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ErrorBody(BaseModel):
    """Error envelope body with stable code values clients branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value or "").strip()
    if not 2 <= len(cleaned) <= 100:
        raise ValueError("must be between 2 and 100 characters")
    return cleaned


class RegisterRequest(CamelModel):
    email: str
    # strength rules are enforced by the auth service
    password: str = Field(..., max_length=128)
    first_name: str
    last_name: str
    access_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("access_code")
    @classmethod
    def _blank_access_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)


class TwoFactorVerifyRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=16)


class PasswordChangeRequest(CamelModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=128)


class TierChangeRequest(CamelModel):
    subscription_tier: str = Field(..., min_length=1, max_length=64)


class UserResponse(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    subscription_tier: str
    two_factor_enabled: bool
    internal_account: bool = False
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role,
            subscription_tier=account.subscription_tier,
            two_factor_enabled=account.two_factor_enabled,
            internal_account=account.internal_account,
            last_login=account.last_login,
            created_at=account.created_at,
        )


def account_to_response(account: Account) -> dict[str, Any]:
    """Serialize an account for clients; secrets and counters are never exposed."""
    return UserResponse.from_account(account).model_dump(by_alias=True, mode="json")
