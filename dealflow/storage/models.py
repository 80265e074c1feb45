from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    role: str = "user"
    subscription_tier: str = "basic"
    access_code: Optional[str] = None
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    token_version: int = 0
    internal_account: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now


@dataclass
class RefreshTokenRecord:
    id: str
    account_id: str
    token: str
    expires_at: datetime
    revoked: bool = False
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        token: str,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "RefreshTokenRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token=token,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
        )


@dataclass
class AuditEvent:
    id: str
    action: str
    status: str
    account_id: Optional[str] = None
    resource: Optional[str] = None
    details: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
