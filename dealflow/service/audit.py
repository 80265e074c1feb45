from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol

from dealflow.logging import get_logger, sanitize_error_message
from dealflow.storage.common import generate_uuid
from dealflow.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILURE = "auth.login.failure"
    LOGOUT = "auth.logout"
    PASSWORD_CHANGE = "auth.password_change"
    MFA_SETUP = "auth.mfa.setup"
    MFA_VERIFY = "auth.mfa.verify"
    MFA_FAILURE = "auth.mfa.failure"
    REGISTER = "auth.register"
    ACCOUNT_LOCKED = "auth.account.locked"
    TOKEN_REFRESH = "auth.token.refresh"
    RATE_LIMIT = "security.rate_limit"
    TIER_DENIED = "security.tier_denied"
    TIER_CHANGE = "admin.tier_change"
    SESSIONS_REVOKED = "admin.sessions_revoked"


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> None: ...


class AuditSink:
    """Fire-and-forget audit trail.

    A failed write is logged and dropped; it never fails the request that
    triggered it.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def emit(
        self,
        action: AuditAction,
        *,
        status: str = "success",
        account_id: Optional[str] = None,
        resource: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            event = AuditEvent(
                id=generate_uuid(),
                action=AuditAction(action).value,
                status=status,
                account_id=account_id,
                resource=resource,
                details=dict(details or {}),
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=getattr(action, "value", str(action)),
                account_id=account_id,
                error=sanitize_error_message(str(exc)),
            )
