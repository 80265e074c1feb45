from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from dealflow.logging import get_logger
from dealflow.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    generate_uuid,
    normalize_email,
)
from dealflow.storage.errors import ConstraintViolation
from dealflow.storage.models import Account, AuditEvent, RefreshTokenRecord, utcnow


class MemoryStore:
    """In-memory credential store with JSON snapshots under ``fs_root/state``.

    Used for tests and single-process development. Every read hands back a
    copy so callers observe the same snapshot semantics a database gives.
    """

    def __init__(
        self, fs_root: str = "/tmp/dealflow", *, secret_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_secret_cipher(
            secret_key or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _public_copy(self, account: Account) -> Account:
        return replace(
            account, two_factor_secret=decrypt_secret(self._cipher, account.two_factor_secret)
        )

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        subscription_tier: str = "basic",
        access_code: Optional[str] = None,
        internal_account: bool = False,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
                subscription_tier=subscription_tier,
                access_code=access_code,
                internal_account=internal_account,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return self._public_copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._public_copy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return self._public_copy(account)
        return None

    def list_accounts(self, limit: int = 1000) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.created_at)
            return [self._public_copy(a) for a in ordered[:limit]]

    def _require_account(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    def update_login_state(
        self,
        account_id: str,
        *,
        failed_login_attempts: int,
        lock_until: Optional[datetime],
        last_login: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.failed_login_attempts = failed_login_attempts
            account.lock_until = lock_until
            if last_login is not None:
                account.last_login = last_login
            self._persist_state()

    def set_two_factor_secret(self, account_id: str, secret: str) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.two_factor_secret = encrypt_secret(self._cipher, secret)
            self._persist_state()

    def enable_two_factor(self, account_id: str) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.two_factor_enabled = True
            self._persist_state()

    def update_password(
        self, account_id: str, password_hash: str, *, bump_token_version: bool = True
    ) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.password_hash = password_hash
            if bump_token_version:
                account.token_version += 1
            self._persist_state()
            return self._public_copy(account)

    def bump_token_version(self, account_id: str) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.token_version += 1
            self._persist_state()
            return self._public_copy(account)

    def set_subscription_tier(self, account_id: str, tier: str) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.subscription_tier = tier
            self._persist_state()
            return self._public_copy(account)

    # refresh tokens
    def create_refresh_token(
        self,
        account_id: str,
        token: str,
        *,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshTokenRecord:
        with self._data_lock:
            self._require_account(account_id)
            if any(rec.token == token for rec in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshTokenRecord.new(
                account_id,
                token,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return replace(record)

    def get_active_refresh_token(
        self, token: str, account_id: str
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if (
                    record.token == token
                    and record.account_id == account_id
                    and not record.revoked
                ):
                    return replace(record)
        return None

    def touch_refresh_token(self, record_id: str) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(record_id)
            if not record:
                return
            record.last_used_at = utcnow()
            self._persist_state()

    def set_refresh_token_expiry(self, record_id: str, expires_at: datetime) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(record_id)
            if not record:
                return
            record.expires_at = expires_at
            self._persist_state()

    def revoke_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            revoked = False
            for record in self.refresh_tokens.values():
                if record.token == token and not record.revoked:
                    record.revoked = True
                    revoked = True
            if revoked:
                self._persist_state()
            return revoked

    def revoke_account_refresh_tokens(self, account_id: str) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.account_id == account_id and not record.revoked:
                    record.revoked = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def list_refresh_tokens(self, account_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return [
                replace(rec)
                for rec in self.refresh_tokens.values()
                if rec.account_id == account_id
            ]

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(replace(event))
            self._persist_state()

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                replace(e)
                for e in self.audit_events
                if account_id is None or e.account_id == account_id
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    def verify_connection(self) -> None:
        """Probe used by /healthz; the state directory must be writable."""
        probe = self._state_path().parent / ".health_check"
        probe.write_text(utcnow().isoformat())
        probe.unlink(missing_ok=True)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "role": account.role,
            "subscription_tier": account.subscription_tier,
            "access_code": account.access_code,
            # already encrypted in memory
            "two_factor_secret": account.two_factor_secret,
            "two_factor_enabled": account.two_factor_enabled,
            "failed_login_attempts": account.failed_login_attempts,
            "lock_until": self._serialize_datetime(account.lock_until),
            "token_version": account.token_version,
            "internal_account": account.internal_account,
            "last_login": self._serialize_datetime(account.last_login),
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=data.get("role", "user"),
            subscription_tier=data.get("subscription_tier", "basic"),
            access_code=data.get("access_code"),
            two_factor_secret=data.get("two_factor_secret"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            token_version=int(data.get("token_version", 0)),
            internal_account=bool(data.get("internal_account", False)),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "account_id": record.account_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "user_agent": record.user_agent,
            "ip_address": record.ip_address,
            "last_used_at": self._serialize_datetime(record.last_used_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            account_id=str(data["account_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "action": event.action,
            "status": event.status,
            "account_id": event.account_id,
            "resource": event.resource,
            "details": event.details,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=str(data["id"]),
            action=data["action"],
            status=data["status"],
            account_id=data.get("account_id"),
            resource=data.get("resource"),
            details=data.get("details"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
