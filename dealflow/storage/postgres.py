from __future__ import annotations

import json
import uuid
from datetime import datetime
from ipaddress import ip_address
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from dealflow.logging import get_logger
from dealflow.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    ensure_aware,
    generate_uuid,
    normalize_email,
    parse_json_meta,
)
from dealflow.storage.errors import ConstraintViolation
from dealflow.storage.models import Account, AuditEvent, RefreshTokenRecord, utcnow

_ACCOUNT_COLUMNS = """
    id, email, password_hash, first_name, last_name, role, subscription_tier,
    access_code, two_factor_secret, two_factor_enabled, failed_login_attempts,
    lock_until, token_version, internal_account, last_login, created_at
"""

_REFRESH_COLUMNS = """
    id, account_id, token, expires_at, revoked, user_agent, ip_address,
    last_used_at, created_at
"""


def _parse_ip(raw_ip: Optional[str]) -> Optional[str]:
    """Return a canonical IP string or None so INET inserts never fail on junk."""
    if not raw_ip:
        return None
    try:
        return str(ip_address(raw_ip.strip()))
    except ValueError:
        return None


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store (schema in ``sql/001_auth_core.sql``)."""

    def __init__(
        self,
        dsn: str,
        *,
        secret_key: str,
        connect_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=connect_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(secret_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = ["account", "refresh_token", "audit_event"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _row_to_account(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=str(row["email"]),
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=row.get("role", "user"),
            subscription_tier=row.get("subscription_tier", "basic"),
            access_code=row.get("access_code"),
            two_factor_secret=decrypt_secret(self._cipher, row.get("two_factor_secret")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            lock_until=ensure_aware(row.get("lock_until")),
            token_version=int(row.get("token_version") or 0),
            internal_account=bool(row.get("internal_account", False)),
            last_login=ensure_aware(row.get("last_login")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    def _row_to_refresh_token(self, row: dict) -> RefreshTokenRecord:
        raw_ip = row.get("ip_address")
        return RefreshTokenRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token=row["token"],
            expires_at=ensure_aware(row["expires_at"]),
            revoked=bool(row.get("revoked", False)),
            user_agent=row.get("user_agent"),
            ip_address=str(raw_ip) if raw_ip is not None else None,
            last_used_at=ensure_aware(row.get("last_used_at")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    def _row_to_audit_event(self, row: dict) -> AuditEvent:
        raw_ip = row.get("ip_address")
        return AuditEvent(
            id=str(row["id"]),
            action=row["action"],
            status=row["status"],
            account_id=str(row["account_id"]) if row.get("account_id") else None,
            resource=row.get("resource"),
            details=parse_json_meta(row.get("details")),
            ip_address=str(raw_ip) if raw_ip is not None else None,
            user_agent=row.get("user_agent"),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
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
        account_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO account (id, email, password_hash, first_name, last_name,
                                         role, subscription_tier, access_code, internal_account)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account_id,
                        normalize_email(email),
                        password_hash,
                        first_name,
                        last_name,
                        role,
                        subscription_tier,
                        access_code,
                        internal_account,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, limit: int = 1000) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account ORDER BY created_at LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def _update_account(self, sql: str, params: tuple, account_id: str) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                f"{sql} RETURNING {_ACCOUNT_COLUMNS}", params
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return self._row_to_account(row)

    def update_login_state(
        self,
        account_id: str,
        *,
        failed_login_attempts: int,
        lock_until: Optional[datetime],
        last_login: Optional[datetime] = None,
    ) -> None:
        self._update_account(
            """
            UPDATE account
            SET failed_login_attempts = %s,
                lock_until = %s,
                last_login = COALESCE(%s, last_login)
            WHERE id = %s
            """,
            (failed_login_attempts, lock_until, last_login, account_id),
            account_id,
        )

    def set_two_factor_secret(self, account_id: str, secret: str) -> None:
        self._update_account(
            "UPDATE account SET two_factor_secret = %s WHERE id = %s",
            (encrypt_secret(self._cipher, secret), account_id),
            account_id,
        )

    def enable_two_factor(self, account_id: str) -> None:
        self._update_account(
            "UPDATE account SET two_factor_enabled = TRUE WHERE id = %s",
            (account_id,),
            account_id,
        )

    def update_password(
        self, account_id: str, password_hash: str, *, bump_token_version: bool = True
    ) -> Account:
        return self._update_account(
            """
            UPDATE account
            SET password_hash = %s,
                token_version = token_version + CASE WHEN %s THEN 1 ELSE 0 END
            WHERE id = %s
            """,
            (password_hash, bump_token_version, account_id),
            account_id,
        )

    def bump_token_version(self, account_id: str) -> Account:
        return self._update_account(
            "UPDATE account SET token_version = token_version + 1 WHERE id = %s",
            (account_id,),
            account_id,
        )

    def set_subscription_tier(self, account_id: str, tier: str) -> Account:
        return self._update_account(
            "UPDATE account SET subscription_tier = %s WHERE id = %s",
            (tier, account_id),
            account_id,
        )

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
        record = RefreshTokenRecord.new(
            account_id,
            token,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_address=_parse_ip(ip_address),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, account_id, token, expires_at, revoked,
                                               user_agent, ip_address, created_at)
                    VALUES (%s, %s, %s, %s, FALSE, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.token,
                        record.expires_at,
                        record.user_agent,
                        record.ip_address,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return record

    def get_active_refresh_token(
        self, token: str, account_id: str
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_REFRESH_COLUMNS} FROM refresh_token
                WHERE token = %s AND account_id = %s AND revoked = FALSE
                """,
                (token, account_id),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def touch_refresh_token(self, record_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET last_used_at = now() WHERE id = %s",
                (record_id,),
            )

    def set_refresh_token_expiry(self, record_id: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET expires_at = %s WHERE id = %s",
                (expires_at, record_id),
            )

    def revoke_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token = %s AND revoked = FALSE",
                (token,),
            )
            return cur.rowcount > 0

    def revoke_account_refresh_tokens(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE account_id = %s AND revoked = FALSE",
                (account_id,),
            )
            return cur.rowcount

    def list_refresh_tokens(self, account_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    # audit
    def append_audit_event(self, event: AuditEvent) -> None:
        details: Any = json.dumps(event.details) if event.details else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, account_id, action, resource, status, details,
                                         ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.account_id,
                    event.action,
                    event.resource,
                    event.status,
                    details,
                    _parse_ip(event.ip_address),
                    event.user_agent,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if account_id:
                rows = conn.execute(
                    """
                    SELECT * FROM audit_event WHERE account_id = %s
                    ORDER BY created_at DESC LIMIT %s
                    """,
                    (account_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_event ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [self._row_to_audit_event(row) for row in rows]
