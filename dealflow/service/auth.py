from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from dealflow.config import Settings
from dealflow.logging import get_logger
from dealflow.service.audit import AuditAction, AuditSink
from dealflow.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTwoFactorCodeError,
    NotFoundError,
    ValidationError,
)
from dealflow.service.lockout import LockDecision, LockoutPolicy
from dealflow.service.tiers import TierConfig
from dealflow.service.tokens import ACCESS, REFRESH, Principal, TokenService
from dealflow.service.totp import TwoFactorService
from dealflow.storage.errors import ConstraintViolation
from dealflow.storage.models import Account, AuditEvent, RefreshTokenRecord
from dealflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


class AuthStore(Protocol):
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
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(self, limit: int = 1000) -> List[Account]: ...

    def update_login_state(
        self,
        account_id: str,
        *,
        failed_login_attempts: int,
        lock_until: Optional[datetime],
        last_login: Optional[datetime] = None,
    ) -> None: ...

    def set_two_factor_secret(self, account_id: str, secret: str) -> None: ...

    def enable_two_factor(self, account_id: str) -> None: ...

    def update_password(
        self, account_id: str, password_hash: str, *, bump_token_version: bool = True
    ) -> Account: ...

    def bump_token_version(self, account_id: str) -> Account: ...

    def set_subscription_tier(self, account_id: str, tier: str) -> Account: ...

    def create_refresh_token(
        self,
        account_id: str,
        token: str,
        *,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshTokenRecord: ...

    def get_active_refresh_token(
        self, token: str, account_id: str
    ) -> Optional[RefreshTokenRecord]: ...

    def touch_refresh_token(self, record_id: str) -> None: ...

    def revoke_refresh_token(self, token: str) -> bool: ...

    def revoke_account_refresh_tokens(self, account_id: str) -> int: ...

    def append_audit_event(self, event: AuditEvent) -> None: ...


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str


@dataclass
class ResolvedAuth:
    """Outcome of authenticating one request.

    ``access_token`` is only set when the refresh path minted a replacement;
    the caller then re-sends it together with the unchanged refresh token.
    """

    principal: Principal
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def refreshed(self) -> bool:
        return self.access_token is not None


@dataclass
class LoginResult:
    account: Account
    tokens: IssuedTokens
    requires_2fa: bool


def validate_password_strength(password: str) -> None:
    """Raise ValidationError unless the password is 8-128 chars with a letter and a digit."""
    if not isinstance(password, str) or not (
        PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH
    ):
        raise ValidationError(
            f"password must be between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH} characters",
            detail={"field": "password"},
        )
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        raise ValidationError(
            "password must contain at least one letter and one number",
            detail={"field": "password"},
        )


class AuthService:
    """Login, token refresh, two-factor and password flows over an ``AuthStore``."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        tiers: TierConfig,
        audit: Optional[AuditSink] = None,
        tokens: Optional[TokenService] = None,
        two_factor: Optional[TwoFactorService] = None,
        lockout: Optional[LockoutPolicy] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.tiers = tiers
        self.audit = audit or AuditSink(store)
        self.tokens = tokens or TokenService(settings)
        self.two_factor = two_factor or TwoFactorService(store, cache, settings)
        self.lockout = lockout or LockoutPolicy(
            max_failures=settings.max_failed_logins,
            lock_minutes=settings.lockout_minutes,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        """Verify a password against the account's stored argon2id hash."""
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def issue_tokens(
        self,
        account: Account,
        *,
        is_2fa_verified: bool,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedTokens:
        """Mint an access/refresh pair and persist the refresh token record."""
        access = self.tokens.issue_access(account, is_2fa_verified=is_2fa_verified)
        refresh = self.tokens.issue_refresh(account, is_2fa_verified=is_2fa_verified)
        self.store.create_refresh_token(
            account.id,
            refresh,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return IssuedTokens(access_token=access, refresh_token=refresh)

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str,
        last_name: str,
        access_code: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[Account, IssuedTokens]:
        """Create a basic-tier user account and sign it in.

        Role and tier are always server-assigned.

        Raises:
            ForbiddenError: If self-service signup is disabled
            ValidationError: If the email or password is malformed
            ConflictError: If the email is already registered
        """
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        normalized = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        validate_password_strength(password)
        try:
            account = self.store.create_account(
                normalized,
                self._hash_password(password),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role="user",
                subscription_tier=self.tiers.lowest.id,
                access_code=access_code,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "email already registered", detail={"field": "email"}
            ) from exc
        self.audit.emit(
            AuditAction.REGISTER,
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("account_registered", account_id=account.id)
        tokens = self.issue_tokens(
            account, is_2fa_verified=True, user_agent=user_agent, ip_address=ip_address
        )
        return account, tokens

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Check credentials behind the lockout policy and issue tokens.

        The session starts 2FA-verified only when the account has no second
        factor enabled.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountLockedError: While the account's lock window is open
        """
        now = self._now()
        account = self.store.get_account_by_email(email or "")
        if not account:
            self.audit.emit(
                AuditAction.LOGIN_FAILURE,
                status="failure",
                details={"reason": "unknown_account"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError()

        if self.lockout.evaluate(account, now) is LockDecision.LOCKED:
            self.logger.warning("login_blocked_locked", account_id=account.id)
            self.audit.emit(
                AuditAction.LOGIN_FAILURE,
                status="failure",
                account_id=account.id,
                details={"reason": "locked"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            retry_after = int((account.lock_until - now).total_seconds()) + 1
            raise AccountLockedError(detail={"retry_after": retry_after})

        if not self.verify_password(account, password):
            attempts, lock_until = self.lockout.register_failure(account, now)
            self.store.update_login_state(
                account.id, failed_login_attempts=attempts, lock_until=lock_until
            )
            self.logger.warning("login_failed", account_id=account.id, attempts=attempts)
            self.audit.emit(
                AuditAction.LOGIN_FAILURE,
                status="failure",
                account_id=account.id,
                details={"reason": "bad_password", "attempts": attempts},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            if lock_until is not None and lock_until != account.lock_until:
                self.logger.warning(
                    "account_locked", account_id=account.id, lock_until=lock_until.isoformat()
                )
                self.audit.emit(
                    AuditAction.ACCOUNT_LOCKED,
                    status="failure",
                    account_id=account.id,
                    details={"lock_until": lock_until.isoformat()},
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            raise InvalidCredentialsError()

        attempts, lock_until = self.lockout.register_success(account, now)
        self.store.update_login_state(
            account.id,
            failed_login_attempts=attempts,
            lock_until=lock_until,
            last_login=now,
        )
        account.failed_login_attempts = attempts
        account.lock_until = lock_until
        account.last_login = now

        requires_2fa = bool(account.two_factor_enabled)
        tokens = self.issue_tokens(
            account,
            is_2fa_verified=not requires_2fa,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        self.audit.emit(
            AuditAction.LOGIN_SUCCESS,
            account_id=account.id,
            details={"requires_2fa": requires_2fa},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return LoginResult(account=account, tokens=tokens, requires_2fa=requires_2fa)

    def _reject(self, reason: str, **context) -> AuthenticationError:
        self.logger.info("auth_rejected", reason=reason, **context)
        return AuthenticationError()

    async def resolve_principal(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ResolvedAuth:
        """Authenticate a request from its access token, falling back to the refresh token.

        The access token is verified statelessly. The refresh path checks the
        persisted record (exact value, owner, not revoked, not expired in the
        store) and the account's current token version, then mints a new
        access token from the account's current role and tier. The refresh
        token itself is reused unchanged.

        Raises:
            AuthenticationError: For every rejection cause; the cause is only logged
        """
        claims = self.tokens.decode_typed(access_token, ACCESS)
        if claims:
            return ResolvedAuth(principal=self.tokens.principal_from_claims(claims))

        if not refresh_token:
            raise self._reject("missing_credentials")
        refresh_claims = self.tokens.decode_typed(refresh_token, REFRESH)
        if not refresh_claims or not refresh_claims.get("sub"):
            raise self._reject("refresh_invalid")
        account_id = str(refresh_claims["sub"])
        record = self.store.get_active_refresh_token(refresh_token, account_id)
        if not record:
            raise self._reject("refresh_not_found", account_id=account_id)
        if record.expires_at <= self._now():
            raise self._reject("refresh_expired", account_id=account_id)
        account = self.store.get_account(account_id)
        if not account:
            raise self._reject("account_missing", account_id=account_id)
        if account.token_version != int(refresh_claims.get("token_version", -1)):
            raise self._reject(
                "token_version_mismatch",
                account_id=account_id,
                current_version=account.token_version,
            )

        is_verified = bool(refresh_claims.get("is_2fa_verified", False))
        access = self.tokens.issue_access(account, is_2fa_verified=is_verified)
        self.store.touch_refresh_token(record.id)
        self.audit.emit(
            AuditAction.TOKEN_REFRESH,
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        principal = self.tokens.principal_from_claims(self.tokens.decode(access))
        return ResolvedAuth(
            principal=principal, access_token=access, refresh_token=refresh_token
        )

    def load_account(self, principal: Principal) -> Account:
        account = self.store.get_account(principal.account_id)
        if not account:
            raise self._reject("account_missing", account_id=principal.account_id)
        return account

    async def setup_two_factor(
        self,
        principal: Principal,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> dict[str, str]:
        account = self.load_account(principal)
        enrollment = self.two_factor.begin_setup(account)
        self.audit.emit(
            AuditAction.MFA_SETUP,
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return enrollment

    async def verify_two_factor(
        self,
        principal: Principal,
        code: str,
        *,
        current_refresh_token: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[Account, IssuedTokens]:
        """Complete the second factor and re-issue both tokens as verified.

        The superseded refresh token is revoked so the pending session cannot
        be refreshed into a new unverified access token.
        """
        account = self.load_account(principal)
        try:
            account = await self.two_factor.verify(account, code)
        except InvalidTwoFactorCodeError:
            self.audit.emit(
                AuditAction.MFA_FAILURE,
                status="failure",
                account_id=account.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        if current_refresh_token:
            self.store.revoke_refresh_token(current_refresh_token)
        tokens = self.issue_tokens(
            account, is_2fa_verified=True, user_agent=user_agent, ip_address=ip_address
        )
        self.audit.emit(
            AuditAction.MFA_VERIFY,
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return account, tokens

    async def logout(
        self,
        refresh_token: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Revoke the presented refresh token; missing or invalid tokens are ignored."""
        if not refresh_token:
            return
        revoked = self.store.revoke_refresh_token(refresh_token)
        # the signature may have lapsed, the row is still revoked by value
        claims = self.tokens.decode(refresh_token)
        account_id = str(claims["sub"]) if claims and claims.get("sub") else None
        self.audit.emit(
            AuditAction.LOGOUT,
            account_id=account_id,
            details={"revoked": revoked},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def change_password(
        self,
        principal: Principal,
        current_password: str,
        new_password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[Account, IssuedTokens]:
        """Replace the password and sign out every other session.

        Bumps the token version and revokes all refresh tokens, then issues a
        fresh pair for the caller.
        """
        account = self.load_account(principal)
        if not self.verify_password(account, current_password):
            self.logger.warning("password_change_rejected", account_id=account.id)
            raise ValidationError(
                "current password is incorrect", detail={"field": "currentPassword"}
            )
        validate_password_strength(new_password)
        account = self.store.update_password(
            account.id, self._hash_password(new_password), bump_token_version=True
        )
        revoked = self.store.revoke_account_refresh_tokens(account.id)
        tokens = self.issue_tokens(
            account,
            is_2fa_verified=principal.is_2fa_verified,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        self.audit.emit(
            AuditAction.PASSWORD_CHANGE,
            account_id=account.id,
            details={"revoked_refresh_tokens": revoked},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return account, tokens

    async def set_tier(
        self,
        actor: Principal,
        account_id: str,
        tier: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Account:
        """Change an account's tier; sessions pick it up on their next refresh."""
        definition = self.tiers.tier(tier)
        if not definition:
            raise ValidationError(
                f"unknown subscription tier '{tier}'", detail={"field": "subscriptionTier"}
            )
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        previous = account.subscription_tier
        updated = self.store.set_subscription_tier(account_id, definition.id)
        self.audit.emit(
            AuditAction.TIER_CHANGE,
            account_id=account_id,
            details={"from": previous, "to": definition.id, "actor_id": actor.account_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "tier_changed", account_id=account_id, previous=previous, tier=definition.id
        )
        return updated

    async def revoke_sessions(
        self,
        actor: Principal,
        account_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[Account, int]:
        """Force a global logout by bumping the token version and revoking refresh tokens."""
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found", detail={"account_id": account_id})
        account = self.store.bump_token_version(account_id)
        revoked = self.store.revoke_account_refresh_tokens(account_id)
        self.audit.emit(
            AuditAction.SESSIONS_REVOKED,
            account_id=account_id,
            details={"revoked": revoked, "actor_id": actor.account_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "sessions_revoked",
            account_id=account_id,
            revoked=revoked,
            token_version=account.token_version,
        )
        return account, revoked
