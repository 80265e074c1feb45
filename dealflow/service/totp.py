from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Optional, Protocol
from urllib.parse import quote

import qrcode

from dealflow.config import Settings
from dealflow.logging import get_logger
from dealflow.service.errors import (
    ConflictError,
    InvalidTwoFactorCodeError,
    RateLimitedError,
    ValidationError,
)
from dealflow.storage.models import Account
from dealflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


class TwoFactorStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def set_two_factor_secret(self, account_id: str, secret: str) -> None: ...

    def enable_two_factor(self, account_id: str) -> None: ...


class TwoFactorService:
    """RFC 6238 TOTP enrollment and verification with an attempt throttle."""

    def __init__(
        self,
        store: TwoFactorStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.max_attempts = settings.mfa_max_attempts
        self.lockout_seconds = settings.mfa_lockout_seconds
        # in-process fallback when Redis is unavailable
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def _generate_totp(
        self,
        secret: str,
        timestamp: float,
        *,
        interval: int = TOTP_INTERVAL,
        digits: int = TOTP_DIGITS,
    ) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)

    def verify_code(
        self, secret: str, code: str, *, at: Optional[float] = None, window: int = 1
    ) -> bool:
        """Accept the code for the current step or one step either side."""
        candidate = (code or "").strip().replace(" ", "")
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return False
        now = time.time() if at is None else at
        matched = False
        for offset in range(-window, window + 1):
            generated = self._generate_totp(secret, now + offset * TOTP_INTERVAL)
            # no early exit so every step costs the same
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def provisioning_uri(self, secret: str, email: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{email}")
        return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"

    @staticmethod
    def qr_code_data_url(uri: str) -> str:
        img = qrcode.make(uri)
        buf = BytesIO()
        img.save(buf, format="PNG")
        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def begin_setup(self, account: Account) -> dict[str, str]:
        """Generate and store a fresh secret; 2FA stays disabled until first verify.

        Raises:
            ConflictError: If two-factor is already enabled for the account
        """
        if account.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = self.generate_secret()
        self.store.set_two_factor_secret(account.id, secret)
        uri = self.provisioning_uri(secret, account.email)
        logger.info("mfa_setup_started", account_id=account.id)
        return {
            "secret": secret,
            "otpauth_uri": uri,
            "qr_code_data_url": self.qr_code_data_url(uri),
        }

    async def _is_locked_out(self, account_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(account_id)
        now = datetime.now(timezone.utc)
        with self._state_lock:
            locked_until = self._lockouts.get(account_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(account_id, None)
        return False

    async def _record_failure(self, account_id: str) -> None:
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                account_id,
                max_attempts=self.max_attempts,
                lockout_seconds=self.lockout_seconds,
            )
            if is_locked and attempts >= 0:
                logger.warning(
                    "mfa_lockout_triggered", account_id=account_id, attempts=attempts
                )
            return
        now = datetime.now(timezone.utc)
        window = timedelta(seconds=self.lockout_seconds)
        with self._state_lock:
            current = self._attempts.get(account_id)
            attempts, window_start = 1, now
            if current:
                count, prev_start = current
                if now - prev_start < window:
                    attempts, window_start = count + 1, prev_start
            self._attempts[account_id] = (attempts, window_start)
            if attempts >= self.max_attempts:
                self._lockouts[account_id] = now + window
                self._attempts.pop(account_id, None)
                logger.warning(
                    "mfa_lockout_triggered", account_id=account_id, attempts=attempts
                )

    async def _clear_failures(self, account_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(account_id)
            return
        with self._state_lock:
            self._attempts.pop(account_id, None)

    async def verify(self, account: Account, code: str) -> Account:
        """Check a TOTP code and enable two-factor on the first success.

        Raises:
            ValidationError: If no secret has been set up
            RateLimitedError: While verification is throttled for the account
            InvalidTwoFactorCodeError: If the code does not match; nothing is changed
        """
        if not account.two_factor_secret:
            raise ValidationError("two-factor not set up")
        if await self._is_locked_out(account.id):
            logger.warning("mfa_locked_out", account_id=account.id)
            raise RateLimitedError(
                "too many two-factor attempts, try again later",
                detail={"retry_after": self.lockout_seconds},
            )
        if not self.verify_code(account.two_factor_secret, code):
            await self._record_failure(account.id)
            raise InvalidTwoFactorCodeError()

        await self._clear_failures(account.id)
        if not account.two_factor_enabled:
            self.store.enable_two_factor(account.id)
            logger.info("mfa_enabled", account_id=account.id)
        refreshed = self.store.get_account(account.id)
        return refreshed or account
