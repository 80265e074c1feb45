from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from dealflow.config import Settings
from dealflow.logging import get_logger
from dealflow.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class Principal:
    """Authenticated caller resolved from an access token for one request."""

    account_id: str
    email: str
    role: str
    subscription_tier: str
    is_2fa_verified: bool
    token_version: int
    internal_account: bool = False
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _from_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class TokenService:
    """HS256 JWT signing and verification for access and refresh tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Verify a token and return its claims, or None when it is not acceptable.

        Rejects anything that is not HS256, carries a bad signature, names the
        wrong issuer or audience, or has a missing or elapsed ``exp`` beyond the
        configured clock-skew leeway.
        """
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not sig_b64.isascii():
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if exp is None:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._leeway.total_seconds():
            return None
        return payload

    def _claims(
        self, account: Account, *, token_type: str, is_2fa_verified: bool, ttl: timedelta
    ) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "email": account.email,
            "role": account.role,
            "subscription_tier": account.subscription_tier,
            "is_2fa_verified": bool(is_2fa_verified),
            "token_version": account.token_version,
            "internal_account": bool(account.internal_account),
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def issue_access(self, account: Account, *, is_2fa_verified: bool) -> str:
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self.encode(
            self._claims(account, token_type=ACCESS, is_2fa_verified=is_2fa_verified, ttl=ttl)
        )

    def issue_refresh(self, account: Account, *, is_2fa_verified: bool) -> str:
        ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        return self.encode(
            self._claims(account, token_type=REFRESH, is_2fa_verified=is_2fa_verified, ttl=ttl)
        )

    def decode_typed(self, token: Optional[str], token_type: str) -> Optional[dict[str, Any]]:
        payload = self.decode(token)
        if not payload or payload.get("token_type") != token_type:
            return None
        return payload

    @staticmethod
    def principal_from_claims(claims: dict[str, Any]) -> Principal:
        return Principal(
            account_id=str(claims["sub"]),
            email=claims.get("email", ""),
            role=claims.get("role", "user"),
            subscription_tier=claims.get("subscription_tier", ""),
            is_2fa_verified=bool(claims.get("is_2fa_verified", False)),
            token_version=int(claims.get("token_version", 0)),
            internal_account=bool(claims.get("internal_account", False)),
            issued_at=_from_ts(claims.get("iat")),
            expires_at=_from_ts(claims.get("exp")),
        )
