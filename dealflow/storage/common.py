"""Storage helpers shared between the memory and postgres backends.

Both backends keep two-factor secrets encrypted at rest and normalize
account emails the same way, so the logic lives here rather than in each
store.
"""

from __future__ import annotations

import base64
import hashlib
import json
import unicodedata
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from dealflow.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """Lower-case and NFKC-normalize an email so lookups are case-insensitive."""
    return unicodedata.normalize("NFKC", email.strip()).lower()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: Optional[str]) -> Fernet:
    """Build the Fernet cipher used for TOTP secrets.

    Raises:
        RuntimeError: If no key material is available
    """
    if not key_material:
        raise RuntimeError("Unable to initialize two-factor cipher: no key material")
    return Fernet(derive_cipher_key(key_material))


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # the key changed or the value was never encrypted; treat as unusable
        logger.warning("two_factor_secret_decrypt_failed")
        return None


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a details/meta column from a JSON string or dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def generate_uuid() -> str:
    return str(uuid.uuid4())
