"""
Secret handling for external sources.

Responsibilities:
- Encrypt credentials at rest (Fernet: AES-CBC + HMAC-SHA256).
- Decrypt them just-in-time for an outbound call.
- Mask them wherever they are displayed.
- Sign and verify webhook payloads with constant-time comparison.

Keys come from CREDENTIALS_ENCRYPTION_KEY. Several comma-separated keys
enable rotation: the first one encrypts, all of them decrypt.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from stockdb.errors import AuthError

_MASK = "****"


def _cipher() -> MultiFernet:
    raw = os.getenv("CREDENTIALS_ENCRYPTION_KEY", "")
    keys = [key.strip() for key in raw.split(",") if key.strip()]
    if not keys:
        raise RuntimeError(
            "CREDENTIALS_ENCRYPTION_KEY is not set. Generate one with "
            "`python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'`."
        )
    return MultiFernet([Fernet(key.encode("utf-8")) for key in keys])


def encrypt_secret(value: str) -> str:
    return _cipher().encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    try:
        return _cipher().decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError) as exc:
        raise AuthError("Stored secret could not be decrypted.") from exc


def encrypt_credentials(credentials: Optional[Dict[str, Any]]) -> Optional[str]:
    if not credentials:
        return None
    return encrypt_secret(json.dumps(credentials, sort_keys=True))


def decrypt_credentials(token: Optional[str]) -> Dict[str, Any]:
    if not token:
        return {}
    decoded = decrypt_secret(token)
    try:
        value = json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise AuthError("Stored credentials are corrupt.") from exc
    if not isinstance(value, dict):
        raise AuthError("Stored credentials are corrupt.")
    return value


def rotate_secret(token: str) -> str:
    """Re-encrypt a token under the current primary key."""
    return _cipher().rotate(token.encode("ascii")).decode("ascii")


def mask_value(value: Optional[str], keep: int) -> str:
    if not value:
        return _MASK
    return f"{value[:keep]}{_MASK}"


def mask_credentials(credentials: Dict[str, Any]) -> Dict[str, Any]:
    masked = dict(credentials)
    for key, value in credentials.items():
        if key == "api_key":
            masked[key] = mask_value(str(value), 4)
        elif key == "token":
            masked[key] = mask_value(str(value), 8)
        elif key in {"password", "secret", "webhook_secret", "client_secret"}:
            masked[key] = _MASK
    return masked


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _normalize_signature(signature: str) -> str:
    if "=" in signature:
        _, value = signature.split("=", 1)
        return value.strip()
    return signature.strip()


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(_normalize_signature(signature), expected)
