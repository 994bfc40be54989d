"""
AEAD sealing for the session cookie.

Format: `s1.<base64url(nonce || ciphertext || tag)>`, AES-256-GCM with the version tag as
associated data. The key is derived from the session password with HKDF-SHA256.
"""
from __future__ import annotations

import json
import logging
import time
from functools import lru_cache
from typing import Any, Dict, Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from sealauth.auth.util import b64url, b64url_decode, random_bytes

logger = logging.getLogger(__name__)

SEAL_VERSION = "s1"
_NONCE_BYTES = 12
_KDF_SALT = b"sealauth-session-v1"


@lru_cache(maxsize=16)
def _derive_key(password: str) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=_KDF_SALT, info=SEAL_VERSION.encode("ascii"))
    return hkdf.derive(password.encode("utf-8"))


def seal(payload: Dict[str, Any], password: str) -> str:
    if not password:
        raise ValueError("A session password is required to seal data")
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    nonce = random_bytes(_NONCE_BYTES)
    ct = AESGCM(_derive_key(password)).encrypt(nonce, raw, SEAL_VERSION.encode("ascii"))
    return f"{SEAL_VERSION}.{b64url(nonce + ct)}"


def unseal(value: Optional[str], passwords: Sequence[str]) -> Optional[Dict[str, Any]]:
    """
    Return the sealed payload, or None when it cannot be opened with any password.
    """
    if not value:
        return None
    version, sep, body = value.partition(".")
    if not sep or version != SEAL_VERSION:
        return None
    try:
        blob = b64url_decode(body)
    except ValueError:
        return None
    if len(blob) <= _NONCE_BYTES:
        return None
    nonce, ct = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
    for password in passwords:
        if not password:
            continue
        try:
            raw = AESGCM(_derive_key(password)).decrypt(nonce, ct, SEAL_VERSION.encode("ascii"))
        except InvalidTag:
            continue
        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
    logger.debug("Sealed value could not be opened with any configured password")
    return None


def seal_session(session_id: str, created_at: int, data: Dict[str, Any], password: str) -> str:
    return seal({"id": session_id, "createdAt": created_at, "iat": int(time.time()), "data": data}, password)


def unseal_session(value: Optional[str], passwords: Sequence[str], *, max_age: Optional[int] = None) -> Optional[Dict[str, Any]]:
    payload = unseal(value, passwords)
    if payload is None:
        return None
    if not isinstance(payload.get("id"), str) or not isinstance(payload.get("data"), dict):
        return None
    if max_age is not None:
        iat = payload.get("iat")
        if not isinstance(iat, int) or time.time() - iat > max_age:
            return None
    return payload
