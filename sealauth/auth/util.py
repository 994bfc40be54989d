from __future__ import annotations

import base64
import hashlib
import os
import time
from typing import Any, Dict, Mapping


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    s = (value or "").strip()
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def random_bytes(nbytes: int = 32) -> bytes:
    return os.urandom(nbytes)


def random_token(nbytes: int = 32) -> str:
    return b64url(random_bytes(nbytes))


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def pkce_challenge(verifier: str) -> str:
    """
    Derive the S256 PKCE challenge for a verifier (RFC 7636 section 4.2).
    """
    return b64url(sha256(verifier.encode("ascii")))


def now_ms() -> int:
    return int(time.time() * 1000)


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge `override` over `base`, recursing into nested mappings.

    Keys of `override` win on conflict at every level; keys only present on one side are
    kept. Non-mapping values (lists included) are replaced, not concatenated.
    """
    out: Dict[str, Any] = dict(base)
    for key, value in override.items():
        current = out.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            out[key] = deep_merge(current, value)
        else:
            out[key] = value
    return out
