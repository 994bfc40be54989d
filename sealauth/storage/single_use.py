"""
Short-lived, consume-once values bridging the two legs of a login ceremony.

Holds OAuth `state`, the PKCE verifier and WebAuthn challenges. Reading an entry deletes
it: `take_once` returns the value at most once. An entry whose TTL elapsed raises
`EntryExpired` (and is dropped) so callers can tell "expired" apart from "missing".
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from starlette.requests import Request

from sealauth.auth.cookies import cookie_kwargs, queue_cookie, queue_delete, read_cookie

logger = logging.getLogger(__name__)


class EntryExpired(Exception):
    """The entry existed but its TTL had elapsed; it has been removed."""


class SingleUseStore(Protocol):
    def put(self, request: Request, key: str, value: Any, ttl: int) -> None:
        """Store a JSON-serializable `value` under `key` for `ttl` seconds."""

    def take_once(self, request: Request, key: str) -> Optional[Any]:
        """Return and delete the value for `key`; None if absent. Raises EntryExpired."""


class CookieSingleUseStore:
    """
    Stores each entry in its own signed cookie, scoping it to the calling browser.

    The cookie outlives the TTL by `grace_seconds` so a late read is reported as expired
    rather than silently missing.
    """

    SALT = "sealauth-single-use-v1"

    def __init__(
        self,
        secret: str,
        *,
        prefix: str = "sealauth",
        secure: bool = False,
        samesite: str = "lax",
        path: str = "/",
        grace_seconds: int = 60,
    ) -> None:
        if not secret:
            raise ValueError("CookieSingleUseStore needs a signing secret")
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=self.SALT)
        self.prefix = prefix
        self.secure = secure
        self.samesite = samesite
        self.path = path
        self.grace_seconds = grace_seconds

    def cookie_name(self, key: str) -> str:
        return f"{self.prefix}-{key}"

    def put(self, request: Request, key: str, value: Any, ttl: int) -> None:
        token = self._serializer.dumps({"k": key, "ttl": int(ttl), "v": value})
        queue_cookie(
            request,
            **cookie_kwargs(
                self.cookie_name(key),
                token,
                max_age=int(ttl) + self.grace_seconds,
                secure=self.secure,
                samesite=self.samesite,
                path=self.path,
            ),
        )

    def take_once(self, request: Request, key: str) -> Optional[Any]:
        name = self.cookie_name(key)
        token = read_cookie(request, name)
        if not token:
            return None
        queue_delete(request, name, secure=self.secure, samesite=self.samesite, path=self.path)
        try:
            data = self._serializer.loads(token)
        except BadSignature:
            logger.warning("Rejected tampered single-use cookie %s", name)
            return None
        if not isinstance(data, dict) or data.get("k") != key:
            return None
        # The TTL travels inside the signed payload, so check it against the signing time.
        try:
            self._serializer.loads(token, max_age=int(data.get("ttl") or 0))
        except SignatureExpired:
            raise EntryExpired(key)
        return data.get("v")


class MemorySingleUseStore:
    """
    Process-local store keyed only by `key` (ignores the request).

    Suitable when the key itself is an unguessable per-attempt id (WebAuthn attempt ids)
    and the deployment is a single instance. `take_once` is atomic under a lock.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def put(self, request: Request, key: str, value: Any, ttl: int) -> None:
        now = self._clock()
        with self._lock:
            self._purge(now)
            self._entries[key] = (value, now + ttl)

    def take_once(self, request: Request, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            raise EntryExpired(key)
        return value

    def _purge(self, now: float) -> None:
        # Entries far past their TTL are never going to be taken; keep recent ones so a late
        # read is still reported as expired.
        stale = [k for k, (_, exp) in self._entries.items() if now - exp > 3600]
        for k in stale:
            del self._entries[k]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
