from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from starlette.requests import Request

from sealauth.auth.config import AuthConfig
from sealauth.auth.cookies import cookie_kwargs, queue_cookie, queue_delete, read_cookie
from sealauth.auth.models import Session
from sealauth.auth.revocation import RevocationStore
from sealauth.auth.seal import seal_session, unseal_session
from sealauth.auth.util import deep_merge, now_ms, random_token
from sealauth.errors import SessionRevoked, SessionTooLarge, Unauthorized

logger = logging.getLogger(__name__)

# Browsers cap a single cookie (name + value + attributes) at about 4 KiB.
MAX_COOKIE_BYTES = 4096

SessionHook = Callable[[Session, Request], None]

_CACHE_ATTR = "sealauth_session"


class SessionHooks:
    """
    Ordered subscribers for session lifecycle events (`fetch`, `clear`).

    Hooks run synchronously in registration order; the first one that raises stops the chain
    and the exception propagates to the caller of `call`.
    """

    EVENTS = ("fetch", "clear")

    def __init__(self) -> None:
        self._hooks: Dict[str, List[SessionHook]] = {name: [] for name in self.EVENTS}

    def hook(self, event: str, fn: SessionHook) -> SessionHook:
        if event not in self._hooks:
            raise ValueError(f"Unknown session hook event: {event}")
        self._hooks[event].append(fn)
        return fn

    def on(self, event: str) -> Callable[[SessionHook], SessionHook]:
        def decorator(fn: SessionHook) -> SessionHook:
            return self.hook(event, fn)

        return decorator

    def call(self, event: str, session: Session, request: Request) -> None:
        for fn in list(self._hooks.get(event, [])):
            fn(session, request)


class SessionStore:
    """
    Sealed, cookie-carried user session.

    No server-side state: the whole session travels in one encrypted cookie. The optional
    revocation store is a side channel consulted when the session is read for display.
    """

    def __init__(
        self,
        cfg: AuthConfig,
        *,
        revocations: Optional[RevocationStore] = None,
        hooks: Optional[SessionHooks] = None,
    ) -> None:
        self.cfg = cfg
        self.revocations = revocations
        self.hooks = hooks or SessionHooks()

    @property
    def cookie_name(self) -> str:
        return self.cfg.session_name

    def _new_session(self) -> Session:
        return Session(id=random_token(16), created_at=now_ms(), data={})

    def get(self, request: Request) -> Session:
        """Return the current session; an empty one if the cookie is missing or unusable."""
        cached = getattr(request.state, _CACHE_ATTR, None)
        if cached is not None:
            return cached
        payload = unseal_session(
            read_cookie(request, self.cookie_name),
            self.cfg.session_passwords,
            max_age=self.cfg.session_max_age,
        )
        if payload is None:
            session = self._new_session()
        else:
            session = Session(
                id=payload["id"],
                created_at=int(payload.get("createdAt") or now_ms()),
                data=payload["data"],
            )
        setattr(request.state, _CACHE_ATTR, session)
        return session

    def _commit(self, request: Request, session: Session) -> Session:
        if session.user is not None and "loggedInAt" not in session.data:
            session.data["loggedInAt"] = now_ms()
        value = seal_session(session.id, session.created_at, session.data, self.cfg.session_password)
        if len(self.cookie_name) + len(value) > MAX_COOKIE_BYTES:
            raise SessionTooLarge(
                f"Session cookie would be {len(value)} bytes; keep only small, public data in the session."
            )
        queue_cookie(
            request,
            **cookie_kwargs(
                self.cookie_name,
                value,
                max_age=self.cfg.session_max_age,
                secure=self.cfg.cookie_secure,
                samesite=self.cfg.cookie_samesite,
            ),
        )
        setattr(request.state, _CACHE_ATTR, session)
        return session

    def update(self, request: Request, partial: Mapping[str, Any]) -> Session:
        """Deep-merge `partial` over the stored data (new values win) and reseal."""
        current = self.get(request)
        merged = Session(id=current.id, created_at=current.created_at, data=deep_merge(current.data, partial))
        return self._commit(request, merged)

    def replace(self, request: Request, full: Mapping[str, Any]) -> Session:
        """Drop the current session and store `full` as a fresh one (no clear hooks)."""
        self._drop(request, self.get(request))
        session = self._new_session()
        session.data = dict(full)
        return self._commit(request, session)

    def clear(self, request: Request) -> None:
        session = self.get(request)
        try:
            self.hooks.call("clear", session, request)
        except Exception:
            # Clearing must still happen; the failing hook stops the remaining clear hooks.
            logger.exception("Session clear hook failed (session=%s...)", session.id[:8])
        self._drop(request, session)

    def _drop(self, request: Request, session: Session) -> None:
        """Delete the cookie and revoke the old id."""
        queue_delete(
            request,
            self.cookie_name,
            secure=self.cfg.cookie_secure,
            samesite=self.cfg.cookie_samesite,
        )
        setattr(request.state, _CACHE_ATTR, self._new_session())

        if self.revocations is not None and not session.is_empty:
            self.revocations.revoke(session.id, time.time())
            logger.info("Session revoked: %s...", session.id[:8])

    def is_revoked(self, session_id: str) -> bool:
        """
        Consult the revocation store.

        When the store cannot be reached the answer is the configured
        `revocation_fail_open` policy: True there means "not revoked".
        """
        if self.revocations is None:
            return False
        try:
            return self.revocations.is_revoked(session_id)
        except Exception as e:
            logger.warning(
                "Revocation store unavailable (%s); treating session as %s",
                str(e),
                "valid" if self.cfg.revocation_fail_open else "revoked",
            )
            return not self.cfg.revocation_fail_open

    def fetch(self, request: Request) -> Dict[str, Any]:
        """
        Session data for the browser: revocation check, then `fetch` hooks, minus `secure`.
        """
        session = self.get(request)
        if not session.is_empty:
            if self.is_revoked(session.id):
                self.clear(request)
                raise SessionRevoked("Session revoked")
            self.hooks.call("fetch", session, request)
        return session.public_view()

    def require(self, request: Request) -> Session:
        session = self.get(request)
        if session.user is None:
            raise Unauthorized("Unauthorized")
        return session

    def touch(self, request: Request) -> None:
        """Reseal a non-empty session so its cookie lifetime starts over."""
        session = self.get(request)
        if not session.is_empty:
            self._commit(request, session)

    def purge_revocations(self) -> int:
        if self.revocations is None:
            return 0
        return self.revocations.cleanup(self.cfg.session_max_age)
