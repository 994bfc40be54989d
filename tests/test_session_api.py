from __future__ import annotations

from typing import Dict, Optional
from unittest.mock import MagicMock

from fastapi import Depends, Request
from fastapi.testclient import TestClient

from sealauth.api.app import create_app
from sealauth.api.deps import AuthContext, get_auth_context, require_user_session
from sealauth.auth.config import load_auth_config
from sealauth.auth.models import Session
from sealauth.auth.revocation import MemoryRevocationStore
from sealauth.auth.session import SessionHooks


def _client(env: Optional[Dict[str, str]] = None, **kwargs) -> TestClient:
    cfg = load_auth_config({"AUTH_SESSION_PASSWORD": "S1", **(env or {})})
    app = create_app(cfg, **kwargs)

    @app.post("/test/login")
    def login(request: Request, ctx: AuthContext = Depends(get_auth_context)):
        ctx.sessions.update(request, {"user": {"id": 1}, "secure": {"apiToken": "t"}})
        return {"ok": True}

    @app.get("/test/me")
    def me(session: Session = Depends(require_user_session)):
        return {"user": session.user}

    return TestClient(app)


def test_set_session_then_read_it() -> None:
    c = _client()

    assert c.post("/test/login").status_code == 200
    body = c.get("/api/_auth/session").json()

    assert body["user"] == {"id": 1}
    assert isinstance(body["loggedInAt"], int)
    assert "secure" not in body


def test_delete_session_fires_clear_hook_once() -> None:
    hooks = SessionHooks()
    on_clear = MagicMock()
    hooks.hook("clear", on_clear)
    c = _client(hooks=hooks)
    c.post("/test/login")

    r = c.delete("/api/_auth/session")

    assert r.json() == {"loggedOut": True}
    on_clear.assert_called_once()
    assert on_clear.call_args.args[0].user == {"id": 1}
    assert c.get("/api/_auth/session").json() == {}


def test_session_cookie_is_http_only() -> None:
    c = _client()
    r = c.post("/test/login")

    header = r.headers["set-cookie"]
    assert header.startswith("session=s1.")
    assert "HttpOnly" in header
    assert "SameSite=lax" in header


def test_revoked_cookie_is_refused_and_dropped() -> None:
    c = _client(revocations=MemoryRevocationStore())
    c.post("/test/login")
    stolen = c.cookies.get("session")

    c.delete("/api/_auth/session")
    c.cookies.set("session", stolen, domain="testserver.local")
    r = c.get("/api/_auth/session")

    assert r.status_code == 401
    assert r.json() == {"detail": "Session revoked", "error": "session_revoked"}
    assert "Max-Age=0" in r.headers["set-cookie"]
    assert c.get("/api/_auth/session").json() == {}


def test_protected_route_requires_user() -> None:
    c = _client()

    r = c.get("/test/me")
    assert r.status_code == 401
    assert r.json() == {"detail": "Unauthorized", "error": "unauthorized"}

    c.post("/test/login")
    assert c.get("/test/me").json() == {"user": {"id": 1}}


def test_auto_extend_reseals_on_any_request() -> None:
    plain = _client()
    plain.post("/test/login")
    assert "set-cookie" not in plain.get("/healthz").headers

    extending = _client({"AUTH_AUTO_EXTEND_SESSION": "true"})
    extending.post("/test/login")
    r = extending.get("/healthz")
    assert r.json() == {"ok": True}
    assert r.headers["set-cookie"].startswith("session=s1.")


def test_healthz_without_session_sets_no_cookie() -> None:
    r = _client({"AUTH_AUTO_EXTEND_SESSION": "true"}).get("/healthz")
    assert r.status_code == 200
    assert "set-cookie" not in r.headers
