from __future__ import annotations

from typing import Dict, Optional
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from fastapi.testclient import TestClient
from starlette.responses import RedirectResponse

from sealauth.api.app import create_app
from sealauth.auth.config import ProviderConfig, load_auth_config
from sealauth.auth.util import pkce_challenge
from sealauth.errors import InvalidState, ProviderError, TokenExchangeError
from sealauth.oauth.engine import OAuthFlowEngine, parse_token_payload
from sealauth.oauth.providers import BUILTIN_DESCRIPTORS, ProviderDescriptor, ProviderRegistry
from sealauth.storage.single_use import MemorySingleUseStore

DEMO = ProviderDescriptor(
    name="demo",
    display_name="Demo",
    authorization_url="https://idp.example.com/authorize",
    token_url="https://idp.example.com/token",
    user_url="https://idp.example.com/userinfo",
    default_scope=("openid", "email"),
    pkce=True,
)

ENV = {
    "AUTH_SESSION_PASSWORD": "S1",
    "AUTH_OAUTH_DEMO_CLIENT_ID": "demo-client",
    "AUTH_OAUTH_DEMO_CLIENT_SECRET": "demo-secret",
}


def _resp(status: int = 200, payload=None) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    r.json.return_value = payload
    return r


def _http(token_payload: Optional[Dict] = None, user_payload: Optional[Dict] = None) -> MagicMock:
    http = MagicMock()
    http.post.return_value = _resp(payload=token_payload or {"access_token": "at-1", "token_type": "Bearer", "expires_in": 3600})
    http.get.return_value = _resp(payload=user_payload or {"sub": "u-1", "email": "u@example.com", "name": "U"})
    return http


def _client(http: MagicMock, env: Optional[Dict[str, str]] = None) -> TestClient:
    registry = ProviderRegistry([*BUILTIN_DESCRIPTORS, DEMO])
    cfg = load_auth_config(env or ENV)
    return TestClient(create_app(cfg, providers=registry, http=http))


def _start(c: TestClient) -> Dict[str, str]:
    r = c.get("/auth/demo", follow_redirects=False)
    assert r.status_code == 302
    return {k: v[0] for k, v in parse_qs(urlparse(r.headers["location"]).query).items()}


def test_redirect_phase_sets_state_and_pkce_cookies() -> None:
    http = _http()
    c = _client(http)

    r = c.get("/auth/demo", follow_redirects=False)

    assert r.status_code == 302
    location = urlparse(r.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == "https://idp.example.com/authorize"
    q = parse_qs(location.query)
    assert q["state"][0]
    assert q["code_challenge"][0]
    assert q["code_challenge_method"] == ["S256"]
    assert q["response_type"] == ["code"]
    assert q["client_id"] == ["demo-client"]
    assert q["scope"] == ["openid email"]
    assert q["redirect_uri"] == ["http://testserver/auth/demo"]

    set_cookies = r.headers.get_list("set-cookie")
    names = sorted(h.split("=", 1)[0] for h in set_cookies)
    assert names == ["session-oauth-demo-state", "session-oauth-demo-verifier"]
    assert all("Max-Age=660" in h and "HttpOnly" in h for h in set_cookies)
    http.post.assert_not_called()


def test_callback_with_wrong_state_never_calls_token_endpoint() -> None:
    http = _http()
    c = _client(http)
    _start(c)

    r = c.get("/auth/demo?code=abc&state=WRONG", follow_redirects=False)

    assert r.status_code == 401
    assert r.json() == {"detail": "Demo login failed: state does not match", "error": "invalid_state"}
    assert http.post.call_count == 0


def test_callback_without_stored_state_is_rejected() -> None:
    http = _http()
    c = _client(http)

    r = c.get("/auth/demo?code=abc&state=anything", follow_redirects=False)

    assert r.status_code == 401
    assert r.json()["detail"] == "Demo login failed: state is missing"
    assert http.post.call_count == 0


def test_successful_login_commits_session_and_sends_verifier() -> None:
    http = _http()
    c = _client(http)
    params = _start(c)

    r = c.get(f"/auth/demo?code=abc&state={params['state']}", follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "/"

    http.post.assert_called_once()
    call = http.post.call_args
    assert call.args[0] == "https://idp.example.com/token"
    body = call.kwargs["data"]
    assert body["grant_type"] == "authorization_code"
    assert body["code"] == "abc"
    assert body["client_id"] == "demo-client"
    assert body["client_secret"] == "demo-secret"
    assert body["redirect_uri"] == "http://testserver/auth/demo"
    assert pkce_challenge(body["code_verifier"]) == params["code_challenge"]
    assert call.kwargs["timeout"] == 10

    assert http.get.call_args.kwargs["headers"]["Authorization"] == "Bearer at-1"

    session = c.get("/api/_auth/session").json()
    assert session["user"]["id"] == "u-1"
    assert session["user"]["email"] == "u@example.com"
    assert session["user"]["provider"] == "demo"
    assert isinstance(session["loggedInAt"], int)
    assert "secure" not in session


def test_replayed_callback_fails_second_time() -> None:
    http = _http()
    c = _client(http)
    params = _start(c)

    first = c.get(f"/auth/demo?code=abc&state={params['state']}", follow_redirects=False)
    second = c.get(f"/auth/demo?code=abc&state={params['state']}", follow_redirects=False)

    assert first.status_code == 302
    assert second.status_code == 401
    assert second.json()["error"] == "invalid_state"
    assert http.post.call_count == 1


def test_provider_error_short_circuits() -> None:
    http = _http()
    c = _client(http)

    r = c.get("/auth/demo?error=access_denied&error_description=User+cancelled", follow_redirects=False)

    assert r.status_code == 401
    assert r.json() == {"detail": "Demo login failed: User cancelled", "error": "provider_error"}
    http.post.assert_not_called()


def test_missing_configuration_names_env_variables() -> None:
    c = _client(_http())

    r = c.get("/auth/github", follow_redirects=False)

    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "missing_configuration"
    assert "AUTH_OAUTH_GITHUB_CLIENT_ID" in body["detail"]
    assert "AUTH_OAUTH_GITHUB_CLIENT_SECRET" in body["detail"]


def test_unknown_provider_is_404() -> None:
    r = _client(_http()).get("/auth/nope", follow_redirects=False)
    assert r.status_code == 404


def test_token_error_payload_becomes_token_exchange_error() -> None:
    http = _http()
    http.post.return_value = _resp(status=400, payload={"error": "invalid_grant", "error_description": "Code expired"})
    c = _client(http)
    params = _start(c)

    r = c.get(f"/auth/demo?code=abc&state={params['state']}", follow_redirects=False)

    assert r.status_code == 401
    assert r.json() == {"detail": "Demo login failed: Code expired", "error": "token_exchange_error"}
    http.get.assert_not_called()


def test_token_endpoint_network_failure_is_not_retried() -> None:
    http = _http()
    http.post.side_effect = requests.ConnectionError("refused")
    c = _client(http)
    params = _start(c)

    r = c.get(f"/auth/demo?code=abc&state={params['state']}", follow_redirects=False)

    assert r.status_code == 401
    assert r.json()["error"] == "token_exchange_error"
    assert http.post.call_count == 1


def test_user_endpoint_failure_is_user_fetch_failure() -> None:
    http = _http()
    http.get.return_value = _resp(status=502)
    c = _client(http)
    params = _start(c)

    r = c.get(f"/auth/demo?code=abc&state={params['state']}", follow_redirects=False)

    assert r.status_code == 500
    assert r.json()["error"] == "user_fetch_failure"
    assert c.get("/api/_auth/session").json() == {}


def test_parse_token_payload_classification() -> None:
    ok = parse_token_payload({"access_token": "a", "expires_in": "60", "scope": "x"}, provider="P")
    assert ok.access_token == "a"
    assert ok.expires_in == 60
    assert ok.token_type == "Bearer"
    assert ok.to_dict() == {"access_token": "a", "token_type": "Bearer", "expires_in": 60, "scope": "x"}

    for payload, message in (
        ({"error": "invalid_grant"}, "P login failed: invalid_grant"),
        ({"error": "e", "error_description": "desc"}, "P login failed: desc"),
        ({}, "P login failed: token response has no access_token"),
    ):
        with pytest.raises(TokenExchangeError) as exc:
            parse_token_payload(payload, provider="P")
        assert exc.value.message == message


# ---- Engine used directly ----


def _engine(descriptor: ProviderDescriptor, http: MagicMock, store, **kwargs) -> OAuthFlowEngine:
    cfg = ProviderConfig(name=descriptor.name, client_id="cid", client_secret="csecret")
    return OAuthFlowEngine(descriptor, cfg, store=store, http=http, **kwargs)


def _state_from(response) -> str:
    return parse_qs(urlparse(response.headers["location"]).query)["state"][0]


def test_engine_replay_with_same_store_yields_one_success(make_request) -> None:
    http = _http()
    store = MemorySingleUseStore()
    successes = []
    engine = _engine(DEMO, http, store, on_success=lambda req, result: successes.append(result))

    state = _state_from(engine.handle(make_request(path="/auth/demo")))
    query = f"code=abc&state={state}"
    engine.handle(make_request(path="/auth/demo", query=query))

    with pytest.raises(InvalidState):
        engine.handle(make_request(path="/auth/demo", query=query))

    assert len(successes) == 1
    assert successes[0].provider == "demo"
    assert successes[0].user["id"] == "u-1"
    assert successes[0].tokens.access_token == "at-1"


def test_engine_consumes_state_even_when_it_mismatches(make_request) -> None:
    store = MemorySingleUseStore()
    engine = _engine(DEMO, _http(), store, on_success=lambda req, result: None)
    state = _state_from(engine.handle(make_request(path="/auth/demo")))

    for query in ("code=abc&state=WRONG", f"code=abc&state={state}"):
        with pytest.raises(InvalidState):
            engine.handle(make_request(path="/auth/demo", query=query))
    assert len(store) == 0


def test_engine_on_error_controls_response(make_request) -> None:
    seen = []

    def on_error(req, err):
        seen.append(err)
        return RedirectResponse(url=f"/login?error={err.kind}", status_code=302)

    engine = _engine(DEMO, _http(), MemorySingleUseStore(), on_success=lambda req, result: None, on_error=on_error)
    resp = engine.handle(make_request(path="/auth/demo", query="error=access_denied"))

    assert resp.headers["location"] == "/login?error=provider_error"
    assert isinstance(seen[0], ProviderError)


def test_engine_basic_auth_and_json_body(make_request) -> None:
    desc = ProviderDescriptor(
        name="basicjson",
        display_name="BasicJson",
        authorization_url="https://idp/authorize",
        token_url="https://idp/token",
        user_url="https://idp/me",
        token_auth="basic",
        token_format="json",
    )
    http = _http()
    store = MemorySingleUseStore()
    engine = _engine(desc, http, store, on_success=lambda req, result: None)

    redirect = engine.handle(make_request(path="/auth/basicjson"))
    assert "code_challenge" not in redirect.headers["location"]

    resp = engine.handle(make_request(path="/auth/basicjson", query=f"code=c1&state={_state_from(redirect)}"))

    assert resp.status_code == 302
    call = http.post.call_args
    assert call.kwargs["auth"] == ("cid", "csecret")
    assert "client_secret" not in call.kwargs["json"]
    assert "code_verifier" not in call.kwargs["json"]
    assert "data" not in call.kwargs


def test_engine_uses_configured_redirect_url(make_request) -> None:
    cfg = ProviderConfig(name="demo", client_id="cid", client_secret="s", redirect_url="https://app.example.com/cb")
    engine = OAuthFlowEngine(DEMO, cfg, store=MemorySingleUseStore(), http=_http(), on_success=lambda r, x: None)

    location = engine.handle(make_request(path="/auth/demo")).headers["location"]
    assert parse_qs(urlparse(location).query)["redirect_uri"] == ["https://app.example.com/cb"]
