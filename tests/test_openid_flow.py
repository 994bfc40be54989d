from __future__ import annotations

from typing import Dict
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlencode, urlparse

from fastapi.testclient import TestClient

from sealauth.api.app import create_app
from sealauth.auth.config import load_auth_config
from sealauth.oauth.openid import IDENTIFIER_SELECT, parse_key_values

STEAM_ID = "76561197960287930"
RETURN_TO = "http://testserver/auth/steam"
ENV = {"AUTH_SESSION_PASSWORD": "S1", "AUTH_OAUTH_STEAM_API_KEY": "steam-key"}


def _http(is_valid: str = "true") -> MagicMock:
    http = MagicMock()
    check = MagicMock()
    check.status_code = 200
    check.text = f"ns:http://specs.openid.net/auth/2.0\nis_valid:{is_valid}\n"
    http.post.return_value = check

    profile = MagicMock()
    profile.status_code = 200
    profile.json.return_value = {
        "response": {
            "players": [
                {"steamid": STEAM_ID, "personaname": "gabe", "realname": "Gabe", "avatarfull": "https://a/full.jpg"}
            ]
        }
    }
    http.get.return_value = profile
    return http


def _assertion(**overrides: str) -> Dict[str, str]:
    claimed = f"https://steamcommunity.com/openid/id/{STEAM_ID}"
    params = {
        "openid.ns": "http://specs.openid.net/auth/2.0",
        "openid.mode": "id_res",
        "openid.op_endpoint": "https://steamcommunity.com/openid/login",
        "openid.claimed_id": claimed,
        "openid.identity": claimed,
        "openid.return_to": RETURN_TO,
        "openid.response_nonce": "2024-01-01T00:00:00Zabc",
        "openid.assoc_handle": "1234567890",
        "openid.signed": "signed,op_endpoint,claimed_id,identity,return_to,response_nonce,assoc_handle",
        "openid.sig": "c2lnbmF0dXJl",
    }
    params.update(overrides)
    return params


def _client(http: MagicMock, env: Dict[str, str] = ENV) -> TestClient:
    return TestClient(create_app(load_auth_config(env), http=http))


def test_redirects_to_steam_with_identifier_select() -> None:
    r = _client(_http()).get("/auth/steam", follow_redirects=False)

    assert r.status_code == 302
    location = urlparse(r.headers["location"])
    assert location.netloc == "steamcommunity.com"
    q = parse_qs(location.query)
    assert q["openid.mode"] == ["checkid_setup"]
    assert q["openid.return_to"] == [RETURN_TO]
    assert q["openid.realm"] == ["http://testserver"]
    assert q["openid.claimed_id"] == [IDENTIFIER_SELECT]


def test_missing_api_key_is_reported() -> None:
    r = _client(_http(), env={"AUTH_SESSION_PASSWORD": "S1"}).get("/auth/steam", follow_redirects=False)

    assert r.status_code == 500
    assert r.json()["error"] == "missing_configuration"
    assert "AUTH_OAUTH_STEAM_API_KEY" in r.json()["detail"]


def test_successful_assertion_creates_session() -> None:
    http = _http()
    c = _client(http)

    r = c.get(f"/auth/steam?{urlencode(_assertion())}", follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "/"

    posted = http.post.call_args.kwargs["data"]
    assert posted["openid.mode"] == "check_authentication"
    assert posted["openid.sig"] == "c2lnbmF0dXJl"
    assert http.get.call_args.kwargs["params"] == {"key": "steam-key", "steamids": STEAM_ID}

    user = c.get("/api/_auth/session").json()["user"]
    assert user == {
        "id": STEAM_ID,
        "nickname": "gabe",
        "name": "Gabe",
        "avatar": "https://a/full.jpg",
        "provider": "steam",
    }


def test_rejected_assertion_creates_no_session() -> None:
    http = _http(is_valid="false")
    c = _client(http)

    r = c.get(f"/auth/steam?{urlencode(_assertion())}", follow_redirects=False)

    assert r.status_code == 401
    assert r.json()["error"] == "provider_error"
    http.get.assert_not_called()
    assert c.get("/api/_auth/session").json() == {}


def test_missing_signed_field_is_a_validation_error() -> None:
    params = _assertion()
    del params["openid.response_nonce"]
    http = _http()

    r = _client(http).get(f"/auth/steam?{urlencode(params)}", follow_redirects=False)

    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"
    http.post.assert_not_called()


def test_unsigned_claimed_id_is_rejected() -> None:
    http = _http()
    c = _client(http)
    query = urlencode(_assertion(**{"openid.signed": "signed,op_endpoint,return_to,response_nonce,assoc_handle"}))

    r = c.get(f"/auth/steam?{query}", follow_redirects=False)

    assert r.status_code == 400
    assert r.json() == {
        "detail": "Steam login failed: assertion does not sign required fields",
        "error": "validation_error",
    }
    http.post.assert_not_called()
    assert c.get("/api/_auth/session").json() == {}


def test_foreign_op_endpoint_is_rejected() -> None:
    http = _http()
    query = urlencode(_assertion(**{"openid.op_endpoint": "https://evil.example.com/openid/login"}))

    r = _client(http).get(f"/auth/steam?{query}", follow_redirects=False)

    assert r.status_code == 401
    assert r.json()["detail"] == "Steam login failed: unexpected op_endpoint"
    http.post.assert_not_called()


def test_return_to_mismatch_is_rejected_before_verification() -> None:
    http = _http()
    query = urlencode(_assertion(**{"openid.return_to": "https://evil.example.com/auth/steam"}))

    r = _client(http).get(f"/auth/steam?{query}", follow_redirects=False)

    assert r.status_code == 401
    http.post.assert_not_called()


def test_unexpected_claimed_id_is_rejected() -> None:
    other = "https://other.example.com/openid/id/1"
    query = urlencode(_assertion(**{"openid.claimed_id": other, "openid.identity": other}))

    r = _client(_http()).get(f"/auth/steam?{query}", follow_redirects=False)

    assert r.status_code == 401
    assert "claimed_id" in r.json()["detail"]


def test_parse_key_values() -> None:
    assert parse_key_values("ns:http://x\nis_valid:true\ngarbage\n") == {"ns": "http://x", "is_valid": "true"}
    assert parse_key_values("") == {}
