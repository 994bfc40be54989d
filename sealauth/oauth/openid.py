"""
OpenID 2.0 login (Steam style).

This ceremony has no token endpoint and no OAuth error object: the provider redirects back
with signed `openid.*` parameters which we hand back to it with `check_authentication`.
It therefore gets its own flow instead of being squeezed into the OAuth engine.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern
from urllib.parse import urlencode

import requests
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from sealauth.auth.config import DEFAULT_PREFIX, ProviderConfig
from sealauth.auth.models import OpenIDResult
from sealauth.errors import AuthError, MissingConfiguration, ProviderError, UserFetchFailure, ValidationError
from sealauth.oauth.providers import HTTP_TIMEOUT_SECONDS, normalized_user

logger = logging.getLogger(__name__)

OPENID_NS = "http://specs.openid.net/auth/2.0"
IDENTIFIER_SELECT = "http://specs.openid.net/auth/2.0/identifier_select"
# Fields a positive assertion must cover with its signature.
REQUIRED_SIGNED = ("claimed_id", "identity", "return_to", "op_endpoint", "response_nonce", "assoc_handle")

ProfileFetcher = Callable[[requests.Session, ProviderConfig, str], Dict[str, Any]]
OnSuccess = Callable[[Request, OpenIDResult], Optional[Response]]
OnError = Callable[[Request, AuthError], Response]


@dataclass(frozen=True)
class OpenIDDescriptor:
    name: str
    display_name: str
    endpoint: str
    identity_pattern: Pattern[str]
    fetch_profile: Optional[ProfileFetcher] = None
    required: tuple = ()


def _steam_profile(http: requests.Session, cfg: ProviderConfig, steam_id: str) -> Dict[str, Any]:
    url = "https://api.steampowered.com/ISteamUser/GetPlayerSummaries/v0002/"
    try:
        r = http.get(url, params={"key": cfg.get("api_key"), "steamids": steam_id}, timeout=HTTP_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        raise UserFetchFailure(f"Steam login failed: profile endpoint unreachable ({type(e).__name__})")
    if r.status_code >= 400:
        raise UserFetchFailure(f"Steam login failed: profile endpoint returned status {r.status_code}")
    try:
        players = ((r.json() or {}).get("response") or {}).get("players") or []
    except ValueError:
        raise UserFetchFailure("Steam login failed: profile endpoint returned invalid JSON")
    if not players:
        raise UserFetchFailure("Steam login failed: player not found")
    player = players[0]
    return normalized_user(
        player,
        id=player.get("steamid") or steam_id,
        nickname=player.get("personaname"),
        name=player.get("realname") or player.get("personaname"),
        email=None,
        avatar=player.get("avatarfull"),
    )


STEAM = OpenIDDescriptor(
    name="steam",
    display_name="Steam",
    endpoint="https://steamcommunity.com/openid/login",
    identity_pattern=re.compile(r"^https?://steamcommunity\.com/openid/id/(\d+)$"),
    fetch_profile=_steam_profile,
    required=("api_key",),
)


def parse_key_values(text: str) -> Dict[str, str]:
    """Parse the `key:value` line format of OpenID direct responses."""
    out: Dict[str, str] = {}
    for line in (text or "").splitlines():
        if ":" not in line:
            continue
        k, v = line.split(":", 1)
        out[k.strip()] = v.strip()
    return out


class OpenIDFlow:
    def __init__(
        self,
        descriptor: OpenIDDescriptor,
        config: ProviderConfig,
        *,
        on_success: OnSuccess,
        on_error: Optional[OnError] = None,
        http: Optional[requests.Session] = None,
        env_prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self.descriptor = descriptor
        self.config = config
        self.on_success = on_success
        self.on_error = on_error
        self.http = http or requests.Session()
        self.env_prefix = env_prefix

    def handle(self, request: Request) -> Response:
        try:
            return self._dispatch(request)
        except AuthError as e:
            if self.on_error is None:
                raise
            logger.info("OpenID login failed provider=%s kind=%s", self.descriptor.name, e.kind)
            return self.on_error(request, e)

    def _dispatch(self, request: Request) -> Response:
        missing = [k for k in self.descriptor.required if not self.config.get(k)]
        if missing:
            names = [f"{self.env_prefix}_OAUTH_{self.descriptor.name.upper()}_{k.upper()}" for k in missing]
            raise MissingConfiguration(f"Missing {', '.join(names)} env variable(s).", data={"missing": names})
        if not request.query_params.get("openid.claimed_id"):
            return self.redirect(request)
        return self.verify(request)

    def return_to(self, request: Request) -> str:
        if self.config.redirect_url:
            return self.config.redirect_url
        return str(request.url.replace(query="", fragment=""))

    @staticmethod
    def realm(request: Request) -> str:
        return f"{request.url.scheme}://{request.url.netloc}"

    def redirect(self, request: Request) -> Response:
        params = {
            "openid.ns": OPENID_NS,
            "openid.mode": "checkid_setup",
            "openid.return_to": self.return_to(request),
            "openid.realm": self.realm(request),
            "openid.identity": IDENTIFIER_SELECT,
            "openid.claimed_id": IDENTIFIER_SELECT,
        }
        return RedirectResponse(url=f"{self.descriptor.endpoint}?{urlencode(params)}", status_code=302)

    def _assertion(self, request: Request) -> Dict[str, str]:
        q = request.query_params
        signed = q.get("openid.signed")
        if not signed or not q.get("openid.sig"):
            raise ValidationError(f"{self.descriptor.display_name} login failed: missing signature")
        fields: List[str] = [f for f in signed.split(",") if f]
        unsigned = [f for f in REQUIRED_SIGNED if f not in fields]
        if unsigned:
            raise ValidationError(
                f"{self.descriptor.display_name} login failed: assertion does not sign required fields",
                data={"unsigned": unsigned},
            )
        absent = [f for f in fields if q.get(f"openid.{f}") is None]
        if absent:
            raise ValidationError(
                f"{self.descriptor.display_name} login failed: missing signed fields",
                data={"missing": absent},
            )
        return {k: v for k, v in q.items() if k.startswith("openid.")}

    def verify(self, request: Request) -> Response:
        display = self.descriptor.display_name
        assertion = self._assertion(request)

        if assertion.get("openid.return_to") != self.return_to(request):
            raise ProviderError(f"{display} login failed: return_to does not match")
        if assertion.get("openid.op_endpoint") != self.descriptor.endpoint:
            raise ProviderError(f"{display} login failed: unexpected op_endpoint")

        check = dict(assertion)
        check["openid.mode"] = "check_authentication"
        try:
            r = self.http.post(self.descriptor.endpoint, data=check, timeout=HTTP_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            raise ProviderError(f"{display} login failed: provider unreachable ({type(e).__name__})")
        if r.status_code >= 400 or parse_key_values(r.text).get("is_valid") != "true":
            raise ProviderError(f"{display} login failed: assertion rejected by provider")

        claimed_id = assertion.get("openid.claimed_id") or ""
        m = self.descriptor.identity_pattern.match(claimed_id)
        if not m:
            raise ProviderError(f"{display} login failed: unexpected claimed_id")
        identifier = m.group(1)

        if self.descriptor.fetch_profile is not None:
            user = self.descriptor.fetch_profile(self.http, self.config, identifier)
        else:
            user = normalized_user({"claimed_id": claimed_id}, id=identifier)
        logger.info("OpenID login succeeded provider=%s", self.descriptor.name)

        resp = self.on_success(request, OpenIDResult(provider=self.descriptor.name, user=user, claimed_id=claimed_id))
        return resp if resp is not None else RedirectResponse(url="/", status_code=302)
