"""
Generic OAuth2 / OIDC authorization-code flow.

One route serves both legs:
- no `code` query parameter: store `state` (and a PKCE verifier) and redirect to the provider
- `code` present: consume the stored values, check `state`, exchange the code, fetch the user

Provider differences live in `ProviderDescriptor`; this module holds no per-provider logic.
"""
from __future__ import annotations

import hmac
import logging
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

import requests
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from sealauth.auth.config import DEFAULT_PREFIX, ProviderConfig
from sealauth.auth.models import OAuthExchangeContext, OAuthResult, TokenResponse
from sealauth.auth.util import pkce_challenge, random_token
from sealauth.errors import (
    AuthError,
    InvalidState,
    MissingConfiguration,
    ProviderError,
    TokenExchangeError,
    UserFetchFailure,
)
from sealauth.oauth.providers import HTTP_TIMEOUT_SECONDS, ProviderDescriptor, UserRequest
from sealauth.storage.single_use import EntryExpired, SingleUseStore

logger = logging.getLogger(__name__)

OnSuccess = Callable[[Request, OAuthResult], Optional[Response]]
OnError = Callable[[Request, AuthError], Response]


def parse_token_payload(payload: Dict[str, Any], *, provider: str) -> TokenResponse:
    """
    Classify a token endpoint payload: an `error` key means failure (RFC 6749 section 5.2).
    """
    if payload.get("error"):
        reason = payload.get("error_description") or payload.get("error") or "Unknown error"
        raise TokenExchangeError(
            f"{provider} login failed: {reason}",
            data={"error": payload.get("error"), "error_description": payload.get("error_description")},
        )
    access_token = payload.get("access_token")
    if not access_token or not isinstance(access_token, str):
        raise TokenExchangeError(f"{provider} login failed: token response has no access_token")

    expires_in = payload.get("expires_in")
    try:
        expires_in = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        expires_in = None

    return TokenResponse(
        access_token=access_token,
        token_type=str(payload.get("token_type") or "Bearer"),
        expires_in=expires_in,
        refresh_token=payload.get("refresh_token"),
        scope=payload.get("scope"),
        id_token=payload.get("id_token"),
        raw=dict(payload),
    )


def _response_payload(r: requests.Response) -> Dict[str, Any]:
    try:
        data = r.json()
    except ValueError:
        # Some endpoints answer form-encoded unless JSON was negotiated.
        data = dict(parse_qsl(r.text or ""))
    if not isinstance(data, dict):
        data = {}
    if r.status_code >= 400 and not data.get("error"):
        data["error"] = f"token endpoint returned status {r.status_code}"
    return data


class OAuthFlowEngine:
    def __init__(
        self,
        descriptor: ProviderDescriptor,
        config: ProviderConfig,
        *,
        store: SingleUseStore,
        on_success: OnSuccess,
        on_error: Optional[OnError] = None,
        http: Optional[requests.Session] = None,
        ttl: int = 600,
        env_prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self.descriptor = descriptor
        self.config = config
        self.store = store
        self.on_success = on_success
        self.on_error = on_error
        self.http = http or requests.Session()
        self.ttl = ttl
        self.env_prefix = env_prefix

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def scope(self) -> Tuple[str, ...]:
        if self.config.scope is not None:
            return self.config.scope
        return self.descriptor.default_scope

    def _key(self, name: str) -> str:
        return f"oauth-{self.descriptor.name}-{name}"

    def handle(self, request: Request) -> Response:
        try:
            return self._dispatch(request)
        except AuthError as e:
            if self.on_error is None:
                raise
            logger.info("OAuth login failed provider=%s kind=%s", self.name, e.kind)
            return self.on_error(request, e)

    def _dispatch(self, request: Request) -> Response:
        q = request.query_params
        if q.get("error"):
            reason = q.get("error_description") or q.get("error")
            raise ProviderError(
                f"{self.descriptor.display_name} login failed: {reason}",
                data={"error": q.get("error"), "error_description": q.get("error_description")},
            )
        self.check_configuration()
        code = q.get("code")
        if not code:
            return self.authorize(request)
        return self.callback(request, code=code, state=q.get("state"))

    def check_configuration(self) -> None:
        missing = self.descriptor.missing_keys(self.config)
        if missing:
            names = [f"{self.env_prefix}_OAUTH_{self.name.upper()}_{k.upper()}" for k in missing]
            raise MissingConfiguration(f"Missing {', '.join(names)} env variable(s).", data={"missing": names})

    def redirect_uri(self, request: Request) -> str:
        if self.config.redirect_url:
            return self.config.redirect_url
        return str(request.url.replace(query="", fragment=""))

    def begin(self, request: Request) -> OAuthExchangeContext:
        """Create and persist the state (and PKCE verifier) for a new login attempt."""
        ctx = OAuthExchangeContext(state=random_token(32), redirect_uri=self.redirect_uri(request))
        self.store.put(request, self._key("state"), ctx.state, self.ttl)
        if self.descriptor.pkce:
            verifier = random_token(32)
            ctx = OAuthExchangeContext(
                state=ctx.state,
                redirect_uri=ctx.redirect_uri,
                code_verifier=verifier,
                code_challenge=pkce_challenge(verifier),
                code_challenge_method="S256",
            )
            self.store.put(request, self._key("verifier"), verifier, self.ttl)
        return ctx

    def authorization_url(self, ctx: OAuthExchangeContext) -> str:
        auth_url, _, _ = self.descriptor.endpoints(self.config)
        params: Dict[str, str] = self.descriptor.extra_authorization_params(self.config)
        params.update(
            {
                "response_type": "code",
                "client_id": self.config.client_id or "",
                "redirect_uri": ctx.redirect_uri,
                "state": ctx.state,
            }
        )
        if self.scope:
            params["scope"] = self.descriptor.scope_separator.join(self.scope)
        if ctx.code_challenge:
            params["code_challenge"] = ctx.code_challenge
            params["code_challenge_method"] = ctx.code_challenge_method or "S256"
        sep = "&" if "?" in auth_url else "?"
        return f"{auth_url}{sep}{urlencode(params)}"

    def authorize(self, request: Request) -> Response:
        ctx = self.begin(request)
        url = self.authorization_url(ctx)
        logger.debug("OAuth redirect provider=%s pkce=%s", self.name, bool(ctx.code_challenge))
        return RedirectResponse(url=url, status_code=302)

    def _take(self, request: Request, name: str) -> Tuple[Optional[str], bool]:
        try:
            value = self.store.take_once(request, self._key(name))
        except EntryExpired:
            return None, True
        return (str(value) if value else None), False

    def callback(self, request: Request, *, code: str, state: Optional[str]) -> Response:
        display = self.descriptor.display_name

        # Consume both entries before any check so a failed attempt cannot be retried.
        expected_state, state_expired = self._take(request, "state")
        verifier, verifier_expired = self._take(request, "verifier") if self.descriptor.pkce else (None, False)

        if state_expired:
            raise InvalidState(f"{display} login failed: state has expired")
        if not expected_state:
            raise InvalidState(f"{display} login failed: state is missing")
        if not state or not hmac.compare_digest(state, expected_state):
            raise InvalidState(f"{display} login failed: state does not match")
        if self.descriptor.pkce and not verifier:
            reason = "code verifier has expired" if verifier_expired else "code verifier is missing"
            raise InvalidState(f"{display} login failed: {reason}")

        tokens = self.exchange_code(code, redirect_uri=self.redirect_uri(request), code_verifier=verifier)
        user = self.fetch_user(tokens)
        logger.info("OAuth login succeeded provider=%s", self.name)

        resp = self.on_success(request, OAuthResult(provider=self.name, user=user, tokens=tokens))
        return resp if resp is not None else RedirectResponse(url="/", status_code=302)

    def exchange_code(self, code: str, *, redirect_uri: str, code_verifier: Optional[str] = None) -> TokenResponse:
        display = self.descriptor.display_name
        _, token_url, _ = self.descriptor.endpoints(self.config)
        body: Dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.config.client_id or "",
        }
        auth = None
        if self.descriptor.token_auth == "basic":
            auth = (self.config.client_id or "", self.config.client_secret or "")
        elif self.config.client_secret:
            body["client_secret"] = self.config.client_secret
        if code_verifier:
            body["code_verifier"] = code_verifier

        kwargs: Dict[str, Any] = {"json": body} if self.descriptor.token_format == "json" else {"data": body}
        try:
            r = self.http.post(
                token_url,
                headers={"Accept": "application/json"},
                auth=auth,
                timeout=HTTP_TIMEOUT_SECONDS,
                **kwargs,
            )
        except requests.RequestException as e:
            logger.warning("Token endpoint unreachable provider=%s: %s", self.name, type(e).__name__)
            raise TokenExchangeError(f"{display} login failed: token endpoint unreachable")
        return parse_token_payload(_response_payload(r), provider=display)

    def fetch_user(self, tokens: TokenResponse) -> Dict[str, Any]:
        _, _, user_url = self.descriptor.endpoints(self.config)
        req = UserRequest(
            descriptor=self.descriptor,
            config=self.config,
            tokens=tokens,
            url=user_url,
            headers=self.descriptor.headers_for_user(self.config, tokens),
            scope=self.scope,
            http=self.http,
        )
        raw = self.descriptor.fetch_user(req)
        if not isinstance(raw, dict) or not raw:
            raise UserFetchFailure(f"{self.descriptor.display_name} login failed: empty user profile")
        return self.descriptor.normalize(raw)
