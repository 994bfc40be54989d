"""
Provider descriptors: the per-provider data the generic OAuth engine is parameterized by.

A descriptor holds endpoint templates, scope defaults, token request shaping and a user
normalization function. Templates may reference `{placeholders}` resolved from the
ProviderConfig (fields or params such as `domain`, `tenant`, `realm`).
"""
from __future__ import annotations

import logging
import string
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import jwt  # PyJWT
import requests

from sealauth.auth.config import ProviderConfig
from sealauth.auth.models import TokenResponse
from sealauth.errors import MissingConfiguration, UserFetchFailure

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 10


def _first(*values: Any) -> Any:
    for v in values:
        if v not in (None, ""):
            return v
    return None


def normalized_user(raw: Mapping[str, Any], **fields: Any) -> Dict[str, Any]:
    """Build the normalized profile shape shared by all providers."""
    out: Dict[str, Any] = {
        "id": fields.get("id"),
        "nickname": fields.get("nickname"),
        "name": fields.get("name"),
        "email": fields.get("email"),
        "avatar": fields.get("avatar"),
        "raw": dict(raw),
    }
    if out["id"] is None:
        raise UserFetchFailure("User profile has no identifier", data={"raw": dict(raw)})
    return out


def _oidc_user(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return normalized_user(
        raw,
        id=raw.get("sub"),
        nickname=_first(raw.get("preferred_username"), raw.get("nickname")),
        name=raw.get("name"),
        email=raw.get("email"),
        avatar=raw.get("picture"),
    )


@dataclass
class UserRequest:
    """Everything a descriptor needs to fetch the raw user profile."""

    descriptor: "ProviderDescriptor"
    config: ProviderConfig
    tokens: TokenResponse
    url: Optional[str]
    headers: Dict[str, str]
    scope: Tuple[str, ...]
    http: requests.Session

    def get(self, url: Optional[str] = None) -> Any:
        target = url or self.url
        if not target:
            raise UserFetchFailure(f"{self.descriptor.display_name} login failed: no user endpoint configured")
        try:
            r = self.http.get(target, headers=self.headers, timeout=HTTP_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            raise UserFetchFailure(f"{self.descriptor.display_name} login failed: user endpoint unreachable ({e})")
        if r.status_code >= 400:
            raise UserFetchFailure(
                f"{self.descriptor.display_name} login failed: user endpoint returned status {r.status_code}"
            )
        try:
            return r.json()
        except ValueError:
            raise UserFetchFailure(f"{self.descriptor.display_name} login failed: user endpoint returned invalid JSON")


def fetch_user_from_endpoint(req: UserRequest) -> Any:
    return req.get()


def user_from_id_token(req: UserRequest) -> Dict[str, Any]:
    """
    Read the profile from the `id_token` returned by the token endpoint.

    With a configured `jwks_url` the signature, audience and (optional) issuer are verified.
    Without one the claims are read as-is; the token came directly from the token endpoint
    over TLS (OIDC Core 3.1.3.7).
    """
    id_token = req.tokens.id_token
    if not id_token:
        raise UserFetchFailure(f"{req.descriptor.display_name} login failed: missing id_token in token response")
    jwks_url = req.config.get("jwks_url")
    try:
        if jwks_url:
            signing_key = jwt.PyJWKClient(jwks_url).get_signing_key_from_jwt(id_token)
            options: Dict[str, Any] = {"require": ["exp", "iat", "iss", "aud"]}
            issuer = req.config.get("issuer")
            claims = jwt.decode(
                id_token,
                key=signing_key.key,
                algorithms=["RS256", "ES256"],
                audience=req.config.client_id,
                issuer=issuer,
                options=options if issuer else {"require": ["exp", "iat", "aud"]},
            )
        else:
            claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise UserFetchFailure(f"{req.descriptor.display_name} login failed: invalid id_token ({e})")
    if not isinstance(claims, dict):
        raise UserFetchFailure(f"{req.descriptor.display_name} login failed: invalid id_token claims")
    return claims


def fetch_oidc_user(req: UserRequest) -> Any:
    if req.url:
        return req.get()
    return user_from_id_token(req)


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    display_name: str
    authorization_url: str
    token_url: str
    user_url: Optional[str] = None
    default_scope: Tuple[str, ...] = ()
    scope_separator: str = " "
    pkce: bool = False
    token_auth: str = "body"  # body|basic
    token_format: str = "form"  # form|json
    user_auth_scheme: str = "Bearer"
    user_headers: Dict[str, str] = field(default_factory=dict)
    authorization_params: Dict[str, str] = field(default_factory=dict)
    # ProviderConfig params forwarded to the authorization URL when set (e.g. audience).
    optional_authorization_params: Tuple[str, ...] = ()
    param_defaults: Dict[str, str] = field(default_factory=dict)
    required: Tuple[str, ...] = ("client_id", "client_secret")
    normalize: Callable[[Mapping[str, Any]], Dict[str, Any]] = _oidc_user
    fetch_user: Callable[[UserRequest], Any] = fetch_user_from_endpoint

    def _values(self, cfg: ProviderConfig) -> Dict[str, str]:
        values: Dict[str, str] = dict(self.param_defaults)
        values.update({k: v for k, v in cfg.params.items() if v})
        for key in ("client_id", "client_secret", "redirect_url"):
            v = cfg.get(key)
            if v:
                values[key] = v
        return values

    def missing_keys(self, cfg: ProviderConfig) -> List[str]:
        values = self._values(cfg)
        missing = [k for k in self.required if not (cfg.get(k) or values.get(k))]
        templates = [
            (cfg.authorization_url, self.authorization_url),
            (cfg.token_url, self.token_url),
            (cfg.user_url, self.user_url),
        ]
        for override, template in templates:
            if override or not template:
                continue
            for name in _placeholders(template):
                if name not in values and name not in missing:
                    missing.append(name)
        return missing

    def endpoints(self, cfg: ProviderConfig) -> Tuple[str, str, Optional[str]]:
        """Resolve (authorization, token, user) URLs; configured overrides win."""
        values = self._values(cfg)
        auth = cfg.authorization_url or self.authorization_url.format_map(values)
        token = cfg.token_url or self.token_url.format_map(values)
        user = cfg.user_url or (self.user_url.format_map(values) if self.user_url else None)
        if not auth or not token:
            raise MissingConfiguration(f"{self.display_name} endpoints are not configured")
        return auth, token, user

    def headers_for_user(self, cfg: ProviderConfig, tokens: TokenResponse) -> Dict[str, str]:
        values = self._values(cfg)
        headers = {k: v.format_map(values) for k, v in self.user_headers.items()}
        scheme = self.user_auth_scheme or tokens.token_type or "Bearer"
        headers["Authorization"] = f"{scheme} {tokens.access_token}"
        headers.setdefault("Accept", "application/json")
        return headers

    def extra_authorization_params(self, cfg: ProviderConfig) -> Dict[str, str]:
        params = dict(self.authorization_params)
        for key in self.optional_authorization_params:
            v = cfg.params.get(key)
            if v:
                params[key] = v
        params.update(cfg.authorization_params)
        return params


def _placeholders(template: str) -> Iterable[str]:
    for _, name, _, _ in string.Formatter().parse(template):
        if name:
            yield name


# ---- Built-in descriptors ----


def _github_user(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return normalized_user(
        raw,
        id=raw.get("id"),
        nickname=raw.get("login"),
        name=_first(raw.get("name"), raw.get("login")),
        email=raw.get("email"),
        avatar=raw.get("avatar_url"),
    )


def _github_fetch(req: UserRequest) -> Any:
    user = req.get()
    if isinstance(user, dict) and not user.get("email") and "user:email" in req.scope:
        emails = req.get("https://api.github.com/user/emails")
        primary = next((e for e in emails or [] if isinstance(e, dict) and e.get("primary")), None)
        if primary is None:
            raise UserFetchFailure("GitHub login failed: no user email found")
        user["email"] = primary.get("email")
    return user


def _discord_user(raw: Mapping[str, Any]) -> Dict[str, Any]:
    uid = raw.get("id")
    avatar = raw.get("avatar")
    return normalized_user(
        raw,
        id=uid,
        nickname=raw.get("username"),
        name=_first(raw.get("global_name"), raw.get("username")),
        email=raw.get("email"),
        avatar=f"https://cdn.discordapp.com/avatars/{uid}/{avatar}.png" if uid and avatar else None,
    )


def _gitlab_user(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return normalized_user(
        raw,
        id=raw.get("id"),
        nickname=raw.get("username"),
        name=raw.get("name"),
        email=raw.get("email"),
        avatar=raw.get("avatar_url"),
    )


def _spotify_user(raw: Mapping[str, Any]) -> Dict[str, Any]:
    images = raw.get("images") or []
    return normalized_user(
        raw,
        id=raw.get("id"),
        nickname=raw.get("id"),
        name=raw.get("display_name"),
        email=raw.get("email"),
        avatar=images[0].get("url") if images and isinstance(images[0], dict) else None,
    )


def _twitch_user(raw: Mapping[str, Any]) -> Dict[str, Any]:
    data = raw.get("data") or []
    if not data or not isinstance(data[0], dict):
        raise UserFetchFailure("Twitch login failed: empty user list")
    user = data[0]
    return normalized_user(
        user,
        id=user.get("id"),
        nickname=user.get("login"),
        name=user.get("display_name"),
        email=user.get("email"),
        avatar=user.get("profile_image_url"),
    )


def _microsoft_user(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return normalized_user(
        raw,
        id=raw.get("id"),
        nickname=raw.get("userPrincipalName"),
        name=raw.get("displayName"),
        email=_first(raw.get("mail"), raw.get("userPrincipalName")),
        avatar=None,
    )


BUILTIN_DESCRIPTORS: Tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        name="github",
        display_name="GitHub",
        authorization_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        user_url="https://api.github.com/user",
        user_auth_scheme="token",
        user_headers={"User-Agent": "Github-OAuth-{client_id}"},
        normalize=_github_user,
        fetch_user=_github_fetch,
    ),
    ProviderDescriptor(
        name="google",
        display_name="Google",
        authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        user_url="https://www.googleapis.com/oauth2/v3/userinfo",
        default_scope=("email", "profile"),
        pkce=True,
    ),
    ProviderDescriptor(
        name="discord",
        display_name="Discord",
        authorization_url="https://discord.com/oauth2/authorize",
        token_url="https://discord.com/api/oauth2/token",
        user_url="https://discord.com/api/users/@me",
        default_scope=("identify", "email"),
        pkce=True,
        normalize=_discord_user,
    ),
    ProviderDescriptor(
        name="gitlab",
        display_name="GitLab",
        authorization_url="{base_url}/oauth/authorize",
        token_url="{base_url}/oauth/token",
        user_url="{base_url}/api/v4/user",
        default_scope=("read_user",),
        pkce=True,
        param_defaults={"base_url": "https://gitlab.com"},
        normalize=_gitlab_user,
    ),
    ProviderDescriptor(
        name="spotify",
        display_name="Spotify",
        authorization_url="https://accounts.spotify.com/authorize",
        token_url="https://accounts.spotify.com/api/token",
        user_url="https://api.spotify.com/v1/me",
        default_scope=("user-read-email",),
        token_auth="basic",
        normalize=_spotify_user,
    ),
    ProviderDescriptor(
        name="twitch",
        display_name="Twitch",
        authorization_url="https://id.twitch.tv/oauth2/authorize",
        token_url="https://id.twitch.tv/oauth2/token",
        user_url="https://api.twitch.tv/helix/users",
        default_scope=("user:read:email",),
        user_headers={"Client-Id": "{client_id}"},
        normalize=_twitch_user,
    ),
    ProviderDescriptor(
        name="auth0",
        display_name="Auth0",
        authorization_url="https://{domain}/authorize",
        token_url="https://{domain}/oauth/token",
        user_url="https://{domain}/userinfo",
        default_scope=("openid", "offline_access", "profile", "email"),
        token_format="json",
        optional_authorization_params=("audience", "connection"),
    ),
    ProviderDescriptor(
        name="microsoft",
        display_name="Microsoft",
        authorization_url="https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        user_url="https://graph.microsoft.com/v1.0/me",
        default_scope=("User.Read",),
        pkce=True,
        param_defaults={"tenant": "common"},
        normalize=_microsoft_user,
    ),
    ProviderDescriptor(
        name="keycloak",
        display_name="Keycloak",
        authorization_url="{server_url}/realms/{realm}/protocol/openid-connect/auth",
        token_url="{server_url}/realms/{realm}/protocol/openid-connect/token",
        user_url="{server_url}/realms/{realm}/protocol/openid-connect/userinfo",
        default_scope=("openid",),
        pkce=True,
    ),
    ProviderDescriptor(
        name="linkedin",
        display_name="LinkedIn",
        authorization_url="https://www.linkedin.com/oauth/v2/authorization",
        token_url="https://www.linkedin.com/oauth/v2/accessToken",
        user_url="https://api.linkedin.com/v2/userinfo",
        default_scope=("openid", "profile", "email"),
    ),
    # Generic OpenID Connect: endpoints come entirely from configuration. Without a
    # user URL the profile is read from the id_token.
    ProviderDescriptor(
        name="oidc",
        display_name="OIDC",
        authorization_url="",
        token_url="",
        default_scope=("openid", "profile", "email"),
        pkce=True,
        required=("client_id", "client_secret", "authorization_url", "token_url"),
        fetch_user=fetch_oidc_user,
    ),
)


class ProviderRegistry:
    """Name -> descriptor lookup, built once at startup."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor] = ()) -> None:
        self._descriptors: Dict[str, ProviderDescriptor] = {}
        for d in descriptors:
            self.register(d)

    def register(self, descriptor: ProviderDescriptor) -> None:
        self._descriptors[descriptor.name.lower()] = descriptor

    def get(self, name: str) -> Optional[ProviderDescriptor]:
        return self._descriptors.get((name or "").strip().lower())

    def names(self) -> List[str]:
        return sorted(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._descriptors


def default_registry() -> ProviderRegistry:
    return ProviderRegistry(BUILTIN_DESCRIPTORS)
