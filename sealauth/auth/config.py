"""
Configuration for sessions, OAuth providers and WebAuthn.

Design goals:
- Built once at startup from environment variables and never mutated afterwards.
- Passed explicitly to the components that need it (no module-level caches).
- Provider settings follow `<PREFIX>_OAUTH_<PROVIDER>_<KEY>`.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from sealauth.auth.util import random_token
from sealauth.errors import MissingConfiguration

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "AUTH"

# Keys with a dedicated ProviderConfig field; anything else lands in `params`.
_PROVIDER_FIELDS = (
    "CLIENT_ID",
    "CLIENT_SECRET",
    "SCOPE",
    "REDIRECT_URL",
    "AUTHORIZATION_URL",
    "TOKEN_URL",
    "USER_URL",
)
_FIELD_ATTRS = tuple(k.lower() for k in _PROVIDER_FIELDS)


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: Optional[Tuple[str, ...]] = None  # None: descriptor default
    redirect_url: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    user_url: Optional[str] = None
    authorization_params: Dict[str, str] = field(default_factory=dict)
    # Descriptor parameters such as domain, base_url, tenant, realm, api_key.
    params: Dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> Optional[str]:
        if key in _FIELD_ATTRS:
            return getattr(self, key)
        return self.params.get(key) or None


@dataclass(frozen=True)
class AuthConfig:
    environment: str
    env_prefix: str
    public_base_url: Optional[str]

    # Session configuration
    session_name: str
    session_passwords: Tuple[str, ...]  # first one seals; all are tried when unsealing
    session_max_age: int
    cookie_secure: bool
    cookie_samesite: str
    auto_extend_session: bool

    # Revocation
    revocation_fail_open: bool
    revocation_dsn: Optional[str]

    # Ceremonies
    oauth_ttl_seconds: int
    webauthn_rp_name: Optional[str]
    webauthn_challenge_ttl: int

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def session_password(self) -> str:
        return self.session_passwords[0]

    def provider(self, name: str) -> ProviderConfig:
        """Return the configured provider settings (an empty config if nothing was set)."""
        key = (name or "").strip().lower()
        return self.providers.get(key) or ProviderConfig(name=key)

    def env_var(self, provider: str, key: str) -> str:
        return f"{self.env_prefix}_OAUTH_{provider.upper()}_{key.upper()}"


def _env(environ: Mapping[str, str], name: str) -> Optional[str]:
    return (environ.get(name, "") or "").strip() or None


def _env_bool(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = (environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(environ: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw = _env(environ, name)
    if raw is None:
        return default
    try:
        value = int(float(raw))
    except ValueError:
        logger.warning("Ignoring invalid integer for %s", name)
        return default
    return max(value, minimum)


def _parse_list(value: Optional[str]) -> List[str]:
    items = [x.strip() for x in (value or "").replace(",", " ").split(" ")]
    return [x for x in items if x]


def _split_provider_key(rest: str) -> Optional[Tuple[str, str]]:
    for key in _PROVIDER_FIELDS:
        suffix = "_" + key
        if rest.endswith(suffix) and len(rest) > len(suffix):
            return rest[: -len(suffix)], key
    if "_" not in rest:
        return None
    provider, key = rest.split("_", 1)
    return provider, key


def load_provider_configs(environ: Mapping[str, str], prefix: str = DEFAULT_PREFIX) -> Dict[str, ProviderConfig]:
    """
    Group `<PREFIX>_OAUTH_<PROVIDER>_<KEY>` variables into one ProviderConfig per provider.
    """
    marker = f"{prefix}_OAUTH_"
    raw: Dict[str, Dict[str, str]] = {}
    for name, value in environ.items():
        if not name.startswith(marker):
            continue
        split = _split_provider_key(name[len(marker):])
        if split is None:
            continue
        provider, key = split
        v = (value or "").strip()
        if v:
            raw.setdefault(provider.lower(), {})[key.lower()] = v

    out: Dict[str, ProviderConfig] = {}
    for provider, values in raw.items():
        scope = values.pop("scope", None)
        fields = {k: values.pop(k) for k in _FIELD_ATTRS if k in values}
        out[provider] = ProviderConfig(
            name=provider,
            scope=tuple(_parse_list(scope)) if scope is not None else None,
            params=values,
            **fields,
        )
    return out


def load_auth_config(environ: Optional[Mapping[str, str]] = None, *, prefix: str = DEFAULT_PREFIX) -> AuthConfig:
    """
    Load configuration from environment variables.

    In production `<PREFIX>_SESSION_PASSWORD` is required. In development a random
    password is generated when it is missing, which invalidates sessions on restart.
    """
    env: Mapping[str, str] = os.environ if environ is None else environ

    environment = (_env(env, f"{prefix}_ENV") or "development").lower()
    public_base_url = _env(env, f"{prefix}_PUBLIC_BASE_URL")

    password = _env(env, f"{prefix}_SESSION_PASSWORD")
    if not password:
        if environment == "production":
            raise MissingConfiguration(f"Missing {prefix}_SESSION_PASSWORD env variable.")
        password = random_token(32)
        logger.warning("%s_SESSION_PASSWORD is not set; generated a temporary session password", prefix)
    previous = _parse_list(_env(env, f"{prefix}_SESSION_PREVIOUS_PASSWORDS"))

    cookie_secure_env = (env.get(f"{prefix}_COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies in production or behind an https base URL.
        cookie_secure = environment == "production" or (public_base_url or "").startswith("https://")

    samesite = (_env(env, f"{prefix}_COOKIE_SAMESITE") or "lax").lower()
    if samesite not in ("lax", "strict", "none"):
        samesite = "lax"

    return AuthConfig(
        environment=environment,
        env_prefix=prefix,
        public_base_url=public_base_url,
        session_name=_env(env, f"{prefix}_SESSION_NAME") or "session",
        session_passwords=(password, *[p for p in previous if p != password]),
        session_max_age=_env_int(env, f"{prefix}_SESSION_MAX_AGE", 43200, minimum=60),  # 12h default
        cookie_secure=cookie_secure,
        cookie_samesite=samesite,
        auto_extend_session=_env_bool(env, f"{prefix}_AUTO_EXTEND_SESSION", False),
        revocation_fail_open=_env_bool(env, f"{prefix}_REVOCATION_FAIL_OPEN", True),
        revocation_dsn=_env(env, f"{prefix}_REVOCATION_DSN"),
        oauth_ttl_seconds=_env_int(env, f"{prefix}_STATE_TTL_SECONDS", 600),
        webauthn_rp_name=_env(env, f"{prefix}_WEBAUTHN_RP_NAME"),
        webauthn_challenge_ttl=_env_int(env, f"{prefix}_WEBAUTHN_CHALLENGE_TTL", 180),
        providers=load_provider_configs(env, prefix),
    )
