"""
HTTP surface.

Routes:
- GET/DELETE /api/_auth/session: read or clear the sealed session
- GET /auth/steam: OpenID 2.0 login
- GET /auth/{provider}: OAuth redirect and callback
- POST /webauthn/register, POST /webauthn/authenticate: passkey ceremonies
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from sealauth.api.deps import AuthContext, get_auth_context
from sealauth.auth.config import AuthConfig, load_auth_config
from sealauth.auth.cookies import apply_cookies
from sealauth.auth.models import AuthenticationResult, OAuthResult, OpenIDResult, RegistrationResult
from sealauth.auth.revocation import PostgresRevocationStore, RevocationStore
from sealauth.auth.session import SessionHooks, SessionStore
from sealauth.errors import AuthError
from sealauth.oauth.engine import OAuthFlowEngine
from sealauth.oauth.openid import STEAM, OpenIDFlow
from sealauth.oauth.providers import ProviderRegistry, default_registry
from sealauth.storage.single_use import CookieSingleUseStore, SingleUseStore
from sealauth.webauthn.ceremony import AuthenticationCeremony, RegistrationCeremony, WebAuthnBody
from sealauth.webauthn.credentials import CredentialRepository, MemoryCredentialRepository

logger = logging.getLogger(__name__)

router = APIRouter()

_PROFILE_KEYS = ("id", "nickname", "name", "email", "avatar")


def _session_user(provider: str, profile: Dict[str, Any]) -> Dict[str, Any]:
    # The raw provider payload stays out of the cookie.
    user = {k: profile.get(k) for k in _PROFILE_KEYS if profile.get(k) is not None}
    user["provider"] = provider
    return user


@router.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@router.get("/api/_auth/session")
def get_session(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    return JSONResponse(ctx.sessions.fetch(request))


@router.delete("/api/_auth/session")
def delete_session(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    ctx.sessions.clear(request)
    return JSONResponse({"loggedOut": True})


@router.get("/auth/steam")
def auth_steam(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    def on_success(req: Request, result: OpenIDResult) -> None:
        ctx.sessions.replace(
            req,
            {"user": _session_user(result.provider, result.user), "secure": {"claimedId": result.claimed_id}},
        )

    flow = OpenIDFlow(
        STEAM,
        ctx.cfg.provider(STEAM.name),
        on_success=on_success,
        http=ctx.http,
        env_prefix=ctx.cfg.env_prefix,
    )
    return flow.handle(request)


@router.get("/auth/{provider}")
def auth_provider(provider: str, request: Request, ctx: AuthContext = Depends(get_auth_context)):
    descriptor = ctx.providers.get(provider)
    if descriptor is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    def on_success(req: Request, result: OAuthResult) -> None:
        secure: Dict[str, Any] = {"provider": result.provider, "accessToken": result.tokens.access_token}
        if result.tokens.expires_in is not None:
            secure["expiresAt"] = int(time.time()) + result.tokens.expires_in
        ctx.sessions.replace(req, {"user": _session_user(result.provider, result.user), "secure": secure})

    engine = OAuthFlowEngine(
        descriptor,
        ctx.cfg.provider(descriptor.name),
        store=ctx.single_use,
        on_success=on_success,
        http=ctx.http,
        ttl=ctx.cfg.oauth_ttl_seconds,
        env_prefix=ctx.cfg.env_prefix,
    )
    return engine.handle(request)


@router.post("/webauthn/register")
def webauthn_register(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(default=None),
    ctx: AuthContext = Depends(get_auth_context),
):
    def exclude_existing(req: Request, parsed: WebAuthnBody) -> Dict[str, Any]:
        return {"excludeCredentials": [c.id for c in ctx.credentials.list_for_user(parsed.userName or "")]}

    def on_success(req: Request, result: RegistrationResult) -> JSONResponse:
        user_name = str(result.user.get("userName") or "")
        ctx.credentials.add(user_name, result.credential)
        ctx.sessions.replace(
            req,
            {"user": {"userName": user_name, "displayName": result.user.get("displayName") or user_name}},
        )
        return JSONResponse({"verified": True, "credentialId": result.credential.id})

    ceremony = RegistrationCeremony(
        store=ctx.single_use,
        on_success=on_success,
        rp_name=ctx.cfg.webauthn_rp_name,
        ttl=ctx.cfg.webauthn_challenge_ttl,
        registration_options=exclude_existing,
    )
    return ceremony.handle(request, body or {})


@router.post("/webauthn/authenticate")
def webauthn_authenticate(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(default=None),
    ctx: AuthContext = Depends(get_auth_context),
):
    def on_success(req: Request, result: AuthenticationResult) -> JSONResponse:
        ctx.credentials.update(result.credential)
        user_name = ctx.credentials.owner(result.credential.id) or result.user_name or ""
        ctx.sessions.replace(req, {"user": {"userName": user_name}})
        return JSONResponse({"verified": True, "counterRegressed": result.authentication_info["counterRegressed"]})

    ceremony = AuthenticationCeremony(
        store=ctx.single_use,
        get_credential=lambda req, credential_id: ctx.credentials.get(credential_id),
        allow_credentials=lambda req, user_name: ctx.credentials.list_for_user(user_name) if user_name else [],
        on_success=on_success,
        rp_name=ctx.cfg.webauthn_rp_name,
        ttl=ctx.cfg.webauthn_challenge_ttl,
    )
    return ceremony.handle(request, body or {})


def _cookie_store(cfg: AuthConfig) -> CookieSingleUseStore:
    # State, PKCE verifier and WebAuthn challenges ride in signed cookies next to the session.
    return CookieSingleUseStore(cfg.session_password, prefix=cfg.session_name, secure=cfg.cookie_secure, samesite="lax")


def create_app(
    cfg: Optional[AuthConfig] = None,
    *,
    revocations: Optional[RevocationStore] = None,
    hooks: Optional[SessionHooks] = None,
    single_use: Optional[SingleUseStore] = None,
    providers: Optional[ProviderRegistry] = None,
    credentials: Optional[CredentialRepository] = None,
    http: Optional[requests.Session] = None,
) -> FastAPI:
    """
    Build the application. Configuration is read once here and shared read-only with handlers.
    """
    cfg = cfg or load_auth_config()
    if revocations is None and cfg.revocation_dsn:
        revocations = PostgresRevocationStore(cfg.revocation_dsn)

    ctx = AuthContext(
        cfg=cfg,
        sessions=SessionStore(cfg, revocations=revocations, hooks=hooks),
        single_use=single_use if single_use is not None else _cookie_store(cfg),
        providers=providers if providers is not None else default_registry(),
        credentials=credentials if credentials is not None else MemoryCredentialRepository(),
        http=http or requests.Session(),
    )

    app = FastAPI(title="sealauth")
    app.state.auth = ctx

    @app.middleware("http")
    async def session_cookies(request: Request, call_next):
        """Log requests, extend sessions when configured and flush queued cookies."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            if cfg.auto_extend_session and request.cookies.get(cfg.session_name):
                ctx.sessions.touch(request)
            response = await call_next(request)
            apply_cookies(request, response)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s - %s: %s", request.method, request.url.path, exc.kind, exc.message)
        else:
            logger.info("%s %s - %s: %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    return app
