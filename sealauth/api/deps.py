from __future__ import annotations

from dataclasses import dataclass

import requests
from fastapi import Depends, Request

from sealauth.auth.config import AuthConfig
from sealauth.auth.models import Session
from sealauth.auth.session import SessionStore
from sealauth.oauth.providers import ProviderRegistry
from sealauth.storage.single_use import SingleUseStore
from sealauth.webauthn.credentials import CredentialRepository


@dataclass(frozen=True)
class AuthContext:
    """Everything built once at startup; attached to `app.state.auth`."""

    cfg: AuthConfig
    sessions: SessionStore
    single_use: SingleUseStore
    providers: ProviderRegistry
    credentials: CredentialRepository
    http: requests.Session


def get_auth_context(request: Request) -> AuthContext:
    return request.app.state.auth


def require_user_session(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> Session:
    """
    Route dependency: the current session, or 401 when nobody is logged in.
    """
    return ctx.sessions.require(request)
