"""
Typed authentication errors.

Every login entry point either hands these to a caller-supplied `on_error(request, error)`
or raises them; the FastAPI app renders them as `{"detail": ..., "error": ...}`.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AuthError(Exception):
    """Base class: carries an HTTP status, a user-facing message and optional context."""

    status_code: int = 500
    kind: str = "auth_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.data: Dict[str, Any] = dict(data or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.kind}


class MissingConfiguration(AuthError):
    status_code = 500
    kind = "missing_configuration"


class ProviderError(AuthError):
    """The identity provider redirected back with an `error` instead of a result."""

    status_code = 401
    kind = "provider_error"


class InvalidState(AuthError):
    status_code = 401
    kind = "invalid_state"


class TokenExchangeError(AuthError):
    status_code = 401
    kind = "token_exchange_error"


class UserFetchFailure(AuthError):
    status_code = 500
    kind = "user_fetch_failure"


class VerificationError(AuthError):
    status_code = 400
    kind = "verification_error"


class ChallengeExpired(VerificationError):
    kind = "challenge_expired"


class ValidationError(AuthError):
    status_code = 400
    kind = "validation_error"


class Unauthorized(AuthError):
    status_code = 401
    kind = "unauthorized"


class SessionRevoked(AuthError):
    status_code = 401
    kind = "session_revoked"


class SessionTooLarge(AuthError):
    status_code = 500
    kind = "session_too_large"
