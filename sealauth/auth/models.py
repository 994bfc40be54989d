from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Session:
    """Unsealed session: an id fixed at creation plus the key-ordered data map."""

    id: str
    created_at: int  # epoch ms
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.data

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        user = self.data.get("user")
        return user if isinstance(user, dict) else None

    def public_view(self) -> Dict[str, Any]:
        """Data safe to return to the browser (the `secure` section is server-only)."""
        return {k: v for k, v in self.data.items() if k != "secure"}


@dataclass(frozen=True)
class OAuthExchangeContext:
    state: str
    redirect_uri: str
    code_verifier: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


@dataclass(frozen=True)
class TokenResponse:
    """
    Successful token endpoint payload (RFC 6749 section 5.1).

    Error payloads (section 5.2) never become a TokenResponse; see `parse_token_payload`.
    """

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"access_token": self.access_token, "token_type": self.token_type}
        for key in ("expires_in", "refresh_token", "scope", "id_token"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True)
class OAuthResult:
    provider: str
    user: Dict[str, Any]  # normalized: id, nickname, name, email, avatar, raw
    tokens: TokenResponse


@dataclass(frozen=True)
class OpenIDResult:
    provider: str
    user: Dict[str, Any]
    claimed_id: str


@dataclass
class Credential:
    """A registered WebAuthn credential as the caller persists it (base64url fields)."""

    id: str
    public_key: str
    counter: int = 0
    backed_up: bool = False
    transports: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "publicKey": self.public_key,
            "counter": self.counter,
            "backedUp": self.backed_up,
            "transports": list(self.transports),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            id=str(data["id"]),
            public_key=str(data["publicKey"]),
            counter=int(data.get("counter") or 0),
            backed_up=bool(data.get("backedUp")),
            transports=[str(t) for t in (data.get("transports") or [])],
        )


@dataclass(frozen=True)
class WebAuthnChallenge:
    challenge: str
    attempt_id: str
    expires_at: float


@dataclass(frozen=True)
class RegistrationResult:
    user: Dict[str, Any]
    credential: Credential


@dataclass(frozen=True)
class AuthenticationResult:
    credential: Credential
    authentication_info: Dict[str, Any]
    user_name: Optional[str] = None
