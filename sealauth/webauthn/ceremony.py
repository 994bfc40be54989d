"""
WebAuthn (passkey) registration and authentication.

Each ceremony is one POST endpoint with two phases selected by `verify` in the body:
- options: create a challenge, keep the fido2 state under a fresh `attemptId`, return the options
- verify: consume the state for `attemptId` and check the browser's response with fido2

Relying party id and origin are always taken from the request URL.
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from cryptography.exceptions import InvalidSignature
from fido2 import cbor
from fido2.server import Fido2Server
from fido2.webauthn import (
    Aaguid,
    AttestedCredentialData,
    AuthenticationResponse,
    AuthenticatorAttachment,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialParameters,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    RegistrationResponse,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from sealauth.auth.models import AuthenticationResult, Credential, RegistrationResult, WebAuthnChallenge
from sealauth.auth.util import b64url, b64url_decode, random_bytes, random_token
from sealauth.errors import AuthError, ChallengeExpired, ValidationError, VerificationError
from sealauth.storage.single_use import EntryExpired, SingleUseStore

logger = logging.getLogger(__name__)

OnError = Callable[[Request, AuthError], Response]

_VERIFY_ERRORS = (ValueError, KeyError, TypeError, InvalidSignature)


class WebAuthnBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    verify: bool = False
    attemptId: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    userName: Optional[str] = None
    displayName: Optional[str] = None


def _json_safe(value: Any) -> Any:
    """Convert fido2 option objects into JSON-friendly data (bytes become base64url)."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return b64url(bytes(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def relying_party(request: Request, rp_name: Optional[str] = None) -> Tuple[PublicKeyCredentialRpEntity, str]:
    """Return the RP entity and expected origin for this request."""
    rp_id = request.url.hostname or ""
    origin = f"{request.url.scheme}://{request.url.netloc}"
    return PublicKeyCredentialRpEntity(name=rp_name or rp_id, id=rp_id), origin


def credential_descriptor(credential_id: str) -> PublicKeyCredentialDescriptor:
    return PublicKeyCredentialDescriptor(type=PublicKeyCredentialType.PUBLIC_KEY, id=b64url_decode(credential_id))


def attested_credential(credential: Credential) -> AttestedCredentialData:
    """Rebuild the fido2 credential record from its stored base64url form."""
    return AttestedCredentialData.create(
        Aaguid.NONE,
        b64url_decode(credential.id),
        cbor.decode(b64url_decode(credential.public_key)),
    )


class _Ceremony:
    name = "webauthn"

    def __init__(
        self,
        *,
        store: SingleUseStore,
        on_success: Callable[..., Optional[Response]],
        on_error: Optional[OnError] = None,
        rp_name: Optional[str] = None,
        ttl: int = 180,
    ) -> None:
        self.store = store
        self.on_success = on_success
        self.on_error = on_error
        self.rp_name = rp_name
        self.ttl = ttl

    def handle(self, request: Request, body: Mapping[str, Any]) -> Response:
        try:
            parsed = self._parse(body)
            if parsed.verify:
                return self.verify(request, parsed)
            return JSONResponse(self.options(request, parsed))
        except AuthError as e:
            if self.on_error is None:
                raise
            logger.info("WebAuthn %s failed kind=%s", self.name, e.kind)
            return self.on_error(request, e)
        except Exception as e:
            if self.on_error is None:
                raise
            logger.exception("WebAuthn %s failed unexpectedly", self.name)
            return self.on_error(request, AuthError(f"WebAuthn {self.name} failed: {type(e).__name__}"))

    @staticmethod
    def _parse(body: Mapping[str, Any]) -> WebAuthnBody:
        try:
            return WebAuthnBody.model_validate(dict(body or {}))
        except PydanticValidationError as e:
            raise ValidationError("Invalid request body", data={"errors": str(e)})

    def options(self, request: Request, body: WebAuthnBody) -> Dict[str, Any]:
        raise NotImplementedError

    def verify(self, request: Request, body: WebAuthnBody) -> Response:
        raise NotImplementedError

    def _server(self, request: Request) -> Tuple[Fido2Server, str]:
        rp, origin = relying_party(request, self.rp_name)
        return Fido2Server(rp, verify_origin=lambda o: o == origin), origin

    def _key(self, attempt_id: str) -> str:
        return f"webauthn-{attempt_id}"

    def store_challenge(self, request: Request, state: Dict[str, Any], **extra: Any) -> WebAuthnChallenge:
        challenge = WebAuthnChallenge(
            challenge=str(state.get("challenge") or ""),
            attempt_id=random_token(32),
            expires_at=time.time() + self.ttl,
        )
        entry = {"state": state, "challenge": challenge.challenge, "expiresAt": challenge.expires_at, **extra}
        self.store.put(request, self._key(challenge.attempt_id), entry, self.ttl)
        return challenge

    def take_challenge(self, request: Request, attempt_id: Optional[str]) -> Dict[str, Any]:
        if not attempt_id:
            raise ValidationError("Missing attemptId")
        try:
            entry = self.store.take_once(request, self._key(attempt_id))
        except EntryExpired:
            raise ChallengeExpired("Challenge expired")
        if not isinstance(entry, dict) or "state" not in entry:
            raise VerificationError("Challenge not found or already used")
        return entry


RegistrationOptionsHook = Callable[[Request, WebAuthnBody], Optional[Dict[str, Any]]]


class RegistrationCeremony(_Ceremony):
    name = "registration"

    def __init__(
        self,
        *,
        store: SingleUseStore,
        on_success: Callable[[Request, RegistrationResult], Optional[Response]],
        on_error: Optional[OnError] = None,
        rp_name: Optional[str] = None,
        ttl: int = 180,
        registration_options: Optional[RegistrationOptionsHook] = None,
        user_schema: Optional[Type[BaseModel]] = None,
    ) -> None:
        super().__init__(store=store, on_success=on_success, on_error=on_error, rp_name=rp_name, ttl=ttl)
        self.registration_options = registration_options
        self.user_schema = user_schema

    def _user(self, body: WebAuthnBody) -> Dict[str, Any]:
        user: Dict[str, Any] = {"userName": body.userName, "displayName": body.displayName or body.userName}
        user.update(body.model_extra or {})
        if self.user_schema is not None:
            try:
                user = self.user_schema.model_validate(user).model_dump(mode="json")
            except PydanticValidationError as e:
                raise ValidationError("Invalid user data", data={"errors": str(e)})
        return user

    def options(self, request: Request, body: WebAuthnBody) -> Dict[str, Any]:
        if not body.userName:
            raise ValidationError("Missing userName")
        user = self._user(body)
        opts = dict(self.registration_options(request, body) or {}) if self.registration_options else {}

        server, _ = self._server(request)
        algorithms: Sequence[int] = opts.get("algorithms") or ()
        if algorithms:
            server.allowed_algorithms = [
                PublicKeyCredentialParameters(type=PublicKeyCredentialType.PUBLIC_KEY, alg=alg) for alg in algorithms
            ]

        user_id = random_bytes(16)
        display_name = opts.get("displayName") or user.get("displayName") or body.userName
        entity = PublicKeyCredentialUserEntity(name=body.userName, id=user_id, display_name=display_name)
        exclude = [credential_descriptor(cid) for cid in opts.get("excludeCredentials") or []]

        resident_key = opts.get("residentKey")
        attachment = opts.get("authenticatorAttachment")
        options, state = server.register_begin(
            entity,
            exclude or None,
            resident_key_requirement=ResidentKeyRequirement(resident_key) if resident_key else None,
            user_verification=UserVerificationRequirement(opts.get("userVerification") or "preferred"),
            authenticator_attachment=AuthenticatorAttachment(attachment) if attachment else None,
        )

        user = dict(user, id=b64url(user_id), displayName=display_name)
        challenge = self.store_challenge(request, _json_safe(state), user=user)
        logger.debug("WebAuthn registration options issued")
        return {"creationOptions": _json_safe(options.public_key), "attemptId": challenge.attempt_id}

    def verify(self, request: Request, body: WebAuthnBody) -> Response:
        entry = self.take_challenge(request, body.attemptId)
        if not body.response:
            raise ValidationError("Missing response")

        server, _ = self._server(request)
        try:
            registration = RegistrationResponse.from_dict(body.response)
            auth_data = server.register_complete(entry["state"], registration)
        except _VERIFY_ERRORS as e:
            logger.info("WebAuthn registration rejected: %s", str(e))
            raise VerificationError("Registration verification failed", data={"reason": str(e)})

        cred = auth_data.credential_data
        if cred is None:
            raise VerificationError("Registration verification failed", data={"reason": "no credential data"})
        transports = (body.response.get("response") or {}).get("transports") or []
        credential = Credential(
            id=b64url(cred.credential_id),
            public_key=b64url(cbor.encode(dict(cred.public_key))),
            counter=auth_data.counter,
            backed_up=auth_data.is_backed_up(),
            transports=[str(t) for t in transports],
        )
        logger.info("WebAuthn registration verified credential=%s...", credential.id[:8])

        resp = self.on_success(request, RegistrationResult(user=entry.get("user") or {}, credential=credential))
        return resp if resp is not None else JSONResponse({"verified": True})


CredentialLookup = Callable[[Request, str], Optional[Credential]]
AllowCredentials = Callable[[Request, Optional[str]], List[Credential]]


class AuthenticationCeremony(_Ceremony):
    name = "authentication"

    def __init__(
        self,
        *,
        store: SingleUseStore,
        get_credential: CredentialLookup,
        on_success: Callable[[Request, AuthenticationResult], Optional[Response]],
        on_error: Optional[OnError] = None,
        rp_name: Optional[str] = None,
        ttl: int = 180,
        allow_credentials: Optional[AllowCredentials] = None,
        user_verification: str = "preferred",
    ) -> None:
        super().__init__(store=store, on_success=on_success, on_error=on_error, rp_name=rp_name, ttl=ttl)
        self.get_credential = get_credential
        self.allow_credentials = allow_credentials
        self.user_verification = user_verification

    def options(self, request: Request, body: WebAuthnBody) -> Dict[str, Any]:
        allowed: List[Credential] = []
        if self.allow_credentials is not None:
            allowed = list(self.allow_credentials(request, body.userName) or [])

        server, _ = self._server(request)
        options, state = server.authenticate_begin(
            [credential_descriptor(c.id) for c in allowed] or None,
            user_verification=UserVerificationRequirement(self.user_verification),
        )
        challenge = self.store_challenge(request, _json_safe(state), userName=body.userName)
        return {"requestOptions": _json_safe(options.public_key), "attemptId": challenge.attempt_id}

    def verify(self, request: Request, body: WebAuthnBody) -> Response:
        entry = self.take_challenge(request, body.attemptId)
        if not body.response:
            raise ValidationError("Missing response")
        credential_id = body.response.get("id") or body.response.get("rawId")
        if not credential_id:
            raise ValidationError("Missing credential id")

        credential = self.get_credential(request, str(credential_id))
        if credential is None:
            raise VerificationError("Unknown credential")

        server, origin = self._server(request)
        try:
            assertion = AuthenticationResponse.from_dict(body.response)
            server.authenticate_complete(entry["state"], [attested_credential(credential)], assertion)
        except _VERIFY_ERRORS as e:
            logger.info("WebAuthn authentication rejected: %s", str(e))
            raise VerificationError("Authentication verification failed", data={"reason": str(e)})

        auth_data = assertion.response.authenticator_data
        new_counter = auth_data.counter
        regressed = bool(new_counter or credential.counter) and new_counter <= credential.counter
        if regressed:
            logger.warning(
                "WebAuthn signature counter did not increase credential=%s... stored=%d received=%d",
                credential.id[:8],
                credential.counter,
                new_counter,
            )

        updated = Credential(
            id=credential.id,
            public_key=credential.public_key,
            counter=new_counter,
            backed_up=auth_data.is_backed_up(),
            transports=list(credential.transports),
        )
        info = {
            "credentialId": credential.id,
            "newCounter": new_counter,
            "userVerified": auth_data.is_user_verified(),
            "backedUp": updated.backed_up,
            "counterRegressed": regressed,
            "origin": origin,
            "rpID": request.url.hostname,
        }
        resp = self.on_success(
            request,
            AuthenticationResult(credential=updated, authentication_info=info, user_name=entry.get("userName")),
        )
        return resp if resp is not None else JSONResponse({"verified": True})
