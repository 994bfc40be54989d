from sealauth.webauthn.ceremony import AuthenticationCeremony, RegistrationCeremony
from sealauth.webauthn.credentials import CredentialRepository, MemoryCredentialRepository

__all__ = ["AuthenticationCeremony", "RegistrationCeremony", "CredentialRepository", "MemoryCredentialRepository"]
