"""
sealauth: sealed cookie sessions, OAuth2/OIDC login and WebAuthn passkeys for FastAPI apps.
"""
