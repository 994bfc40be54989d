"""
Third-party login flows: OAuth2/OIDC authorization code (with state and PKCE) and OpenID 2.0.
"""

from sealauth.oauth.engine import OAuthFlowEngine
from sealauth.oauth.openid import OpenIDFlow
from sealauth.oauth.providers import ProviderDescriptor, ProviderRegistry, default_registry

__all__ = ["OAuthFlowEngine", "OpenIDFlow", "ProviderDescriptor", "ProviderRegistry", "default_registry"]
