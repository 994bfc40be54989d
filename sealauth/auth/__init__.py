"""
Session primitives.

Design goals:
- Stateless server: the session lives in one encrypted cookie.
- Revocation is an optional side channel, not a session store.
- Configuration is loaded once and passed explicitly.
"""
