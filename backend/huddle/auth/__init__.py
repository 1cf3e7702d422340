"""Authentication module (JWT access tokens).

Services:
    - TokenAuthenticator: verifies tokens and resolves user ids.
    - extract_token: picks the credential from handshake sources.
"""
from .service import TokenAuthenticator, extract_token

__all__ = ["TokenAuthenticator", "extract_token"]
