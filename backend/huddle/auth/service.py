"""Connection authentication with signed JWT access tokens.

The login/registration collaborator issues HS256 tokens; this module only
verifies them and binds a user id to a connection. Tokens are looked for in
a fixed precedence order:

1. explicit auth field (``X-Auth-Token`` header on the handshake)
2. ``Authorization: Bearer <token>`` header
3. ``?token=`` query parameter
4. ``token`` cookie
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from huddle.errors import Unauthorized
from huddle.ids import is_valid_id

logger = logging.getLogger(__name__)

# Claims checked, in order, for the primary subject
SUBJECT_CLAIMS = ("sub", "_id", "id", "userId")

_EMPTY_TOKENS = ("", "null", "undefined")


def _strip_bearer(value: str) -> str:
    value = value.strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


def extract_token(
    auth_field: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    query_params: Optional[Mapping[str, str]] = None,
    cookies: Optional[Mapping[str, str]] = None,
    query_param: str = "token",
    cookie_name: str = "token",
) -> Optional[str]:
    """Pick the credential from the first source that carries one.

    Returns:
        The raw token (without any ``Bearer`` prefix), or None.
    """
    headers = headers or {}
    authorization = headers.get("authorization", "") or ""
    candidates = (
        auth_field or "",
        authorization[7:] if authorization.lower().startswith("bearer ") else "",
        (query_params or {}).get(query_param, "") or "",
        (cookies or {}).get(cookie_name, "") or "",
    )
    for raw in candidates:
        token = _strip_bearer(str(raw))
        if token not in _EMPTY_TOKENS:
            return token
    return None


class TokenAuthenticator:
    """Verifies access tokens and resolves them to storage user ids.

    Args:
        secret_key: HMAC key shared with the token issuer.
        algorithm: JWT algorithm, HS256 by default.
        email_lookup: Callable resolving an email to a user id (or None).
            Used when the subject claim is not a storage identifier.
        access_token_minutes: Lifetime for tokens minted by ``issue_token``.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        email_lookup: Optional[Callable[[str], Optional[str]]] = None,
        access_token_minutes: int = 15,
    ) -> None:
        if not secret_key:
            raise ValueError("JWT secret key must be a non-empty string")
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.email_lookup = email_lookup
        self.access_token_minutes = access_token_minutes

    def issue_token(self, user_id: str, expires_in: Optional[timedelta] = None, **claims) -> str:
        """Mint an access token for *user_id* (login collaborator and tests)."""
        lifetime = expires_in if expires_in is not None else timedelta(minutes=self.access_token_minutes)
        payload = {"sub": user_id, **claims}
        payload["exp"] = datetime.now(timezone.utc) + lifetime
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode(self, token: Optional[str]) -> dict:
        if not token or token in _EMPTY_TOKENS:
            raise Unauthorized("Missing token")
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            logger.info("[Auth] Token expired")
            raise Unauthorized("Token expired")
        except JWTError as e:
            logger.info(f"[Auth] Token verification failed: {e}")
            raise Unauthorized("Invalid token")

    def authenticate(self, token: Optional[str]) -> str:
        """Validate *token* and return the bound user id.

        Raises:
            Unauthorized: missing/malformed/expired token, bad signature,
                or no user found for the fallback email claim.
        """
        payload = self.decode(token)

        subject = ""
        for claim in SUBJECT_CLAIMS:
            if payload.get(claim):
                subject = str(payload[claim])
                break

        if is_valid_id(subject):
            return subject

        email = payload.get("email")
        if not email or self.email_lookup is None:
            logger.warning(
                "[Auth] Subject is not a storage id and no email to map (claims=%s)",
                sorted(payload.keys()),
            )
            raise Unauthorized("Unknown subject")

        user_id = self.email_lookup(str(email))
        if not user_id:
            logger.warning("[Auth] Token email has no matching user")
            raise Unauthorized("Unknown subject")
        return user_id
