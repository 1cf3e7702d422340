"""Error taxonomy shared by the WebSocket and HTTP surfaces.

Every group-scoped request resolves to either a result or one of these
errors. Handlers raise them; the event dispatcher turns them into
``{"ok": false, "error": {...}}`` acknowledgments and the HTTP routes turn
them into ``HTTPException`` with the matching status code.
"""
from typing import Dict


class ChatError(Exception):
    """Base class for errors reported back to a client."""

    code: str = "internal"
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class Unauthorized(ChatError):
    """Credential missing, malformed, expired or signed with the wrong key."""
    code = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ChatError):
    """Authenticated, but not a member of the group."""
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class NotFound(ChatError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class BadRequest(ChatError):
    code = "bad_request"
    status_code = 400
    default_message = "Bad request"


class Internal(ChatError):
    code = "internal"
    status_code = 500
    default_message = "Internal error"
