"""Domain errors shared by the HTTP routers and the realtime gateway.

Each error carries the HTTP status used by the REST surface and the short
code (``E400``, ``E404`` ...) sent in socket ``error`` events.
"""


class ChatError(Exception):
    status_code = 500
    code = "E500"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, "status_code": self.status_code}


class ValidationError(ChatError):
    status_code = 400
    code = "E400"
    default_message = "Invalid request"


class AuthenticationError(ChatError):
    status_code = 401
    code = "E401"
    default_message = "Could not validate credentials"


class AuthorizationError(ChatError):
    status_code = 403
    code = "E403"
    default_message = "Insufficient permissions"


class NotFoundError(ChatError):
    status_code = 404
    code = "E404"
    default_message = "Not found"


class NotFoundOrForbidden(NotFoundError):
    """Raised for missing, deleted or foreign conversations alike."""
    default_message = "Conversation not found or access denied"


class ConflictError(ChatError):
    status_code = 409
    code = "E409"
    default_message = "Conflicting concurrent update"


class TransientStorageError(ChatError):
    """A dependent write failed after the primary write was made durable."""
    status_code = 503
    code = "E503"
    default_message = "Conversation cache update failed"
