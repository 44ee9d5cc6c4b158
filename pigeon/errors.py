"""
Error types shared by the HTTP routes and the real-time channel.

Each error carries the HTTP status it maps to and a machine-readable code, so
the same failure can be rendered as a JSON error response or as a typed
socket event.
"""


class PigeonError(Exception):
    """Base error for all messaging operations."""

    status_code = 500
    code = "server_error"

    def __init__(self, message: str, *, code: str = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationFailed(PigeonError):
    """Bad phone format, empty nickname and similar input errors."""

    status_code = 400
    code = "validation_error"


class Unauthorized(PigeonError):
    status_code = 401
    code = "unauthorized"


class NotFound(PigeonError):
    status_code = 404
    code = "not_found"


class UserNotFound(NotFound):
    code = "user_not_found"


class ContactNotFound(NotFound):
    code = "contact_not_found"


class Conflict(PigeonError):
    status_code = 409
    code = "conflict"
