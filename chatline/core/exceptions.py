"""Client error taxonomy.

Transport and protocol failures raise a ``ChatlineError`` subclass. The chat
controller never lets one escape a user action; it turns it into a ``notice``
event carrying ``notice_text(exc)``.
"""


class ChatlineError(Exception):
    """Base exception for chat client errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class TransportError(ChatlineError):
    def __init__(self, message: str = "Network error, please try again later.", status: int = 503, details: dict | None = None):
        super().__init__(code="transport_error", message=message, status=status, details=details)


class AuthenticationError(ChatlineError):
    def __init__(self, message: str = "Login expired, please sign in again.", details: dict | None = None):
        super().__init__(code="authentication_required", message=message, status=401, details=details)


class NotFoundError(ChatlineError):
    def __init__(self, message: str = "Resource not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class StreamStateError(ChatlineError):
    def __init__(self, message: str = "Illegal stream state transition.", details: dict | None = None):
        super().__init__(code="stream_state", message=message, status=409, details=details)


def notice_text(exc: BaseException, fallback: str = "Something went wrong, please try again.") -> str:
    """User-facing text for ``exc``; internal exceptions never leak their message."""
    if isinstance(exc, ChatlineError) and exc.message:
        return exc.message
    return fallback
