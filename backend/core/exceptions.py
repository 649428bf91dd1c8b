"""
Application Exception Classes

Structured exceptions with error codes for i18n-compatible error handling.
All exceptions are automatically formatted for frontend translation.

Format: [ERROR_CODE]param1:value1;param2:value2

Usage:
    raise ApplicationError("PLAYBACK_UNKNOWN_PROVIDER", status_code=400,
        providerId="polly")

    # Produces: [PLAYBACK_UNKNOWN_PROVIDER]providerId:polly
"""


class ApplicationError(Exception):
    """
    Base exception for all application errors with structured error codes.

    Attributes:
        code: Error code matching frontend i18n key (e.g., "PLAYBACK_BOOK_NOT_LOADED")
        status_code: HTTP status code (default: 400)
        params: Key-value parameters for i18n interpolation
    """

    def __init__(
        self,
        code: str,
        status_code: int = 400,
        **params
    ):
        self.code = code
        self.status_code = status_code
        self.params = params
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.params:
            params_str = ";".join(f"{k}:{v}" for k, v in self.params.items())
            return f"[{self.code}]{params_str}"
        return f"[{self.code}]"

    @property
    def detail(self) -> str:
        """Alias for FastAPI HTTPException compatibility."""
        return str(self)


class PlaybackCommandError(ApplicationError):
    """
    Command rejected at the API boundary before it reaches the playback task chain.

    Examples: no book loaded, unknown provider id, speed out of range.
    Failures that happen *inside* the task chain are never raised; they are
    reported to subscribers as status updates instead.
    """

    def __init__(self, code: str, status_code: int = 409, **params):
        super().__init__(code, status_code=status_code, **params)


def error_message(error: object) -> str:
    """Best-effort human readable message for an exception or provider error payload."""
    if error is None:
        return "Unknown error"
    if isinstance(error, BaseException):
        text = str(error)
        return text or error.__class__.__name__
    return str(error)
