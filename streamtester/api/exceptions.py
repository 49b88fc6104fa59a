"""Exception classes for the hosted API client.

Mirrors HTTP status codes so callers can tell authentication problems from
missing resources and server faults. Network-level failures derive from
``TransientNetworkError`` so the retry policy and the error taxonomy agree.
"""

from __future__ import annotations

from streamtester.errors import ErrorKind, TesterError, TransientNetworkError


class APIError(TesterError):
    """Base exception for hosted API errors.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code if applicable.
    """

    kind = ErrorKind.REMOTE_FAILURE

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        text = super().__str__()
        if self.status_code:
            return f"[{self.status_code}] {text}"
        return text


class AuthenticationError(APIError):
    """API token invalid or missing (401)."""

    def __init__(self, message: str = "Invalid or missing API token") -> None:
        super().__init__(message, status_code=401)


class ForbiddenError(APIError):
    """Insufficient permissions (403)."""

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(message, status_code=403)


class NotFoundError(APIError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message, status_code=404)


class ValidationError(APIError):
    """Invalid request parameters (400/422)."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message, status_code=status_code)


class RateLimitError(APIError):
    """Rate limit exceeded (429).

    Attributes:
        retry_after: Seconds to wait before retrying, if provided by server.
    """

    def __init__(
        self, message: str = "Rate limit exceeded", retry_after: int | None = None
    ) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ServerError(APIError):
    """Server-side error (5xx)."""

    def __init__(self, message: str = "Internal server error", status_code: int = 500):
        super().__init__(message, status_code=status_code)


class ConnectError(TransientNetworkError):
    """Network or connection error."""

    def __init__(self, message: str = "Connection failed") -> None:
        super().__init__(message)


class TimeoutException(TransientNetworkError):
    """Request timeout."""

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(message)
