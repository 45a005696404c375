"""
Typed errors for Ollama API operations.

Every failure the client can observe is surfaced as exactly one subclass of
``OllamaError``:
- A closed ``ErrorKind`` taxonomy
- A class-level ``retryable`` verdict (same kind, same verdict)
- HTTP status, model and response payload context where available
- Retry guidance for rate limits
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar


class ErrorKind(Enum):
    """Closed set of failure kinds."""
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    MODEL_NOT_FOUND = "model_not_found"
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    UNEXPECTED = "unexpected"


class OllamaError(Exception):
    """Base Ollama error with rich context."""

    kind: ClassVar[ErrorKind] = ErrorKind.UNEXPECTED
    retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        model: str | None = None,
        response_data: dict[str, Any] | None = None,
        cause: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.model = model
        self.response_data = response_data or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Structured view used for logging and CLI output."""
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "message": self.message,
            "status_code": self.status_code,
            "model": self.model,
        }


class UnreachableError(OllamaError):
    """Server could not be reached or the connection dropped."""
    kind = ErrorKind.UNREACHABLE
    retryable = True


class RequestTimeoutError(OllamaError):
    """Connect, read, write or pool timeout."""
    kind = ErrorKind.TIMEOUT
    retryable = True


class ModelNotFoundError(OllamaError):
    """Requested model is not available on the server."""
    kind = ErrorKind.MODEL_NOT_FOUND


class InvalidRequestError(OllamaError):
    """Server rejected the request payload (HTTP 400)."""
    kind = ErrorKind.INVALID_REQUEST


class UnauthorizedError(OllamaError):
    """Missing or rejected credentials (HTTP 401/403)."""
    kind = ErrorKind.UNAUTHORIZED


class RateLimitError(OllamaError):
    """Rate limit error with retry information."""
    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(OllamaError):
    """Server-side failure (HTTP 5xx)."""
    kind = ErrorKind.SERVER_ERROR
    retryable = True


class MalformedResponseError(OllamaError):
    """Body or stream line is not the JSON shape the endpoint promises."""
    kind = ErrorKind.MALFORMED_RESPONSE

    def __init__(
        self,
        message: str,
        line_number: int | None = None,
        raw_data: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.line_number = line_number
        self.raw_data = raw_data


class UnexpectedStatusError(OllamaError):
    """Any other non-2xx status."""
    kind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, status_code: int, **kwargs: Any):
        super().__init__(message, status_code=status_code, **kwargs)
