"""
Failure classification for Ollama API calls.

Maps every observable failure signal to one typed ``OllamaError``:
- Transport failures (connect, DNS, reset, timeout)
- HTTP status codes together with the response body
- Payloads that are not the JSON shape the endpoint promises

Classification is a pure function of its inputs: no logging, no retries,
no I/O.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

import httpx

from .exceptions import (
    InvalidRequestError,
    MalformedResponseError,
    ModelNotFoundError,
    OllamaError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    UnauthorizedError,
    UnexpectedStatusError,
    UnreachableError,
)

# HTTP status constants
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR_MIN = 500
HTTP_SERVER_ERROR_MAX = 599

MAX_MESSAGE_LENGTH = 500

# e.g. `model "llama3" not found, try pulling it first`
MODEL_NOT_FOUND_PATTERN = re.compile(
    r"model\s+['\"]?(?P<name>[^'\"]*?)['\"]?\s+not found", re.IGNORECASE
)


def _as_text(body: bytes | str | None) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


def _parse_json(body: bytes | str | None) -> tuple[bool, Any]:
    text = _as_text(body)
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


class ErrorClassifier:
    """Deterministic mapping from failure signals to typed errors."""

    @staticmethod
    def error_message(body: bytes | str | None) -> str:
        """Extract a readable message from an error body.

        Args:
            body: Raw response body

        Returns:
            The ``error`` field of a JSON body, otherwise the (truncated) text.
        """
        ok, data = _parse_json(body)
        if ok and isinstance(data, dict) and isinstance(data.get("error"), str):
            return data["error"]
        return _as_text(body).strip()[:MAX_MESSAGE_LENGTH]

    @staticmethod
    def is_model_not_found(body: bytes | str | None) -> bool:
        """Check whether a body has the model-not-found shape."""
        return MODEL_NOT_FOUND_PATTERN.search(
            ErrorClassifier.error_message(body)
        ) is not None

    @staticmethod
    def classify_transport(
        error: BaseException, *, model: str | None = None
    ) -> OllamaError:
        """
        Classify a transport-level failure.

        Args:
            error: Exception raised while connecting, sending or reading

        Returns:
            RequestTimeoutError for timeouts, UnreachableError otherwise
        """
        if isinstance(error, httpx.TimeoutException | TimeoutError):
            return RequestTimeoutError(
                f"Request timed out: {error!s}", model=model, cause=error
            )
        return UnreachableError(
            f"Server unreachable: {error!s}", model=model, cause=error
        )

    @staticmethod
    def classify_status(
        status_code: int,
        body: bytes | str | None,
        *,
        headers: Mapping[str, str] | None = None,
        model: str | None = None,
    ) -> OllamaError:
        """
        Classify a non-2xx HTTP status with its body.

        Args:
            status_code: HTTP status of the response
            body: Raw response body
            headers: Response headers (``Retry-After`` is honoured for 429)
            model: Model the request targeted, for error context

        Returns:
            The typed error for this status
        """
        message = ErrorClassifier.error_message(body)
        ok, data = _parse_json(body)
        context: dict[str, Any] = {
            "status_code": status_code,
            "model": model,
            "response_data": data if ok and isinstance(data, dict) else {},
            "cause": body,
        }
        detail = f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}"

        if status_code == HTTP_BAD_REQUEST:
            return InvalidRequestError(f"Invalid request - {detail}", **context)
        if status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            return UnauthorizedError(f"Authentication failed - {detail}", **context)
        if status_code == HTTP_NOT_FOUND:
            match = MODEL_NOT_FOUND_PATTERN.search(message)
            if match:
                name = match.group("name") or model or "unknown"
                return ModelNotFoundError(f"Model '{name}' not found", **context)
        if status_code == HTTP_TOO_MANY_REQUESTS:
            return RateLimitError(
                f"Rate limit exceeded - {detail}",
                retry_after=ErrorClassifier._retry_after(headers),
                **context,
            )
        if HTTP_SERVER_ERROR_MIN <= status_code <= HTTP_SERVER_ERROR_MAX:
            return ServerError(f"Server error - {detail}", **context)
        context.pop("status_code")
        return UnexpectedStatusError(
            f"Unexpected status - {detail}", status_code, **context
        )

    @staticmethod
    def classify_response(
        status_code: int,
        body: bytes | str | None,
        *,
        headers: Mapping[str, str] | None = None,
        model: str | None = None,
        expect_json: bool = True,
    ) -> OllamaError | None:
        """
        Classify a complete HTTP exchange.

        Success requires a 2xx status and, when ``expect_json`` is set, a
        body that parses as JSON. A 2xx with an unparseable body is a
        MalformedResponseError, not a success.

        Returns:
            None on success, otherwise the typed error
        """
        if not 200 <= status_code < 300:
            return ErrorClassifier.classify_status(
                status_code, body, headers=headers, model=model
            )
        if expect_json:
            ok, _ = _parse_json(body)
            if not ok:
                return ErrorClassifier.classify_payload(
                    body, "response body is not valid JSON", model=model
                )
        return None

    @staticmethod
    def classify_payload(
        raw: bytes | str | None,
        reason: str,
        *,
        line_number: int | None = None,
        model: str | None = None,
    ) -> MalformedResponseError:
        """
        Classify a payload that fails structural validation.

        Args:
            raw: Offending body or stream line
            reason: Why it was rejected
            line_number: 1-based stream line, when decoding a stream
        """
        text = _as_text(raw)
        where = f" (line {line_number})" if line_number is not None else ""
        return MalformedResponseError(
            f"Malformed response{where}: {reason}",
            line_number=line_number,
            raw_data=text[:MAX_MESSAGE_LENGTH],
            model=model,
            cause=raw,
        )

    @staticmethod
    def _retry_after(headers: Mapping[str, str] | None) -> float | None:
        if not headers:
            return None
        value = headers.get("retry-after") or headers.get("Retry-After")
        if value is None:
            return None
        try:
            return max(float(value), 0.0)
        except ValueError:
            return None
