"""
Ollama API integration.

This package provides:
- Pydantic request and resource models
- Streaming decode / aggregate pipeline
- Error classification with retryability verdicts
- An async httpx client
"""

from __future__ import annotations

from .classifier import ErrorClassifier
from .client import OllamaClient
from .exceptions import (
    ErrorKind,
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
from .models import (
    ChatMessage,
    ChatRequest,
    CreateRequest,
    EmbeddingRequest,
    EmbedRequest,
    GenerateRequest,
    MessageRole,
    Options,
    Tool,
    ToolCall,
)
from .streaming import AggregateResult, EndpointFamily, ResponseStream

__all__ = [
    "AggregateResult",
    "ChatMessage",
    "ChatRequest",
    "CreateRequest",
    "EmbedRequest",
    "EmbeddingRequest",
    "EndpointFamily",
    # Errors
    "ErrorClassifier",
    "ErrorKind",
    "GenerateRequest",
    "InvalidRequestError",
    "MalformedResponseError",
    "MessageRole",
    "ModelNotFoundError",
    # Client
    "OllamaClient",
    "OllamaError",
    "Options",
    "RateLimitError",
    "RequestTimeoutError",
    "ResponseStream",
    "ServerError",
    "Tool",
    "ToolCall",
    "UnauthorizedError",
    "UnexpectedStatusError",
    "UnreachableError",
]
