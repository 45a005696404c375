"""
Async HTTP client for the Ollama API.

Every request goes through one pooled ``httpx.AsyncClient``. Generation,
chat, embedding and progress endpoints are decoded by the streaming
pipeline (non-streaming calls are a one-line stream); every failure is
classified into an ``OllamaError``.
"""

from __future__ import annotations

from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from ..config import ClientConfig, Configuration
from ..logging_utils import log_operation
from .classifier import HTTP_NOT_FOUND, ErrorClassifier
from .models import (
    ChatRequest,
    CreateRequest,
    EmbeddingRequest,
    EmbedRequest,
    GenerateRequest,
    ModelInfo,
    ModelList,
    RunningModels,
    WireModel,
)
from .streaming.models import AggregateResult, EndpointFamily
from .streaming.stream import ResponseStream

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

HTTP_OK = 200

# Transport failures httpx may surface, plus socket errors it does not wrap
TRANSPORT_ERRORS = (httpx.TransportError, OSError)


class OllamaClient:
    """
    Async client for an Ollama server.

    Usage:
        async with OllamaClient() as client:
            stream = await client.generate_stream(
                GenerateRequest(model="qwen3:30b-a3b", prompt="Hi")
            )
            async for chunk in stream:
                print(chunk.response, end="")
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.client: httpx.AsyncClient = httpx.AsyncClient(
            headers=self.config.request_headers(),
            timeout=httpx.Timeout(
                self.config.timeout, connect=self.config.connect_timeout
            ),
            limits=httpx.Limits(
                max_connections=self.config.max_connections,
                max_keepalive_connections=self.config.max_keepalive,
                keepalive_expiry=self.config.keepalive_expiry,
            ),
            follow_redirects=self.config.follow_redirects,
            transport=transport,
        )

    @classmethod
    def from_configuration(
        cls,
        configuration: Configuration,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> OllamaClient:
        """Create a client from the YAML / environment configuration."""
        return cls(configuration.get_client_config(), transport=transport)

    # Transport helpers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        content: bytes | None = None,
        model: str | None = None,
        expect_json: bool = True,
    ) -> httpx.Response:
        """Send a buffered request and classify the outcome."""
        try:
            response = await self.client.request(
                method, self.config.endpoint_url(path), json=payload, content=content
            )
        except TRANSPORT_ERRORS as e:
            raise ErrorClassifier.classify_transport(e, model=model) from e

        error = ErrorClassifier.classify_response(
            response.status_code,
            response.content,
            headers=response.headers,
            model=model,
            expect_json=expect_json,
        )
        if error is not None:
            raise error
        return response

    async def _request_model(
        self,
        method: str,
        path: str,
        model_cls: type[ModelT],
        *,
        payload: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> ModelT:
        response = await self._request(method, path, payload=payload, model=model)
        try:
            return model_cls.model_validate_json(response.content)
        except ValidationError as e:
            raise ErrorClassifier.classify_payload(
                response.content,
                f"unexpected {path} response shape",
                model=model,
            ) from e

    async def _open_stream(
        self,
        path: str,
        payload: dict[str, Any],
        family: EndpointFamily,
        *,
        model: str | None = None,
        require_terminal: bool = False,
    ) -> ResponseStream:
        """
        Start a streamed POST and bind it to a ResponseStream.

        Status and headers are classified before any body bytes are pulled;
        a non-2xx body is read, the response closed and the error raised.
        """
        request = self.client.build_request(
            "POST", self.config.endpoint_url(path), json=payload
        )
        try:
            response = await self.client.send(request, stream=True)
        except TRANSPORT_ERRORS as e:
            raise ErrorClassifier.classify_transport(e, model=model) from e

        if not response.is_success:
            try:
                body = await response.aread()
            except TRANSPORT_ERRORS as e:
                raise ErrorClassifier.classify_transport(e, model=model) from e
            finally:
                await response.aclose()
            raise ErrorClassifier.classify_status(
                response.status_code, body, headers=response.headers, model=model
            )

        return ResponseStream.from_response(
            response, family, require_terminal=require_terminal, model=model
        )

    @staticmethod
    def _payload(request: WireModel, *, stream: bool) -> dict[str, Any]:
        payload = request.to_payload()
        payload["stream"] = stream
        return payload

    # Server

    async def health(self) -> bool:
        """Check that the server answers; never raises."""
        try:
            response = await self.client.get(self.config.endpoint_url("/"))
        except (httpx.HTTPError, OSError) as e:
            logger.debug("Health check failed", error_message=str(e))
            return False
        return response.status_code == HTTP_OK

    @log_operation("version")
    async def version(self) -> str:
        response = await self._request("GET", "/api/version")
        data = response.json()
        if not isinstance(data, dict) or not isinstance(data.get("version"), str):
            raise ErrorClassifier.classify_payload(
                response.content, "missing 'version' field"
            )
        return data["version"]

    # Generation

    @log_operation("generate_stream")
    async def generate_stream(self, request: GenerateRequest) -> ResponseStream:
        return await self._open_stream(
            "/api/generate",
            self._payload(request, stream=True),
            EndpointFamily.GENERATE,
            model=request.model,
            require_terminal=True,
        )

    @log_operation("generate")
    async def generate(self, request: GenerateRequest) -> AggregateResult:
        stream = await self._open_stream(
            "/api/generate",
            self._payload(request, stream=False),
            EndpointFamily.GENERATE,
            model=request.model,
            require_terminal=True,
        )
        async with stream:
            return await stream.collect()

    @log_operation("chat_stream")
    async def chat_stream(self, request: ChatRequest) -> ResponseStream:
        return await self._open_stream(
            "/api/chat",
            self._payload(request, stream=True),
            EndpointFamily.CHAT,
            model=request.model,
            require_terminal=True,
        )

    @log_operation("chat")
    async def chat(self, request: ChatRequest) -> AggregateResult:
        stream = await self._open_stream(
            "/api/chat",
            self._payload(request, stream=False),
            EndpointFamily.CHAT,
            model=request.model,
            require_terminal=True,
        )
        async with stream:
            return await stream.collect()

    # Embeddings

    @log_operation("embed")
    async def embed(self, request: EmbedRequest) -> AggregateResult:
        """Embed one or more inputs; vectors come back in input order."""
        stream = await self._open_stream(
            "/api/embed",
            request.to_payload(),
            EndpointFamily.EMBED,
            model=request.model,
            require_terminal=True,
        )
        async with stream:
            return await stream.collect()

    @log_operation("embed_legacy")
    async def embed_legacy(self, request: EmbeddingRequest) -> AggregateResult:
        """Single-vector embedding through the legacy endpoint."""
        stream = await self._open_stream(
            "/api/embeddings",
            request.to_payload(),
            EndpointFamily.EMBEDDINGS,
            model=request.model,
            require_terminal=True,
        )
        async with stream:
            return await stream.collect()

    # Model management

    @log_operation("list_models")
    async def list_models(self) -> ModelList:
        return await self._request_model("GET", "/api/tags", ModelList)

    @log_operation("show_model")
    async def show_model(self, name: str, *, verbose: bool = False) -> ModelInfo:
        payload: dict[str, Any] = {"model": name}
        if verbose:
            payload["verbose"] = True
        return await self._request_model(
            "POST", "/api/show", ModelInfo, payload=payload, model=name
        )

    @log_operation("pull_model_stream")
    async def pull_model_stream(
        self, name: str, *, insecure: bool = False
    ) -> ResponseStream:
        return await self._open_stream(
            "/api/pull",
            {"model": name, "insecure": insecure, "stream": True},
            EndpointFamily.PROGRESS,
            model=name,
        )

    @log_operation("pull_model")
    async def pull_model(self, name: str, *, insecure: bool = False) -> AggregateResult:
        stream = await self._open_stream(
            "/api/pull",
            {"model": name, "insecure": insecure, "stream": False},
            EndpointFamily.PROGRESS,
            model=name,
        )
        async with stream:
            return await stream.collect()

    @log_operation("create_model_stream")
    async def create_model_stream(self, request: CreateRequest) -> ResponseStream:
        return await self._open_stream(
            "/api/create",
            self._payload(request, stream=True),
            EndpointFamily.PROGRESS,
            model=request.model,
        )

    @log_operation("create_model")
    async def create_model(self, request: CreateRequest) -> AggregateResult:
        stream = await self._open_stream(
            "/api/create",
            self._payload(request, stream=False),
            EndpointFamily.PROGRESS,
            model=request.model,
        )
        async with stream:
            return await stream.collect()

    @log_operation("copy_model")
    async def copy_model(self, source: str, destination: str) -> None:
        await self._request(
            "POST",
            "/api/copy",
            payload={"source": source, "destination": destination},
            model=source,
            expect_json=False,
        )

    @log_operation("delete_model")
    async def delete_model(self, name: str) -> None:
        await self._request(
            "DELETE",
            "/api/delete",
            payload={"model": name},
            model=name,
            expect_json=False,
        )

    @log_operation("list_running_models")
    async def list_running_models(self) -> RunningModels:
        return await self._request_model("GET", "/api/ps", RunningModels)

    # Blobs

    @log_operation("blob_exists")
    async def blob_exists(self, digest: str) -> bool:
        """Check for a blob by digest (``sha256:<hex>``)."""
        try:
            response = await self.client.head(
                self.config.endpoint_url(f"/api/blobs/{digest}")
            )
        except TRANSPORT_ERRORS as e:
            raise ErrorClassifier.classify_transport(e) from e
        if response.status_code == HTTP_NOT_FOUND:
            return False
        error = ErrorClassifier.classify_response(
            response.status_code,
            response.content,
            headers=response.headers,
            expect_json=False,
        )
        if error is not None:
            raise error
        return True

    @log_operation("create_blob")
    async def create_blob(self, digest: str, data: bytes) -> None:
        await self._request(
            "PUT", f"/api/blobs/{digest}", content=data, expect_json=False
        )

    # Lifecycle

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> OllamaClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
