"""
Request and resource models for the Ollama API.

This module provides the pydantic models exchanged with the server:
- Sampling options
- Chat messages and tool calling
- Generate / chat / embed request payloads
- Model management resources (tags, show, ps, create)
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

KeepAlive = str | int
ResponseFormat = str | dict[str, Any]


class MessageRole(Enum):
    """Chat message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class WireModel(BaseModel):
    """Base for payloads; unknown server fields are kept, not rejected."""

    model_config = ConfigDict(
        extra="allow", populate_by_name=True, protected_namespaces=()
    )

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the wire, dropping unset optional fields."""
        return self.model_dump(exclude_none=True, by_alias=True, mode="json")


class Options(WireModel):
    """Model runtime and sampling options."""
    num_predict: int | None = None
    seed: int | None = None
    temperature: float | None = None
    num_ctx: int | None = None
    top_k: int | None = None
    top_p: float | None = None
    min_p: float | None = None
    typical_p: float | None = None
    repeat_last_n: int | None = None
    repeat_penalty: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    penalize_newline: bool | None = None
    stop: list[str] | None = None
    num_keep: int | None = None
    num_batch: int | None = None
    num_gpu: int | None = None
    main_gpu: int | None = None
    num_thread: int | None = None
    use_mmap: bool | None = None


class ToolFunction(WireModel):
    """Tool function definition."""
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class Tool(WireModel):
    """Tool definition offered to the model."""
    type: str = "function"
    function: ToolFunction

    @classmethod
    def from_function(
        cls, name: str, description: str, parameters: dict[str, Any]
    ) -> Tool:
        return cls(
            function=ToolFunction(
                name=name, description=description, parameters=parameters
            )
        )


class FunctionCall(WireModel):
    """Function invocation requested by the model."""
    name: str
    arguments: dict[str, Any] | str = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def _decode_arguments(cls, value: Any) -> Any:
        # Some servers send arguments JSON-encoded
        if isinstance(value, str) and value.strip():
            try:
                decoded = json.loads(value)
            except ValueError:
                return value
            return decoded if isinstance(decoded, dict) else value
        return value


class ToolCall(WireModel):
    """Tool call structure."""
    id: str | None = None
    type: str | None = None
    function: FunctionCall


class ChatMessage(WireModel):
    """Chat message structure."""
    role: MessageRole
    content: str = ""
    thinking: str | None = None
    images: list[str] | None = None
    tool_calls: list[ToolCall] | None = None
    tool_name: str | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, images: list[str] | None = None) -> ChatMessage:
        return cls(role=MessageRole.USER, content=content, images=images)

    @classmethod
    def assistant(cls, content: str) -> ChatMessage:
        return cls(role=MessageRole.ASSISTANT, content=content)

    @classmethod
    def tool(cls, content: str, tool_name: str | None = None) -> ChatMessage:
        return cls(role=MessageRole.TOOL, content=content, tool_name=tool_name)


class _OptionsMixin(WireModel):
    options: Options | None = None

    def _options(self) -> Options:
        if self.options is None:
            self.options = Options()
        return self.options

    def temperature(self, value: float):
        self._options().temperature = value
        return self

    def max_tokens(self, value: int):
        self._options().num_predict = value
        return self


class GenerateRequest(_OptionsMixin):
    """Payload for ``/api/generate``."""
    model: str
    prompt: str = ""
    suffix: str | None = None
    system: str | None = None
    template: str | None = None
    context: list[int] | None = None
    images: list[str] | None = None
    format: ResponseFormat | None = None
    raw: bool | None = None
    think: bool | None = None
    keep_alive: KeepAlive | None = None
    stream: bool | None = None


class ChatRequest(_OptionsMixin):
    """Payload for ``/api/chat``."""
    model: str
    messages: list[ChatMessage] = Field(default_factory=list)
    tools: list[Tool] | None = None
    format: ResponseFormat | None = None
    think: bool | None = None
    keep_alive: KeepAlive | None = None
    stream: bool | None = None

    def add_message(self, message: ChatMessage) -> ChatRequest:
        self.messages.append(message)
        return self

    def add_system_message(self, content: str) -> ChatRequest:
        return self.add_message(ChatMessage.system(content))

    def add_user_message(self, content: str) -> ChatRequest:
        return self.add_message(ChatMessage.user(content))

    def add_assistant_message(self, content: str) -> ChatRequest:
        return self.add_message(ChatMessage.assistant(content))


class EmbedRequest(_OptionsMixin):
    """Payload for ``/api/embed``."""
    model: str
    input: str | list[str]
    truncate: bool | None = None
    dimensions: int | None = None
    keep_alive: KeepAlive | None = None

    def inputs_as_list(self) -> list[str]:
        return [self.input] if isinstance(self.input, str) else list(self.input)


class EmbeddingRequest(_OptionsMixin):
    """Payload for the legacy ``/api/embeddings`` endpoint."""
    model: str
    prompt: str
    keep_alive: KeepAlive | None = None


class CreateRequest(WireModel):
    """Payload for ``/api/create``."""
    model: str
    from_: str | None = Field(default=None, alias="from")
    modelfile: str | None = None
    files: dict[str, str] | None = None
    system: str | None = None
    template: str | None = None
    quantize: str | None = None
    stream: bool | None = None


class ModelDetails(WireModel):
    """Model family and quantization details."""
    format: str = ""
    family: str = ""
    families: list[str] | None = None
    parameter_size: str = ""
    quantization_level: str = ""
    parent_model: str | None = None


class ModelSummary(WireModel):
    """Locally available model, as listed by ``/api/tags``."""
    name: str
    model: str | None = None
    size: int = 0
    digest: str = ""
    modified_at: str | None = None
    details: ModelDetails | None = None


class ModelList(WireModel):
    models: list[ModelSummary] = Field(default_factory=list)


class ModelInfo(WireModel):
    """Model metadata returned by ``/api/show``."""
    license: str | None = None
    modelfile: str | None = None
    parameters: str | None = None
    template: str | None = None
    system: str | None = None
    details: ModelDetails | None = None
    capabilities: list[str] | None = None
    model_info: dict[str, Any] | None = None


class RunningModel(WireModel):
    """Model currently loaded in memory (``/api/ps``)."""
    name: str
    model: str | None = None
    size: int = 0
    digest: str = ""
    details: ModelDetails | None = None
    expires_at: str | None = None
    size_vram: int | None = None


class RunningModels(WireModel):
    models: list[RunningModel] = Field(default_factory=list)
