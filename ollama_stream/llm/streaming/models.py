"""
Streaming record types: decoded chunks, per-chunk deltas and aggregates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, StrictBool, model_validator

from ..models import ChatMessage, ToolCall

NANOSECONDS_PER_SECOND = 1e9


class EndpointFamily(Enum):
    """Endpoint families; each decodes lines into its own chunk model."""
    GENERATE = "generate"
    CHAT = "chat"
    EMBED = "embed"
    EMBEDDINGS = "embeddings"
    PROGRESS = "progress"


class StreamChunkType(Enum):
    """Types of per-chunk deltas."""
    CONTENT = "content"
    THINKING = "thinking"
    TOOL_CALLS = "tool_calls"
    EMBEDDING = "embedding"
    PROGRESS = "progress"
    COMPLETION = "completion"


class GenerationStats(BaseModel):
    """Trailing statistics of a terminal chunk (nanoseconds / counts)."""
    model_config = ConfigDict(frozen=True)

    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None


STAT_FIELDS = tuple(GenerationStats.model_fields)


class RawChunk(BaseModel):
    """One JSON object decoded from one stream line."""
    model_config = ConfigDict(frozen=True, extra="allow")

    model: str = ""
    created_at: str | None = None
    done: StrictBool = False
    done_reason: str | None = None

    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None

    def statistics(self) -> GenerationStats | None:
        """Statistics carried by this chunk; only terminal chunks have them."""
        if not self.done:
            return None
        return GenerationStats(**{name: getattr(self, name) for name in STAT_FIELDS})


class GenerateChunk(RawChunk):
    """``/api/generate`` line."""
    done: StrictBool
    response: str
    thinking: str | None = None
    context: list[int] | None = None


class ChatChunk(RawChunk):
    """``/api/chat`` line."""
    done: StrictBool
    message: ChatMessage


class EmbedChunk(RawChunk):
    """``/api/embed`` body; a single terminal record."""
    done: StrictBool = True
    embeddings: list[list[float]]


class EmbeddingChunk(RawChunk):
    """Legacy ``/api/embeddings`` body; a single terminal record."""
    done: StrictBool = True
    embedding: list[float]


class ProgressChunk(RawChunk):
    """``/api/pull`` and ``/api/create`` progress line."""
    status: str
    digest: str | None = None
    total: int | None = None
    completed: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _terminal_on_success(cls, data: Any) -> Any:
        if isinstance(data, dict) and "done" not in data:
            data = {**data, "done": data.get("status") == "success"}
        return data

    @property
    def percentage(self) -> float | None:
        if self.completed is None or not self.total:
            return None
        return self.completed / self.total * 100.0

    @property
    def is_complete(self) -> bool:
        status = self.status.lower()
        return (
            "success" in status
            or "complete" in status
            or (self.total is not None and self.completed == self.total)
        )


Chunk = GenerateChunk | ChatChunk | EmbedChunk | EmbeddingChunk | ProgressChunk

CHUNK_MODELS: dict[EndpointFamily, type[RawChunk]] = {
    EndpointFamily.GENERATE: GenerateChunk,
    EndpointFamily.CHAT: ChatChunk,
    EndpointFamily.EMBED: EmbedChunk,
    EndpointFamily.EMBEDDINGS: EmbeddingChunk,
    EndpointFamily.PROGRESS: ProgressChunk,
}


@dataclass(frozen=True)
class PerformanceMetrics:
    """Derived throughput figures; a figure is None when undefined."""
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None
    total_duration: int | None = None
    load_duration: int | None = None

    @classmethod
    def from_statistics(cls, stats: GenerationStats) -> PerformanceMetrics:
        return cls(
            prompt_eval_count=stats.prompt_eval_count,
            prompt_eval_duration=stats.prompt_eval_duration,
            eval_count=stats.eval_count,
            eval_duration=stats.eval_duration,
            total_duration=stats.total_duration,
            load_duration=stats.load_duration,
        )

    @staticmethod
    def _rate(count: int | None, duration: int | None) -> float | None:
        if count is None or not duration or duration <= 0:
            return None
        return count / (duration / NANOSECONDS_PER_SECOND)

    @staticmethod
    def _seconds(duration: int | None) -> float | None:
        return None if duration is None else duration / NANOSECONDS_PER_SECOND

    @property
    def tokens_per_second(self) -> float | None:
        return self._rate(self.eval_count, self.eval_duration)

    @property
    def prompt_tokens_per_second(self) -> float | None:
        return self._rate(self.prompt_eval_count, self.prompt_eval_duration)

    @property
    def total_tokens_per_second(self) -> float | None:
        if self.prompt_eval_count is None or self.eval_count is None:
            return None
        return self._rate(
            self.prompt_eval_count + self.eval_count, self.total_duration
        )

    @property
    def total_seconds(self) -> float | None:
        return self._seconds(self.total_duration)

    @property
    def load_seconds(self) -> float | None:
        return self._seconds(self.load_duration)

    @property
    def eval_seconds(self) -> float | None:
        return self._seconds(self.eval_duration)


@dataclass(frozen=True)
class StreamDelta:
    """Per-chunk view published while a stream is being aggregated."""
    chunk_type: StreamChunkType
    content: str | None
    accumulated_content: str
    chunk: RawChunk
    index: int
    thinking: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    done: bool = False


@dataclass(frozen=True)
class AggregateResult:
    """Fully assembled value of one logical request."""
    family: EndpointFamily
    model: str = ""
    content: str = ""
    thinking: str = ""
    message: ChatMessage | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    context: list[int] | None = None
    embeddings: list[list[float]] = field(default_factory=list)
    statistics: GenerationStats | None = None
    done: bool = False
    done_reason: str | None = None
    created_at: str | None = None
    chunk_count: int = 0
    record: RawChunk | None = None

    @property
    def metrics(self) -> PerformanceMetrics | None:
        if self.statistics is None:
            return None
        return PerformanceMetrics.from_statistics(self.statistics)

    @property
    def tokens_per_second(self) -> float | None:
        metrics = self.metrics
        return metrics.tokens_per_second if metrics else None

    @property
    def eval_count(self) -> int | None:
        return self.statistics.eval_count if self.statistics else None


@dataclass
class AccumulatorState:
    """Mutable state for chunk aggregation."""
    content_parts: list[str] = field(default_factory=list)
    thinking_parts: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    images: list[str] | None = None
    role: Any = None
    model: str = ""
    chunk_count: int = 0

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    @property
    def thinking(self) -> str:
        return "".join(self.thinking_parts)
