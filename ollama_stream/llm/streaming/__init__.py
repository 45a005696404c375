"""
Streaming functionality for the Ollama client.

This module contains:
- Newline-delimited JSON decoding
- Chunk aggregation and performance metrics
- The caller-facing ResponseStream
"""

from __future__ import annotations

from .models import (
    AggregateResult,
    ChatChunk,
    EmbedChunk,
    EmbeddingChunk,
    EndpointFamily,
    GenerateChunk,
    GenerationStats,
    PerformanceMetrics,
    ProgressChunk,
    RawChunk,
    StreamChunkType,
    StreamDelta,
)
from .parser import ChunkAggregator, ChunkDecoder, LineBuffer
from .stream import ResponseStream

__all__ = [
    "AggregateResult",
    "ChatChunk",
    "ChunkAggregator",
    "ChunkDecoder",
    "EmbedChunk",
    "EmbeddingChunk",
    "EndpointFamily",
    "GenerateChunk",
    "GenerationStats",
    "LineBuffer",
    "PerformanceMetrics",
    "ProgressChunk",
    "RawChunk",
    "ResponseStream",
    "StreamChunkType",
    "StreamDelta",
]
