"""
Async streaming client for Ollama-style inference servers.

This package provides:
- Typed request and chunk models (pydantic)
- Newline-delimited JSON stream decoding and aggregation
- Classified, retry-aware errors
- A pooled httpx client and a Typer CLI
"""

__version__ = "0.1.0"
