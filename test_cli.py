"""
Tests for the ollama-stream CLI: help output, rendering and error exit codes,
driven through CliRunner against an in-process httpx transport.
"""

import json

import httpx
import pytest
from typer.testing import CliRunner

from ollama_stream import __version__, main
from ollama_stream.config import ClientConfig
from ollama_stream.llm.client import OllamaClient

runner = CliRunner(env={"NO_COLOR": "1", "COLUMNS": "200"})


def ndjson(*records: dict) -> bytes:
    return b"".join(json.dumps(record).encode() + b"\n" for record in records)


GENERATE_BODY = ndjson(
    {"model": "llama3", "response": "Hello", "done": False},
    {"model": "llama3", "response": " there", "done": False},
    {
        "model": "llama3",
        "response": "",
        "done": True,
        "done_reason": "stop",
        "prompt_eval_count": 5,
        "prompt_eval_duration": 250_000_000,
        "eval_count": 6,
        "eval_duration": 2_000_000_000,
        "total_duration": 3_000_000_000,
    },
)


@pytest.fixture
def serve(monkeypatch):
    """Route CLI clients to a canned handler; returns the recorded requests."""
    requests: list[httpx.Request] = []

    def install(routes: dict[tuple[str, str], httpx.Response]):
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            key = (request.method, request.url.path)
            if key not in routes:
                return httpx.Response(404, text="404 page not found")
            return routes[key]

        def make_client(configuration, host):
            return OllamaClient(
                ClientConfig(base_url="http://ollama.test:11434"),
                transport=httpx.MockTransport(handler),
            )

        monkeypatch.setattr(main, "_make_client", make_client)
        return requests

    return install


class TestHelp:
    """Help and version output."""

    def test_root_help(self):
        result = runner.invoke(main.app, ["--help"])
        assert result.exit_code == 0
        assert "generate" in result.output
        assert "models" in result.output

    def test_models_help(self):
        result = runner.invoke(main.app, ["models", "--help"])
        assert result.exit_code == 0
        assert "pull" in result.output
        assert "running" in result.output

    def test_client_version(self):
        result = runner.invoke(main.app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_bad_log_level(self, serve):
        serve({})
        result = runner.invoke(main.app, ["--log-level", "chatty", "health"])
        assert result.exit_code == 1
        assert "Unknown log level" in result.output


class TestGenerate:
    """Streamed and buffered generation."""

    def test_streamed(self, serve):
        requests = serve({("POST", "/api/generate"): httpx.Response(200, content=GENERATE_BODY)})
        result = runner.invoke(main.app, ["generate", "hi", "-m", "llama3"])
        assert result.exit_code == 0, result.output
        assert "Hello there" in result.output
        payload = json.loads(requests[0].content)
        assert payload["stream"] is True
        assert payload["model"] == "llama3"

    def test_buffered_with_options_and_stats(self, serve):
        requests = serve({("POST", "/api/generate"): httpx.Response(200, content=GENERATE_BODY)})
        result = runner.invoke(main.app, [
            "generate", "hi", "-m", "llama3", "--no-stream",
            "-t", "0.2", "-n", "64", "--stats",
        ])
        assert result.exit_code == 0, result.output
        assert "Hello there" in result.output
        assert "Generation Statistics" in result.output
        assert "3.00" in result.output  # 6 tokens over 2s
        payload = json.loads(requests[0].content)
        assert payload["stream"] is False
        assert payload["options"] == {"temperature": 0.2, "num_predict": 64}

    def test_model_not_found_exits_with_kind(self, serve):
        serve({
            ("POST", "/api/generate"): httpx.Response(
                404, json={"error": "model 'ghost' not found, try pulling it first"}
            )
        })
        result = runner.invoke(main.app, ["generate", "hi", "-m", "ghost"])
        assert result.exit_code == 1
        assert "model_not_found" in result.output
        assert "models pull ghost" in result.output

    def test_server_error_is_marked_transient(self, serve):
        serve({("POST", "/api/generate"): httpx.Response(503, text="overloaded")})
        result = runner.invoke(main.app, ["generate", "hi", "-m", "llama3"])
        assert result.exit_code == 1
        assert "server_error" in result.output
        assert "retrying may succeed" in result.output


class TestServerCommands:
    """version, health and models."""

    def test_server_version(self, serve):
        serve({("GET", "/api/version"): httpx.Response(200, json={"version": "0.6.2"})})
        result = runner.invoke(main.app, ["version"])
        assert result.exit_code == 0
        assert "0.6.2" in result.output

    def test_health_up(self, serve):
        serve({("GET", "/"): httpx.Response(200, text="Ollama is running")})
        result = runner.invoke(main.app, ["health"])
        assert result.exit_code == 0
        assert "is up" in result.output

    def test_health_down(self, serve):
        serve({})
        result = runner.invoke(main.app, ["health"])
        assert result.exit_code == 1
        assert "not reachable" in result.output

    def test_models_list(self, serve):
        serve({
            ("GET", "/api/tags"): httpx.Response(200, json={"models": [
                {
                    "name": "llama3:latest",
                    "size": 4_661_224_676,
                    "digest": "abc",
                    "details": {
                        "family": "llama",
                        "parameter_size": "8.0B",
                        "quantization_level": "Q4_0",
                    },
                },
                {"name": "all-minilm:latest", "size": 45_960_996},
            ]})
        })
        result = runner.invoke(main.app, ["models", "list"])
        assert result.exit_code == 0, result.output
        assert "llama3:latest" in result.output
        assert "4.3 GB" in result.output
        assert "Q4_0" in result.output
        assert "2 models" in result.output

    def test_models_delete_with_yes(self, serve):
        requests = serve({("DELETE", "/api/delete"): httpx.Response(200)})
        result = runner.invoke(main.app, ["models", "delete", "llama3", "--yes"])
        assert result.exit_code == 0, result.output
        assert "Deleted llama3" in result.output
        assert json.loads(requests[0].content) == {"model": "llama3"}

    def test_models_pull(self, serve):
        serve({
            ("POST", "/api/pull"): httpx.Response(200, content=ndjson(
                {"status": "pulling manifest"},
                {"status": "pulling abc", "digest": "sha256:abc", "total": 100, "completed": 50},
                {"status": "success"},
            ))
        })
        result = runner.invoke(main.app, ["models", "pull", "llama3"])
        assert result.exit_code == 0, result.output
        assert "pulling manifest" in result.output
        assert "Pulled llama3" in result.output
