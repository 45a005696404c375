"""Configuration management for the Ollama client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import yaml
from dotenv import load_dotenv

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_PORT = 11434
DEFAULT_TIMEOUT = 120.0
DEFAULT_USER_AGENT = "ollama-stream/0.1.0"

ENV_HOST = "OLLAMA_HOST"
ENV_TIMEOUT = "OLLAMA_TIMEOUT"
ENV_API_KEY = "OLLAMA_API_KEY"


def normalize_host(host: str) -> str:
    """Turn an ``OLLAMA_HOST`` style value into a base URL.

    ``0.0.0.0`` becomes ``http://0.0.0.0:11434``; an explicit scheme or port
    is kept.
    """
    host = host.strip().rstrip("/")
    if not host:
        raise ValueError(f"{ENV_HOST} must not be empty")
    if "://" not in host:
        host = f"http://{host}"
    parts = urlsplit(host)
    if parts.port is None and parts.scheme == "http" and not parts.path:
        host = f"{host}:{DEFAULT_PORT}"
    return host


@dataclass(frozen=True)
class ClientConfig:
    """Connection settings for one Ollama server."""
    base_url: str = DEFAULT_BASE_URL
    timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = 10.0
    user_agent: str = DEFAULT_USER_AGENT
    follow_redirects: bool = True
    max_connections: int = 10
    max_keepalive: int = 5
    keepalive_expiry: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)
    api_key: str | None = None

    def __post_init__(self) -> None:
        base_url = self.base_url.rstrip("/")
        parts = urlsplit(base_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(
                f"base_url must be an absolute http(s) URL, got '{self.base_url}'"
            )
        object.__setattr__(self, "base_url", base_url)

        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        if self.max_keepalive > self.max_connections:
            raise ValueError("max_keepalive must be <= max_connections")
        if self.keepalive_expiry < 0:
            raise ValueError("keepalive_expiry must not be negative")

    def endpoint_url(self, path: str) -> str:
        """Absolute URL for an API path such as ``api/generate``."""
        return f"{self.base_url}/{path.lstrip('/')}"

    def request_headers(self) -> dict[str, str]:
        """Default headers sent with every request."""
        headers = {"User-Agent": self.user_agent, **self.headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers


class Configuration:
    """Manages configuration and environment variables for the Ollama client."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for host / API key
        self._config = self._load_yaml_config(config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    def _load_yaml_config(self, config_path: str | None) -> dict[str, Any]:
        """Load configuration from YAML file."""
        if config_path is None:
            config_path = os.path.join(os.path.dirname(__file__), "config.yaml")
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def get_http_client_config(self) -> dict[str, Any]:
        """Get HTTP client pool and timeout configuration from YAML.

        Returns:
            HTTP client configuration dictionary with validated values.

        Raises:
            ValueError: If required HTTP client parameters are missing or invalid.
        """
        http_config = self._config.get("client", {}).get("http_client", {})

        required_keys = [
            "connect_timeout", "read_timeout", "max_connections",
            "max_keepalive", "keepalive_expiry",
        ]
        for key in required_keys:
            if key not in http_config:
                raise ValueError(
                    f"http_client.{key} must be explicitly configured "
                    "in config.yaml under client.http_client"
                )

        if http_config["max_connections"] < 1:
            raise ValueError("http_client.max_connections must be at least 1")
        if http_config["max_keepalive"] > http_config["max_connections"]:
            raise ValueError("http_client.max_keepalive must be <= max_connections")
        if http_config["connect_timeout"] <= 0 or http_config["read_timeout"] <= 0:
            raise ValueError("http_client timeouts must be positive")

        return http_config

    def get_client_config(self) -> ClientConfig:
        """Build the client configuration, applying environment overrides.

        ``OLLAMA_HOST`` replaces ``client.base_url``, ``OLLAMA_TIMEOUT``
        replaces ``client.http_client.read_timeout`` and ``OLLAMA_API_KEY``
        is sent as a bearer token.

        Raises:
            ValueError: If a value is missing or invalid.
        """
        client_config = self._config.get("client", {})
        if "base_url" not in client_config:
            raise ValueError(
                "base_url must be explicitly configured in config.yaml under client"
            )
        http_config = self.get_http_client_config()

        base_url = client_config["base_url"]
        if host := os.getenv(ENV_HOST):
            base_url = normalize_host(host)

        timeout = float(http_config["read_timeout"])
        if raw_timeout := os.getenv(ENV_TIMEOUT):
            try:
                timeout = float(raw_timeout)
            except ValueError as e:
                raise ValueError(
                    f"{ENV_TIMEOUT} must be a number of seconds, got '{raw_timeout}'"
                ) from e

        return ClientConfig(
            base_url=base_url,
            timeout=timeout,
            connect_timeout=float(http_config["connect_timeout"]),
            user_agent=client_config.get("user_agent", DEFAULT_USER_AGENT),
            follow_redirects=client_config.get("follow_redirects", True),
            max_connections=http_config["max_connections"],
            max_keepalive=http_config["max_keepalive"],
            keepalive_expiry=float(http_config["keepalive_expiry"]),
            headers=dict(client_config.get("headers") or {}),
            api_key=os.getenv(ENV_API_KEY) or None,
        )

    def get_defaults(self) -> dict[str, str]:
        """Get default model names per operation.

        Raises:
            ValueError: If a default model is not configured.
        """
        defaults = self._config.get("defaults", {})
        for key in ("generate_model", "chat_model", "embed_model"):
            if not defaults.get(key):
                raise ValueError(
                    f"{key} must be explicitly configured in config.yaml "
                    "under defaults"
                )
        return defaults

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._config.get("logging", {})
