#!/usr/bin/env python3
"""
Test script for logging utilities.

This validates that the centralized logging decorators record timing and
classified error details.
"""

import logging
from unittest.mock import Mock, patch

import pytest

from ollama_stream.llm.exceptions import ModelNotFoundError, ServerError
from ollama_stream.logging_utils import (
    error_details,
    log_operation,
    operation_context,
    setup_logging,
)


class TestErrorDetails:
    """Test structured error fields."""

    def test_plain_exception(self):
        details = error_details(ValueError("Invalid parameter"))
        assert details == {
            "error_type": "ValueError",
            "error_message": "Invalid parameter",
        }

    def test_classified_error(self):
        error = ServerError("Server error - HTTP 503", status_code=503)
        details = error_details(error)
        assert details["error_kind"] == "server_error"
        assert details["retryable"] is True
        assert details["status_code"] == 503

    def test_non_retryable_error(self):
        details = error_details(ModelNotFoundError("Model 'x' not found", status_code=404))
        assert details["error_kind"] == "model_not_found"
        assert details["retryable"] is False


class TestDecorators:
    """Test logging decorators."""

    @pytest.mark.asyncio
    async def test_log_operation_success(self):
        """Test log_operation decorator with successful function."""

        @log_operation("test_operation", log_timing=True)
        async def successful_function():
            return "success"

        result = await successful_function()
        assert result == "success"

    @pytest.mark.asyncio
    async def test_log_operation_with_error(self):
        """Test log_operation decorator with function that raises error."""

        @log_operation("test_operation", log_timing=True)
        async def failing_function():
            raise ValueError("Test error")

        with pytest.raises(ValueError, match="Test error"):
            await failing_function()

    @pytest.mark.asyncio
    async def test_log_operation_logs_error_kind(self):
        """Failures of classified errors log kind and retryability."""
        mock_logger = Mock()
        bound = mock_logger.bind.return_value

        @log_operation("generate", context={"endpoint": "api/generate"})
        async def failing_function():
            raise ServerError("Server error - HTTP 500", status_code=500)

        with patch("ollama_stream.logging_utils.logger", mock_logger):
            with pytest.raises(ServerError):
                await failing_function()

        mock_logger.bind.assert_called_once_with(
            operation="generate", function="failing_function", endpoint="api/generate"
        )
        fields = bound.error.call_args.kwargs
        assert fields["error_kind"] == "server_error"
        assert fields["retryable"] is True
        assert "duration_ms" in fields

    @pytest.mark.asyncio
    async def test_log_operation_result(self):
        mock_logger = Mock()

        @log_operation("version", log_result=True, log_timing=False)
        async def version():
            return "0.5.7"

        with patch("ollama_stream.logging_utils.logger", mock_logger):
            assert await version() == "0.5.7"

        fields = mock_logger.bind.return_value.info.call_args.kwargs
        assert fields == {"result": "0.5.7"}


class TestContextManager:
    """Test operation context manager."""

    @pytest.mark.asyncio
    async def test_operation_context_success(self):
        """Test operation context manager with successful operation."""

        async with operation_context("test_operation", log_timing=True) as logger:
            assert logger is not None

    @pytest.mark.asyncio
    async def test_operation_context_with_error(self):
        """Test operation context manager with failing operation."""

        with pytest.raises(ValueError, match="Test error"):
            async with operation_context("test_operation", log_timing=True):
                raise ValueError("Test error")


class TestSetupLogging:
    """Test log level routing."""

    def test_sets_root_level(self):
        setup_logging("debug")
        assert logging.getLogger().level == logging.DEBUG
        setup_logging("WARNING")
        assert logging.getLogger().level == logging.WARNING

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            setup_logging("chatty")
