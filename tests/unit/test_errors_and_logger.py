"""Tests for the error taxonomy, logging setup and file helpers."""

import logging

import pytest
from rich.logging import RichHandler

from shade.core.errors import (
    InvalidApiKey,
    MissingApiKey,
    NetworkError,
    ProviderError,
    RateLimited,
    SessionNotFound,
    ShadeError,
    UnknownProvider,
    Unauthenticated,
    UnsupportedModel,
)
from shade.utils.fileio import atomic_write_json, atomic_write_text, read_json
from shade.utils.logger import get_log_dir, setup_logger, update_log_level


@pytest.mark.unit
class TestErrors:
    def test_provider_errors_carry_id_and_cause(self):
        cause = TimeoutError("read timed out")
        error = NetworkError("openai", cause)

        assert isinstance(error, ProviderError)
        assert isinstance(error, ShadeError)
        assert error.provider_id == "openai"
        assert error.cause is cause
        assert "read timed out" in str(error)
        assert "openai" in error.user_message

    @pytest.mark.parametrize(
        "cls, kind",
        [
            (Unauthenticated, "invalid_api_key"),
            (UnsupportedModel, "unsupported_model"),
            (NetworkError, "network_error"),
            (RateLimited, "rate_limited"),
            (ProviderError, "provider_error"),
        ],
    )
    def test_kinds_are_stable(self, cls, kind):
        assert cls("gemini").kind == kind

    def test_invalid_api_key_alias(self):
        assert InvalidApiKey is Unauthenticated

    def test_missing_key_and_unknown_provider_messages(self):
        assert "grok" in MissingApiKey("grok").user_message
        assert UnknownProvider("x").provider_id == "x"
        assert SessionNotFound("abc").session_id == "abc"

    def test_explicit_message(self):
        error = ProviderError("ollama", message="No base URL configured")
        assert str(error) == "No base URL configured"
        assert error.cause is None


@pytest.mark.unit
class TestLogger:
    def test_setup_logger_adds_handlers_once(self):
        logger = setup_logger("shade.tests.handlers")
        again = setup_logger("shade.tests.handlers")

        assert logger is again
        assert sum(isinstance(h, RichHandler) for h in logger.handlers) == 1
        assert logger.propagate is False

    def test_log_file_goes_to_override_dir(self, monkeypatch, temp_dir):
        monkeypatch.setenv("SHADE_LOG_DIR", str(temp_dir / "logs"))

        logger = setup_logger("shade.tests.file_output")
        logger.info("hello from tests")

        assert get_log_dir() == temp_dir / "logs"
        assert any((temp_dir / "logs").glob("shade_*.log"))

    def test_update_log_level_applies_to_shade_loggers(self):
        logger = setup_logger("shade.tests.levels", "INFO")
        outsider = logging.getLogger("someone.else")
        outsider.setLevel(logging.WARNING)

        update_log_level("DEBUG")
        try:
            assert logger.level == logging.DEBUG
            assert outsider.level == logging.WARNING
        finally:
            update_log_level("INFO")


@pytest.mark.unit
class TestFileIO:
    def test_atomic_write_creates_parents_and_replaces(self, temp_dir):
        path = temp_dir / "nested" / "record.json"

        atomic_write_json(path, {"a": 1})
        atomic_write_json(path, {"a": 2, "text": "héllo"})

        assert read_json(path) == {"a": 2, "text": "héllo"}
        assert [p.name for p in path.parent.iterdir()] == ["record.json"]

    def test_atomic_write_text(self, temp_dir):
        path = temp_dir / "note.txt"
        atomic_write_text(path, "first")
        atomic_write_text(path, "second")

        assert path.read_text() == "second"
