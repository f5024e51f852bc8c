"""
Tests for configuration, errors, logging and cancellation utilities.
"""

import asyncio
import json
import logging

import pytest

from webextract.config import Settings, get_settings, reset_settings
from webextract.utils.cancellation import run_cancellable
from webextract.utils.errors import (
    BlockedUrlError,
    HttpStatusError,
    OperationCancelledError,
    ValidationError,
    WebExtractError,
)
from webextract.utils.logging import LogContext, StructuredFormatter, context_filter


class TestSettings:
    """Test the Settings configuration class."""

    def test_default_settings(self, monkeypatch):
        """Test default settings initialization."""
        for name in ("WEBEXTRACT_LOG_LEVEL", "WEBEXTRACT_STORE", "WEBEXTRACT_STRICT_MODE",
                     "WEBEXTRACT_SEMANTIC_WEIGHT", "WEBEXTRACT_ALLOW_HOSTS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings()

        assert settings.log_level == "INFO"
        assert settings.store_type == "memory"
        assert settings.strict_mode is True
        assert settings.semantic_weight == 0.6
        assert settings.allow_hosts == []
        assert settings.max_summaries_for_partition == 50

    def test_settings_from_env(self, monkeypatch):
        """Test loading settings from environment variables."""
        monkeypatch.setenv("WEBEXTRACT_LOG_LEVEL", "debug")
        monkeypatch.setenv("WEBEXTRACT_STRICT_MODE", "false")
        monkeypatch.setenv("WEBEXTRACT_SEMANTIC_WEIGHT", "0.3")
        monkeypatch.setenv("WEBEXTRACT_ALLOW_HOSTS", "localhost, Intranet.local")
        monkeypatch.setenv("WEBEXTRACT_RPS", "5")

        settings = Settings()

        assert settings.log_level == "DEBUG"
        assert settings.strict_mode is False
        assert settings.semantic_weight == 0.3
        assert settings.allow_hosts == ["localhost", "intranet.local"]
        assert settings.requests_per_second == 5.0

    def test_empty_variables_use_defaults(self, monkeypatch):
        """Test empty environment variables fall back to defaults."""
        monkeypatch.setenv("WEBEXTRACT_RPS", "")
        monkeypatch.setenv("WEBEXTRACT_STRICT_MODE", "")

        settings = Settings()

        assert settings.requests_per_second == 2.0
        assert settings.strict_mode is True

    def test_dotenv_loaded_by_get_settings(self, tmp_path, monkeypatch):
        """Test a .env file in the working directory feeds the settings."""
        monkeypatch.delenv("WEBEXTRACT_SEMANTIC_WEIGHT", raising=False)
        monkeypatch.delenv("WEBEXTRACT_DEV_MODE", raising=False)
        (tmp_path / ".env").write_text("WEBEXTRACT_SEMANTIC_WEIGHT=0.25\nWEBEXTRACT_DEV_MODE=yes\n")
        monkeypatch.chdir(tmp_path)

        settings = get_settings()

        assert settings.semantic_weight == 0.25
        assert settings.dev_mode is True

    def test_postgres_requires_database_url(self, monkeypatch):
        """Test the Postgres store needs a connection string."""
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ValueError, match="database_url required"):
            Settings(store_type="postgres")

    def test_invalid_values(self):
        """Test out-of-range values are rejected."""
        with pytest.raises(ValueError):
            Settings(semantic_weight=1.5)
        with pytest.raises(ValueError):
            Settings(requests_per_second=0)
        with pytest.raises(ValueError):
            Settings(log_level="LOUD")
        with pytest.raises(ValueError):
            Settings(store_type="redis")

    def test_singleton(self):
        """Test get_settings caches until reset."""
        first = get_settings()

        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first


class TestErrors:
    """Test the error hierarchy."""

    def test_details_in_string(self):
        """Test details are appended to the message."""
        error = WebExtractError("failed", {"url": "x"})

        assert str(error) == "failed | Details: {'url': 'x'}"
        assert str(WebExtractError("plain")) == "plain"

    def test_blocked_is_validation_error(self):
        """Test blocked urls share the validation base."""
        error = BlockedUrlError("http://127.0.0.1", "loopback")

        assert isinstance(error, ValidationError)
        assert error.details["url"] == "http://127.0.0.1"

    @pytest.mark.parametrize("status,transient", [(503, True), (429, True), (404, False), (403, False)])
    def test_http_status_transience(self, status, transient):
        """Test only server errors and throttling are transient."""
        assert HttpStatusError("https://a.org", status).is_transient is transient


class TestLogging:
    """Test structured logging helpers."""

    def test_log_context_sets_and_restores(self):
        """Test nested contexts restore outer values."""
        with LogContext(query="outer"):
            with LogContext(query="inner", site="a.org"):
                assert context_filter.context["query"] == "inner"
            assert context_filter.context["query"] == "outer"
            assert "site" not in context_filter.context
        assert "query" not in context_filter.context

    def test_structured_formatter(self):
        """Test records are formatted as JSON with extra fields."""
        record = logging.LogRecord("webextract", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.site = "https://a.org"

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["site"] == "https://a.org"
        assert data["level"] == "INFO"


class TestRunCancellable:
    """Test caller-driven cancellation."""

    @pytest.mark.asyncio
    async def test_completes_without_event(self):
        """Test work runs normally when no event is given."""
        async def work():
            return 42

        assert await run_cancellable(work(), None, "work") == 42

    @pytest.mark.asyncio
    async def test_completes_before_event(self):
        """Test work that finishes first returns its result."""
        async def work():
            return "done"

        assert await run_cancellable(work(), asyncio.Event(), "work") == "done"

    @pytest.mark.asyncio
    async def test_event_cancels_work(self):
        """Test setting the event cancels the in-flight work."""
        cancel = asyncio.Event()
        finished = []

        async def work():
            await asyncio.sleep(10)
            finished.append(True)

        task = asyncio.create_task(run_cancellable(work(), cancel, "work"))
        await asyncio.sleep(0)
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await task
        assert finished == []

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        """Test errors from the work are raised unchanged."""
        async def work():
            raise ValidationError("bad")

        with pytest.raises(ValidationError):
            await run_cancellable(work(), asyncio.Event(), "work")
