"""Unit tests for the logging configuration module."""

import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import MagicMock, patch

import pytest
import structlog

from chronicbot_updater.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state before and after each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    logging.root.setLevel(logging.WARNING)
    yield
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)


def _settings(**overrides):
    settings = MagicMock()
    settings.log_level = "INFO"
    settings.log_to_file = False
    settings.is_development = False
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_basic_config_uses_configured_level(self):
        """basicConfig receives the configured level and no default handlers."""
        with patch("chronicbot_updater.logging.logging.basicConfig") as mock_basic:
            setup_logging(_settings(log_level="DEBUG"))

        mock_basic.assert_called_once_with(format="%(message)s", level=logging.DEBUG, handlers=[])

    def test_falls_back_to_global_settings(self):
        """Without an explicit argument the cached settings are used."""
        with patch("chronicbot_updater.logging.get_settings", return_value=_settings()) as mock_get:
            setup_logging()

        mock_get.assert_called_once()

    def test_invalid_level_defaults_to_info(self):
        """An unknown level name falls back to INFO."""
        with patch("chronicbot_updater.logging.logging.basicConfig") as mock_basic:
            setup_logging(_settings(log_level="NONEXISTENT"))

        mock_basic.assert_called_once_with(format="%(message)s", level=logging.INFO, handlers=[])

    def test_console_handler_has_structlog_formatter(self):
        """The stderr handler renders through a ProcessorFormatter."""
        setup_logging(_settings(is_development=True))

        console_handlers = [h for h in logging.root.handlers if type(h) is logging.StreamHandler]
        assert len(console_handlers) == 1
        assert isinstance(console_handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_reduces_http_client_noise(self):
        """httpx and httpcore are capped at WARNING."""
        setup_logging(_settings(log_level="DEBUG"))

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_configures_structlog(self):
        """structlog.configure gets a dict context and logger caching."""
        with patch("chronicbot_updater.logging.structlog.configure") as mock_configure:
            setup_logging(_settings())

        mock_configure.assert_called_once()
        call_kwargs = mock_configure.call_args[1]
        assert call_kwargs["context_class"] is dict
        assert call_kwargs["cache_logger_on_first_use"] is True

    def test_development_uses_console_renderer(self):
        with patch("chronicbot_updater.logging.structlog.dev.ConsoleRenderer") as mock_renderer:
            setup_logging(_settings(is_development=True))

        mock_renderer.assert_called_once_with(colors=True)

    def test_production_uses_json_renderer(self):
        with patch("chronicbot_updater.logging.structlog.processors.JSONRenderer") as mock_renderer:
            setup_logging(_settings(is_development=False))

        mock_renderer.assert_called_once_with()


class TestSetupLoggingFileHandler:
    """Tests for the rotating file handler."""

    def test_file_logging_creates_rotating_handler(self, tmp_path):
        log_dir = tmp_path / "logs"
        settings = _settings(
            log_to_file=True,
            log_directory=str(log_dir),
            log_file_path=str(log_dir / "chronicbot-updater.log"),
            log_file_max_bytes=1048576,
            log_file_backup_count=3,
        )

        setup_logging(settings)

        file_handlers = [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 1048576
        assert file_handlers[0].backupCount == 3
        assert isinstance(file_handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        assert log_dir.exists()

    def test_log_directory_failure_disables_file_logging(self):
        """An unwritable log directory leaves console-only logging."""
        settings = _settings(log_to_file=True, log_directory="/nonexistent/deeply/nested")

        with patch("chronicbot_updater.logging.Path.mkdir", side_effect=PermissionError("denied")):
            setup_logging(settings)

        assert settings.log_to_file is True
        file_handlers = [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]
        assert file_handlers == []

    def test_file_handler_failure_is_tolerated(self, tmp_path):
        log_dir = tmp_path / "logs"
        settings = _settings(
            log_to_file=True,
            log_directory=str(log_dir),
            log_file_path=str(log_dir / "chronicbot-updater.log"),
            log_file_max_bytes=1024,
            log_file_backup_count=1,
        )

        with patch(
            "chronicbot_updater.logging.RotatingFileHandler",
            side_effect=PermissionError("cannot write"),
        ):
            setup_logging(settings)

        file_handlers = [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]
        assert file_handlers == []


class TestGetLogger:
    """Tests for get_logger."""

    def test_returns_logger(self):
        logger = get_logger("chronicbot_updater.test")
        assert logger is not None
