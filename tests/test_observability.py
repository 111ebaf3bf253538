"""
Tests for observability — log level resolution and handler setup.
"""

import logging
from pathlib import Path

import pytest

from rush.core.observability.logging_config import resolve_level, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestResolveLevel:
    def test_default(self):
        assert resolve_level() == "WARNING"

    def test_env_level(self):
        assert resolve_level(env_level="INFO") == "INFO"

    def test_flags_beat_env(self):
        assert resolve_level(quiet=True, env_level="DEBUG") == "ERROR"
        assert resolve_level(verbose=True, quiet=True) == "INFO"
        assert resolve_level(debug=True, verbose=True) == "DEBUG"


class TestSetupLogging:
    def test_replaces_handlers(self, restore_root_logger):
        setup_logging("INFO")
        setup_logging("INFO")
        root = restore_root_logger
        assert len(root.handlers) == 1
        assert root.level == logging.INFO

    def test_unknown_level_is_warning(self, restore_root_logger):
        setup_logging("chatty")
        assert restore_root_logger.level == logging.WARNING

    def test_file_handler_gets_detail(self, restore_root_logger, tmp_path: Path):
        log_file = tmp_path / "rush.log"
        setup_logging("WARNING", log_file=str(log_file), log_file_level="DEBUG")
        root = restore_root_logger
        assert root.level == logging.DEBUG

        logging.getLogger("rush.test").debug("staged %s", "rg")
        for handler in root.handlers:
            handler.flush()
        text = log_file.read_text()
        assert "DEBUG" in text
        assert "rush.test" in text
        assert "staged rg" in text
