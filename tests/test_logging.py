"""
Tests for logging setup.
"""

import logging
import sys

import pytest

from deltaflow.exceptions import ConfigurationError
from deltaflow.utils.logging import (
    ROOT_LOGGER,
    ConsoleFormatter,
    FileFormatter,
    _parse_level,
    get_logger,
    setup_logging,
    setup_logging_from_config,
)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _record(level=logging.INFO, msg="hello", exc_info=None):
    return logging.LogRecord("deltaflow.test", level, "/src/deltaflow/core/coordinator.py", 42, msg, None, exc_info)


class TestFormatters:
    """Formatter output."""

    def test_file_formatter(self):
        line = FileFormatter().format(_record())
        assert "[INFO    ] deltaflow.test: hello" in line

    def test_file_formatter_appends_traceback(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record(logging.ERROR, "failed", sys.exc_info())
        text = FileFormatter().format(record)
        first, rest = text.split("\n", 1)
        assert first.endswith("failed")
        assert "ValueError: boom" in rest

    def test_console_formatter_adds_location_for_errors(self):
        assert ConsoleFormatter().format(_record(logging.ERROR)).startswith("ERROR: ")
        assert "coordinator.py:42 - hello" in ConsoleFormatter().format(_record(logging.ERROR))
        assert "coordinator.py" not in ConsoleFormatter().format(_record(logging.INFO))


class TestSetupLogging:
    """Handler configuration."""

    def test_parse_level(self):
        assert _parse_level("debug") == logging.DEBUG
        assert _parse_level(logging.WARNING) == logging.WARNING
        assert _parse_level("nonsense") == logging.INFO

    def test_plain_console_handler(self):
        logger = setup_logging(level="WARNING", use_rich=False)
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, ConsoleFormatter)

    def test_repeated_setup_replaces_handlers(self):
        setup_logging(use_rich=False)
        logger = setup_logging(use_rich=False)
        assert len(logger.handlers) == 1

    def test_file_logging(self, tmp_path):
        log_file = tmp_path / "nested" / "run.log"
        setup_logging(log_file=log_file, console_enabled=False)
        get_logger("deltaflow.coordinator").info("pipeline started")
        assert "pipeline started" in log_file.read_text()

    def test_from_config_relative_file(self, tmp_path):
        config = {"logging": {"level": "DEBUG", "console_enabled": False, "file": "logs/x.log", "file_mode": "w"}}
        logger = setup_logging_from_config(config, project_dir=tmp_path)
        get_logger("deltaflow.state").debug("schema ready")
        assert logger.level == logging.DEBUG
        assert "schema ready" in (tmp_path / "logs" / "x.log").read_text()

    def test_from_config_relative_file_needs_project_dir(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ConfigurationError, match="logging.file"):
            setup_logging_from_config({"logging": {"console_enabled": False}})
        assert list(tmp_path.iterdir()) == []

    def test_from_config_file_disabled(self):
        logger = setup_logging_from_config({"logging": {"file_enabled": False, "console_type": "plain"}})
        assert [type(h) for h in logger.handlers] == [logging.StreamHandler]

    def test_child_loggers_propagate(self, caplog):
        setup_logging(console_enabled=False)
        with caplog.at_level(logging.INFO, logger=ROOT_LOGGER):
            get_logger("deltaflow.retry.manager").warning("retrying")
        assert "retrying" in caplog.text
