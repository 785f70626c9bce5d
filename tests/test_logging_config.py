"""Tests for structured logging configuration."""

import json
import logging

import pytest

from iacstudio.logging_config import JSONFormatter, configure_logging
from iacstudio.settings import Settings


@pytest.fixture(autouse=True)
def _restore_package_logger():
    logger = logging.getLogger("iacstudio")
    handlers, level = logger.handlers[:], logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


def make_record(**extra):
    record = logging.LogRecord(
        name="iacstudio.tasks",
        level=logging.ERROR,
        pathname=__file__,
        lineno=10,
        msg="[%s] apply error",
        args=("d1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_fields(self):
        entry = json.loads(JSONFormatter().format(make_record()))

        assert entry["level"] == "ERROR"
        assert entry["logger"] == "iacstudio.tasks"
        assert entry["message"] == "[d1] apply error"
        assert entry["timestamp"].endswith("Z")

    def test_deployment_extras(self):
        entry = json.loads(JSONFormatter().format(make_record(deployment_id="d1", status="failed")))
        assert entry["deployment_id"] == "d1"
        assert entry["status"] == "failed"
        assert "command" not in entry


class TestConfigureLogging:
    def test_json_console(self):
        logger = configure_logging(Settings(log_level="DEBUG", log_format="json"))

        assert logger.name == "iacstudio"
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = configure_logging(Settings(log_format="console", log_file=str(log_file)))

        assert len(logger.handlers) == 2
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_reconfigure_replaces_handlers(self):
        configure_logging(Settings())
        logger = configure_logging(Settings())
        assert len(logger.handlers) == 1

