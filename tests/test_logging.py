"""Tests for logger configuration."""

import io
import json
import logging

from timeledger.core.logging import LOGGER_NAME, configure_logging, get_logger


class TestConfigureLogging:
    def test_reconfiguring_replaces_handler(self):
        configure_logging("DEBUG")
        logger = configure_logging("warning")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not logger.propagate

    def test_json_lines_carry_context(self):
        stream = io.StringIO()
        configure_logging("INFO", json_format=True, stream=stream)

        get_logger("settlement").info('Settled "x"', extra={"entry_id": "e-1"})

        record = json.loads(stream.getvalue().strip())
        assert record["name"] == f"{LOGGER_NAME}.settlement"
        assert record["message"] == 'Settled "x"'
        assert record["entry_id"] == "e-1"
        assert "account_id" not in record

    def test_text_format(self):
        stream = io.StringIO()
        configure_logging("INFO", stream=stream)

        get_logger("admin").info("hello")

        assert "INFO [timeledger.admin] hello" in stream.getvalue()


def test_root_logger():
    assert get_logger().name == LOGGER_NAME
