"""Tests for structlog configuration."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from tlsecho.logging import configure_logging


class TestConfigureLogging:
    def test_default_level_is_info(self) -> None:
        configure_logging()
        assert logging.getLogger("tlsecho").level == logging.INFO
        assert logging.getLogger().level == logging.WARNING

    def test_verbose_enables_debug(self) -> None:
        configure_logging(verbose=True)
        assert logging.getLogger("tlsecho").level == logging.DEBUG

    def test_single_stderr_handler(self) -> None:
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_json_mode_output(self, capfd: pytest.CaptureFixture[str]) -> None:
        configure_logging(log_json=True)
        log = structlog.get_logger("tlsecho.test")
        log.info("session_closed", peer="127.0.0.1:5555", lines=3)
        captured = capfd.readouterr()
        parsed = json.loads(captured.err.strip())
        assert parsed["event"] == "session_closed"
        assert parsed["lines"] == 3
        assert parsed["level"] == "info"
        assert parsed["logger"] == "tlsecho.test"
        assert "timestamp" in parsed
        assert captured.out == ""

    def test_debug_suppressed_without_verbose(self, capfd: pytest.CaptureFixture[str]) -> None:
        configure_logging(log_json=True)
        structlog.get_logger("tlsecho.test").debug("bound")
        assert capfd.readouterr().err == ""
