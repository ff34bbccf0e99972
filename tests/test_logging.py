"""Tests for spritegate.logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from spritegate.config import Settings
from spritegate.logging import (
    DEFAULT_FORMAT,
    VERBOSE_FORMAT,
    JsonFormatter,
    get_logger,
    parse_level,
    setup_logging,
    setup_logging_from_settings,
)


@pytest.fixture(autouse=True)
def _reset_spritegate_logger():  # type: ignore[no-untyped-def]
    logger = logging.getLogger("spritegate")
    saved = list(logger.handlers), logger.level
    logger.handlers.clear()
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])


class TestGetLogger:
    """Tests for the get_logger factory function."""

    def test_returns_correct_namespace(self) -> None:
        lg = get_logger("quality")
        assert lg.name == "spritegate.quality"

    def test_returns_logger_instance(self) -> None:
        assert isinstance(get_logger("test"), logging.Logger)

    def test_child_of_spritegate(self) -> None:
        _parent = logging.getLogger("spritegate")
        lg = get_logger("controller")
        assert lg.parent is not None
        assert lg.parent.name == "spritegate"


class TestSetupLogging:
    """Tests for the setup_logging configuration function."""

    def _stream_handlers(self) -> list[logging.Handler]:
        return [
            h
            for h in logging.getLogger("spritegate").handlers
            if not isinstance(h, logging.FileHandler)
        ]

    def test_sets_level(self) -> None:
        setup_logging(level=logging.WARNING)
        assert logging.getLogger("spritegate").level == logging.WARNING

    def test_default_format(self) -> None:
        setup_logging()
        handler = self._stream_handlers()[0]
        assert handler.formatter is not None
        assert handler.formatter._fmt == DEFAULT_FORMAT

    def test_verbose_format(self) -> None:
        setup_logging(verbose=True)
        handler = self._stream_handlers()[0]
        assert handler.formatter is not None
        assert handler.formatter._fmt == VERBOSE_FORMAT

    def test_repeated_calls_do_not_duplicate_handlers(self) -> None:
        setup_logging()
        setup_logging(verbose=True)
        setup_logging()
        assert len(self._stream_handlers()) == 1

    def test_log_file_created(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "run.log"
        setup_logging(log_file=str(log_file))
        get_logger("test").info("hello file")
        for handler in logging.getLogger("spritegate").handlers:
            handler.flush()
        assert log_file.exists()
        assert "hello file" in log_file.read_text()

    def test_json_formatter_selected(self) -> None:
        setup_logging(json_logs=True)
        assert isinstance(self._stream_handlers()[0].formatter, JsonFormatter)


class TestJsonFormatter:
    def test_emits_json_with_generation_id(self) -> None:
        record = logging.LogRecord(
            "spritegate.controller", logging.INFO, __file__, 1, "attempt %d", (2,), None
        )
        record.generation_id = "gen-1"
        payload = json.loads(JsonFormatter().format(record))
        assert payload["message"] == "attempt 2"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "spritegate.controller"
        assert payload["generation_id"] == "gen-1"

    def test_omits_generation_id_when_absent(self) -> None:
        record = logging.LogRecord(
            "spritegate", logging.WARNING, __file__, 1, "plain", (), None
        )
        payload = json.loads(JsonFormatter().format(record))
        assert "generation_id" not in payload


class TestParseLevel:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("debug", logging.DEBUG),
            (" WARNING ", logging.WARNING),
            (logging.ERROR, logging.ERROR),
            ("", logging.INFO),
            (None, logging.INFO),
            ("not-a-level", logging.INFO),
        ],
    )
    def test_parse(self, value: object, expected: int) -> None:
        assert parse_level(value) == expected  # type: ignore[arg-type]


class TestSetupFromSettings:
    def test_log_directory_enables_file(self, tmp_path: Path) -> None:
        settings = Settings(log_directory=str(tmp_path), log_level="ERROR")
        setup_logging_from_settings(settings)
        logger = logging.getLogger("spritegate")
        assert logger.level == logging.ERROR
        assert any(isinstance(h, logging.FileHandler) for h in logger.handlers)

    def test_verbose_forces_debug(self) -> None:
        setup_logging_from_settings(Settings(log_level="ERROR"), verbose=True)
        assert logging.getLogger("spritegate").level == logging.DEBUG
