"""Logging configuration for SpriteGate.

Provides a setup function and module-level logger factory built on
Python's ``logging`` module.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

DEFAULT_FORMAT = "%(levelname)-5s | %(name)-22s | %(message)s"
VERBOSE_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)-22s | %(message)s"
LOG_FILE_NAME = "spritegate.log"
_SETUP_LOCK = threading.Lock()


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter for machine-readable aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        generation_id = getattr(record, "generation_id", None)
        if generation_id is not None:
            payload["generation_id"] = generation_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def parse_level(value: str | int | None, default: int = logging.INFO) -> int:
    """Translate a level name such as ``"debug"`` into a logging constant."""
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(
    level: int = logging.INFO,
    verbose: bool = False,
    log_file: str | None = None,
    json_logs: bool = False,
) -> None:
    """Configure logging for the spritegate package.

    Calling this function sets up handlers on the ``spritegate`` root
    logger.  Repeated calls are safe; existing handlers are reused so
    output is never duplicated.

    Args:
        level: Logging level (default: INFO).
        verbose: If True, include timestamps in output.
        log_file: Optional file path to write logs to (in addition to stderr).
        json_logs: Emit structured JSON log lines when True.
    """
    with _SETUP_LOCK:
        logger = logging.getLogger("spritegate")
        logger.setLevel(level)

        fmt = VERBOSE_FORMAT if verbose else DEFAULT_FORMAT
        stream_handlers = [
            h
            for h in logger.handlers
            if isinstance(h, logging.StreamHandler)
            and not isinstance(h, logging.FileHandler)
            and getattr(h, "stream", None) is sys.stderr
        ]
        if stream_handlers:
            stream_handler = stream_handlers[0]
            for extra in stream_handlers[1:]:
                logger.removeHandler(extra)
        else:
            stream_handler = logging.StreamHandler(sys.stderr)
            logger.addHandler(stream_handler)
        if json_logs:
            stream_handler.setFormatter(JsonFormatter())
        else:
            stream_handler.setFormatter(logging.Formatter(fmt))

        if log_file:
            target = os.path.abspath(str(log_file))
            Path(target).parent.mkdir(parents=True, exist_ok=True)
            file_handlers = [
                h
                for h in logger.handlers
                if isinstance(h, logging.FileHandler)
                and getattr(h, "baseFilename", None) == target
            ]
            if file_handlers:
                file_handler = file_handlers[0]
            else:
                file_handler = logging.FileHandler(target)
                logger.addHandler(file_handler)
            if json_logs:
                file_handler.setFormatter(JsonFormatter())
            else:
                file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT))


def setup_logging_from_settings(settings: Any, verbose: bool = False) -> None:
    """Configure logging from a :class:`~spritegate.config.Settings` object.

    ``log_directory`` turns on a ``spritegate.log`` file inside that
    directory; ``log_level`` accepts names or numeric levels.
    """
    log_file = None
    if settings.log_directory:
        log_file = str(Path(settings.log_directory) / LOG_FILE_NAME)
    setup_logging(
        level=logging.DEBUG if verbose else parse_level(settings.log_level),
        verbose=verbose,
        log_file=log_file,
        json_logs=settings.json_logs,
    )


def generation_logger(logger: logging.Logger, generation_id: str) -> logging.LoggerAdapter:
    """Wrap *logger* so every record it emits carries ``generation_id``.

    :class:`JsonFormatter` copies the id into each JSON line, which lets
    log aggregation follow one generation across controller and worker.
    """
    return logging.LoggerAdapter(logger, {"generation_id": generation_id})


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a SpriteGate module.

    Args:
        name: Module name (e.g., ``"quality"``, ``"controller"``).

    Returns:
        A logger instance under the ``spritegate`` namespace.
    """
    return logging.getLogger(f"spritegate.{name}")
