"""Logging utilities for sitepipe commands."""

from __future__ import annotations

import logging
from pathlib import Path

_LOGGER_NAME = "sitepipe"
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
_CONSOLE_FORMAT = "[sitepipe] %(levelname)s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a component logger under the sitepipe hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def configure_logging(
    *, verbose: bool = False, log_file: Path | None = None
) -> logging.Logger:
    """Console output for sitepipe, an optional file sink, and quieter server logs."""
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # Repeated invocations in one process must not stack handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        sink = logging.FileHandler(log_file, encoding="utf-8")
        sink.setLevel(level)
        sink.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(sink)

    server_level = logging.INFO if verbose else logging.WARNING
    for name in _SERVER_LOGGERS:
        logging.getLogger(name).setLevel(server_level)

    return logger


__all__ = ["configure_logging", "get_logger"]
