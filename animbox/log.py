"""Loguru sink setup."""

from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} - {message}"
)


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper(), colorize=False)
    if log_file:
        logger.add(
            log_file,
            format=LOG_FORMAT,
            level=level.upper(),
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
