"""Loguru logging setup."""

import os
import sys
from pathlib import Path

from loguru import logger


def setup_logging(level: str | None = None, log_path: Path | None = None) -> None:
    """Configure loguru sinks for the process."""
    if level is None:
        level = os.environ.get("AETHERCODEX_LOG_LEVEL", "INFO").upper()

    logger.remove()
    logger.add(
        sys.stderr,
        format="<level>{time:YYYY-MM-DD HH:mm:ss} | {name}:{function}:{line} | {message}</level>",
        level=level,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            level="DEBUG",
            rotation="10 MB",
            retention=5,
            backtrace=True,
            diagnose=False,
            enqueue=True,
        )
