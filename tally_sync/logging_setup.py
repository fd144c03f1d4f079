"""Loguru sink configuration shared by the CLI and the scheduler."""
from __future__ import annotations
import sys
from typing import Optional
from loguru import logger


def configure_logging(level: str = "INFO", log_file: Optional[str] = None, verbose: bool = False):
    """Replace the default loguru sink with stderr and an optional rotating file."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else level.upper())
    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            rotation="10 MB",
            retention=10,
            enqueue=True,
        )
        logger.debug(f"Logging to {log_file}")
