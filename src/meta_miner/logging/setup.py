"""Loguru-based logging configuration."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from meta_miner.config.models import LoggingConfig


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure Loguru based on the provided configuration.

    The debug flag forces DEBUG level, which is where every pool and miner
    message is logged.

    Args:
        config: Logging configuration object.
    """
    level = "DEBUG" if config.debug else config.level

    # Remove default handler
    logger.remove()

    # Console handler with colors
    logger.add(
        sys.stderr,
        level=level,
        format=config.format,
        colorize=True,
    )

    # File handler (if configured)
    if config.file:
        logger.add(
            config.file,
            level=level,
            format=config.format,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            encoding="utf-8",
        )

    logger.debug(f"Logging configured: level={level}, file={config.file}")
