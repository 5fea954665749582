"""Loguru sink configuration."""

import sys
from pathlib import Path

from loguru import logger

from taskrelay.core.config import Settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(settings: Settings) -> None:
    """Install file and console sinks based on settings.

    Components only ever import ``logger``; sinks are the host's concern and
    are installed once by the CLI or the embedding application.
    """
    logger.remove()

    level = "DEBUG" if settings.relay_debug else settings.relay_log_level

    if settings.relay_log_to_file:
        logs_dir = Path(settings.relay_log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(logs_dir / "taskrelay_{time:YYYY-MM-DD}.log"),
            rotation="1 day",
            retention="7 days",
            level=settings.relay_log_level,
            format=LOG_FORMAT,
        )

    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
        colorize=True,
    )
