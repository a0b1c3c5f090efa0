"""Loguru configuration for Strata."""

import sys
from pathlib import Path

from loguru import logger

from strata.core.config import Settings, get_settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(settings: Settings | None = None, log_to_file: bool = True) -> None:
    """Configure loguru sinks based on settings.

    Args:
        settings: Optional settings override. Uses cached settings if not provided.
        log_to_file: Whether to add the rotated file sink.
    """
    settings = settings or get_settings()
    logger.remove()  # Remove default handler

    level = "DEBUG" if settings.strata_debug else settings.strata_log_level

    if log_to_file:
        logs_dir = Path(settings.strata_log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(logs_dir / "strata_{time:YYYY-MM-DD}.log"),
            rotation="1 day",
            retention="7 days",
            level=settings.strata_log_level,
            format=LOG_FORMAT,
        )

    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
        colorize=True,
    )
