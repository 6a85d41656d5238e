"""Loguru sink setup."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from safetykg.utils.config import LoggingConfig


def configure_logging(config: Optional[LoggingConfig] = None, *, verbose: bool = False) -> None:
    """Replace the default loguru sink with stderr and an optional rotating file."""
    config = config or LoggingConfig()
    level = "DEBUG" if verbose else config.level.upper()
    serialize = config.format == "json"

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
    )

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            config.file,
            level=level,
            rotation=f"{config.max_size_mb} MB",
            retention=config.backup_count,
            serialize=serialize,
            encoding="utf-8",
        )
