"""Logging setup for processes that embed MagicKit."""

import logging
import sys
from typing import Optional

from magickit.utils.config import get_settings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Client libraries that log every request at INFO
CHATTY_LOGGERS = ("httpx", "httpcore", "redis")


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging to stdout.

    Level defaults to the LOG_LEVEL setting.
    """
    level_name = (level or get_settings().LOG_LEVEL).upper()

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,  # Platforms often treat stderr as errors
        force=True,  # Override any existing config
    )

    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
