"""Logging configuration."""

import logging
from typing import Optional

from hotwallet.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty at INFO
_NOISY = ("httpx", "httpcore", "aiohttp", "aiosqlite", "sqlalchemy.engine")


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure the root logger from settings (DEBUG when ``debug`` is set)."""
    settings = settings or get_settings()
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    for name in _NOISY:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
