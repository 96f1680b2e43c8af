import logging
import sys
from typing import Optional
from functools import lru_cache

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "yfinance", "peewee")

def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure application-wide logging.

    When no level is given the ``log_level`` setting is used.
    """
    if level is None:
        from papertrader.config import get_settings
        level = get_settings().log_level

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger

@lru_cache()
def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance for a module."""
    if name is None:
        name = "papertrader"
    return logging.getLogger(name)
