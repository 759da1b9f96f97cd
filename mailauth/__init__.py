"""
Mail authentication analyzer.

Parses SPF, DKIM and DMARC records into immutable results carrying derived
validity flags, and aggregates DMARC aggregate feedback reports per domain.
"""

from __future__ import annotations

import logging
import sys

from mailauth.config import Config

__version__ = "0.1.0"


def configure_logging(debug: bool = False, config: object = Config) -> None:
    """Configure the root logger for tools embedding the analyzer.

    Logging is sent to stdout so schedulers and containers capture it
    without file handlers.  Library modules only create named loggers and
    never call this themselves.

    Format: timestamp  level  logger-name  message

    Args:
        debug: When True, sets the root level to DEBUG.  Otherwise the
            level comes from ``config.LOG_LEVEL``.
        config: Configuration class or object to read LOG_LEVEL from.
    """
    if debug:
        level = logging.DEBUG
    else:
        level = logging.getLevelName(getattr(config, "LOG_LEVEL", "INFO"))
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)-8s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
    )

    root_logger = logging.getLogger()
    # Avoid adding duplicate handlers if called more than once (e.g. in tests)
    if not root_logger.handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)
