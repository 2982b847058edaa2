"""structlog setup for the API process."""

import logging
import os
import sys

import structlog

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


def configure_logging(level: str | None = None, format: str | None = None) -> None:
    """Route structlog events through stdlib logging on stdout.

    ``level`` falls back to LOG_LEVEL, then INFO. ``format`` is ``json`` or
    ``console`` and falls back to LOG_FORMAT, then console.
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if log_level not in LOG_LEVELS:
        log_level = "INFO"
    as_json = (format or os.getenv("LOG_FORMAT", "console")) == "json"

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if as_json else structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
