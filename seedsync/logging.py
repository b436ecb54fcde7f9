from __future__ import annotations

import logging
import sys

import structlog

from seedsync.settings import SETTINGS


def configure_logging(log_level: str | None = None) -> None:
    """Route seedsync events to stdout as JSON; the level defaults to SETTINGS.log_level."""
    level = (log_level or SETTINGS.log_level).upper()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger("seedsync")
