from __future__ import annotations

import logging
import os
import sys

import structlog

_configured = False

def configure_logging(level: str | None = None, *, json: bool = False) -> None:
    """
    One-time structlog setup for the runnable entry point.
    Library code only calls structlog.get_logger(...) and never configures.
    """
    global _configured
    if _configured:
        return
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    lvl = logging.getLevelName(level_name)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    _configured = True
