"""Logging setup.

Operational warnings go through stdlib ``logging``; billing events
(admission decisions, settlements, fallbacks) go through structlog with
semantic keys so the collaborator that owns the sink can route them.
"""

import logging

import structlog

from tollbooth.core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog processors.

    Args:
        settings: Application settings (log level, JSON rendering).
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
