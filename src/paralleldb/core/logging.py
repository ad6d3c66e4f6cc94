"""structlog configuration shared by the CLI and the API server."""

import logging

import structlog

from ..config import get_settings


def configure_logging() -> None:
    """Configure stdlib logging and structlog from settings."""
    settings = get_settings()
    level = getattr(logging, settings.logging.level)

    logging.basicConfig(
        format="%(message)s",
        level=level,
    )

    if settings.logging.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
