"""Structured logging setup shared by the API and the worker."""

import logging
import sys

import structlog

from pdfdeck.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure structured logging with structlog."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Set up standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # Reduce noise from SDK internals
    for name in ("botocore", "boto3", "urllib3", "openai", "httpx"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if settings.log_level.upper() == "DEBUG":
        renderers = [structlog.dev.ConsoleRenderer()]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderers,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
