"""
Logging configuration using structlog.
Provides structured logging with JSON output for production.
"""

import logging
import sys

import structlog
from structlog.types import Processor

from handoff_hub.config import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structured logging."""
    settings = settings or get_settings()
    
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    
    # Configure standard library logging (uvicorn, httpx)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    
    if settings.environment == "production":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
