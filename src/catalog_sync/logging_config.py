"""structlog configuration shared by the API and the sync worker."""

import structlog

from catalog_sync.config import get_settings


def configure_logging() -> None:
    """Configure structlog processors and the filtering level."""
    settings = get_settings()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        # JSON output needs tracebacks rendered to strings first
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
