"""
Logging configuration for the API.

Stdlib loggers and structlog loggers share one structlog ProcessorFormatter, so
every line carries the request_id / user_id that RequestLoggingMiddleware binds
through structlog.contextvars, rendered as JSON or as console text.

Usage:
    # Request-scoped code can also use the contextual logger for a readable prefix:
    from middleware.logging_middleware import get_logger
    logger = get_logger(__name__)

    logger.info("[Render] Upstream call complete")  # -> "[a1b2c3d4] [Render] Upstream call complete"

    # Everything else uses standard logging:
    import logging
    logger = logging.getLogger(__name__)
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from core.config import settings

LOG_DIR = Path("logs")
MAX_LOG_BYTES = 10 * 1024 * 1024

NOISY_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore", "openai", "PIL", "sqlalchemy.engine")

# Runs on stdlib records before rendering; structlog events get the same steps in configure()
PRE_CHAIN = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def build_formatter(json_output: bool, colors: bool = False) -> structlog.stdlib.ProcessorFormatter:
    """Formatter that renders any log record together with the bound request context."""
    processors = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=colors, exception_formatter=structlog.dev.plain_traceback)
        )
    return structlog.stdlib.ProcessorFormatter(foreign_pre_chain=PRE_CHAIN, processors=processors)


def _rotating_handler(filename: str, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(LOG_DIR / filename, maxBytes=MAX_LOG_BYTES, backupCount=5)
    handler.setLevel(level)
    handler.setFormatter(build_formatter(json_output=True))
    return handler


def setup_logging():
    """Configure logging for the application."""

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    json_output = settings.log_format == "json"

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *PRE_CHAIN,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(build_formatter(json_output, colors=not json_output and sys.stdout.isatty()))
    root_logger.addHandler(console_handler)

    # Render failures are easier to chase from a file on the box
    if settings.environment == "production":
        LOG_DIR.mkdir(exist_ok=True)
        root_logger.addHandler(_rotating_handler("render_api.log", logging.DEBUG))
        root_logger.addHandler(_rotating_handler("render_api_errors.log", logging.ERROR))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured: level={settings.log_level}, format={settings.log_format}, env={settings.environment}")
