"""
Structured logging for the upload service.

Configures structlog on top of the standard library ``logging`` module with a
JSON renderer for production and a console renderer for development, and
installs Flask request hooks that bind a correlation id to every log event
emitted while a request is handled.
"""

import logging
import logging.config
import time
import uuid
from typing import Optional

import structlog
from flask import Flask, g, request

logger = structlog.get_logger(__name__)

CORRELATION_HEADER = 'X-Correlation-ID'


def configure_logging(log_level: str = 'INFO', log_format: str = 'json') -> None:
    """
    Configure structlog and stdlib logging.

    Args:
        log_level: Root log level name
        log_format: ``json`` or ``console``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == 'console':
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'plain': {'format': '%(message)s'},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            },
        },
        'root': {
            'handlers': ['console'],
            'level': log_level.upper(),
        },
    })

    logger.info("Structured logging initialized", log_level=log_level, log_format=log_format)


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get('correlation_id')


def init_request_logging(app: Flask) -> None:
    """
    Register request hooks binding a correlation id and logging request timing.

    The id comes from the ``X-Correlation-ID`` header when present and is
    echoed back on the response.
    """

    @app.before_request
    def bind_request_context():
        structlog.contextvars.clear_contextvars()
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.path,
        )
        g.request_started = time.perf_counter()

    @app.after_request
    def log_request(response):
        started = g.get('request_started')
        duration_ms = (time.perf_counter() - started) * 1000 if started else 0.0

        logger.info(
            "Request completed",
            endpoint=request.endpoint,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        correlation_id = get_correlation_id()
        if correlation_id:
            response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.teardown_request
    def clear_request_context(exc):
        structlog.contextvars.clear_contextvars()
