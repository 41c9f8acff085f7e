"""Structured logging for the relay and the supervised client processes."""

import logging
import sys

import structlog
from structlog.typing import Processor

CLIENT_OUTPUT_LOGGER = "vpn_relay.client_output"

# Libraries that log per request or per connection at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _processors(json_format: bool) -> list[Processor]:
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def _handler(handler: logging.Handler, level: int, fmt: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | None = None,
) -> None:
    """Configure structured logging for the relay.

    Relay events and client output lines both go to stdout. A log file, when
    given, receives the same records with a timestamped plain format.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Render records as JSON lines instead of console output
        log_file: Optional file path to copy records to
    """
    log_level = getattr(logging, level.upper())

    handlers = [_handler(logging.StreamHandler(sys.stdout), log_level, "%(message)s")]
    if log_file:
        handlers.append(_handler(logging.FileHandler(log_file), log_level, FILE_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=_processors(json_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def connection_log_sink(connection_id: str) -> structlog.stdlib.BoundLogger:
    """Logger that receives the client process output for one connection.

    Args:
        connection_id: Connection the output belongs to

    Returns:
        Logger bound to the connection name
    """
    return get_logger(CLIENT_OUTPUT_LOGGER).bind(connection=connection_id)
