"""
Structured Logging Configuration

This module configures structured logging using the 'structlog' library.
It sets up processors for adding timestamps, log levels, correlation IDs
(the connection key of the call being processed), and renders logs in JSON
(default) or colorized console format based on env.
"""

import contextvars
import logging
import os
import sys
import uuid
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler

import structlog
from structlog import dev as structlog_dev

# Context variable for correlation ID
correlation_id_var = contextvars.ContextVar('correlation_id', default=None)


def get_correlation_id():
    """Get the current correlation ID."""
    return correlation_id_var.get()


def set_correlation_id(value=None):
    """Set the correlation ID."""
    if value is None:
        value = str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


@contextmanager
def correlation_scope(value):
    """Bind a correlation ID for the duration of a block."""
    token = correlation_id_var.set(value)
    try:
        yield value
    finally:
        correlation_id_var.reset(token)


def add_correlation_id(logger, method_name, event_dict):
    """Add correlation ID to the log record."""
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict['correlation_id'] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    """Add service context to the log record."""
    event_dict['service'] = 'callbridge'
    # Handle different logger types that may not have a 'name' attribute
    try:
        event_dict['component'] = logger.name
    except AttributeError:
        event_dict.setdefault('component', 'unknown')
    return event_dict


def configure_logging(log_level="INFO", log_format="json", log_file=None):
    """
    Set up structured logging with enhanced context for troubleshooting.

    Environment overrides (optional):
      - LOG_LEVEL: debug|info|warning|error|critical (default: INFO)
      - LOG_FORMAT: json|console (default: json)
      - LOG_COLOR:  0|1 (console only; default: 1)
      - LOG_FILE_PATH: path (enables the rotating file handler)
    """
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        log_level = env_level.upper()
    log_file = os.getenv("LOG_FILE_PATH", log_file)
    log_format = os.getenv("LOG_FORMAT", log_format).strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")

    level = logging.getLevelName(str(log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        # Add service name and correlation ID
        add_service_context,
        add_correlation_id,
        # Render exceptions
        structlog.processors.format_exc_info,
    ]

    if log_format == "console":
        processors.append(structlog_dev.ConsoleRenderer(colors=log_color))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    # Set up root logger; structlog already renders the message
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_callbridge", False):
            root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    console_handler._callbridge = True
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10*1024*1024, backupCount=5
        )
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        file_handler._callbridge = True
        root_logger.addHandler(file_handler)

    # Reduce noisy third-party loggers
    logging.getLogger('redis').setLevel(logging.WARNING)
    logging.getLogger('pybreaker').setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
