"""Structured logging configuration using structlog.

Provides JSON-formatted logs with consistent context including:
- logger: Module that emitted the event
- level: Log level
- timestamp: ISO8601 formatted timestamp
- call_id: Correlation ID for one gateway call (when bound)

Usage:
    from llmgate.logging import get_logger, configure_logging

    # Configure once at startup (optional for library use)
    configure_logging()

    # Get a logger for a module
    logger = get_logger(__name__)
    logger.info("something_happened", extra_field="value")
"""

import logging
import sys
from contextvars import ContextVar

import structlog

# Correlation ID for the gateway call currently running in this context
call_id_var: ContextVar[str | None] = ContextVar("call_id", default=None)


def add_call_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Inject the bound call_id into every log entry."""
    call_id = call_id_var.get()
    if call_id and "call_id" not in event_dict:
        event_dict["call_id"] = call_id
    return event_dict


def configure_logging(json_format: bool | None = None, level: int = logging.INFO) -> None:
    """Configure structlog for the process.

    Args:
        json_format: If True, output JSON logs. If False, output console-friendly logs.
            None reads LLMGATE_LOG_JSON from settings.
        level: Root log level.
    """
    if json_format is None:
        from llmgate.config import get_settings

        json_format = get_settings().log_json

    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_call_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for the given name.

    Args:
        name: Logger name (typically __name__).

    Returns:
        A bound structlog logger.
    """
    return structlog.get_logger(name)
