"""
Logging Configuration

Every component logs either through a stdlib `logging.getLogger(__name__)`
logger or a structlog bound logger. Both end up on one root handler whose
`structlog.stdlib.ProcessorFormatter` renders them identically, so a
`deepgram_connected model=nova-2` event and a plain "Session started"
line share timestamps, levels and output format.
"""

import logging
import os
import sys
from enum import Enum
from typing import Any, Dict, List, Optional, TextIO

import structlog


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    PRETTY = "pretty"
    SIMPLE = "simple"


DEFAULT_LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEFAULT_LOG_FORMAT = os.getenv("LOG_FORMAT", "pretty")
SERVICE_NAME = "classpartner"

# Chatty dependencies, capped at WARNING whatever the requested level
QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "websockets",
    "asyncio",
    "aiosqlite",
    "sqlalchemy.engine",
    "sentence_transformers",
)


def add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _shared_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(format: str) -> List[Any]:
    if format == LogFormat.JSON:
        return [
            add_service,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    if format == LogFormat.PRETTY:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [
        structlog.processors.format_exc_info,
        structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "logger", "event"]),
    ]


def build_formatter(format: str) -> structlog.stdlib.ProcessorFormatter:
    """Formatter rendering stdlib and structlog records in `format`."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_renderer(format),
        ],
    )


def setup_logging(
    level: str = DEFAULT_LOG_LEVEL,
    format: str = DEFAULT_LOG_FORMAT,
    service_name: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json, pretty, simple)
        service_name: Service name stamped on JSON entries
        stream: Output stream, stdout by default
    """
    global SERVICE_NAME

    if service_name:
        SERVICE_NAME = service_name

    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(build_formatter(format))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, numeric_level))

    logging.getLogger(__name__).debug(
        "Logging configured", extra={"level": level, "format": format}
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger bound to `name`."""
    return structlog.get_logger(name)


__all__ = [
    "LogFormat",
    "build_formatter",
    "setup_logging",
    "get_logger",
]
