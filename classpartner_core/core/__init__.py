"""Shared infrastructure: logging and events."""

from classpartner_core.core.events import EventEmitter
from classpartner_core.core.logging import get_logger, setup_logging

__all__ = ["EventEmitter", "get_logger", "setup_logging"]
