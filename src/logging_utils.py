"""Correlation ID based logging utilities for tracing a deal through its lifecycle.

Every log record carries the request correlation ID and, when known, the
conversation the deal lives in, so that an offer, the payment and the final
confirmation of one delivery can be followed in the logs.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variables for the current request/task
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
conversation_id_var: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)


class CorrelationIdFilter(logging.Filter):
    """Add correlation and conversation IDs to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "no-correlation-id"
        record.conversation_id = conversation_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", '
            '"conversation_id": "%(conversation_id)s", "name": "%(name)s", '
            '"message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] [%(conversation_id)s] "
            "%(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        A new UUID-based correlation ID.
    """
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class CorrelationIdContext:
    """Context manager scoping a correlation ID (and optionally a conversation) to a block."""

    def __init__(self, correlation_id: Optional[str] = None, conversation_id: Optional[str] = None):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
            conversation_id: Conversation the block operates on, if any.
        """
        self.correlation_id = correlation_id or generate_correlation_id()
        self.conversation_id = conversation_id
        self._tokens = []

    def __enter__(self) -> str:
        self._tokens.append((correlation_id_var, correlation_id_var.set(self.correlation_id)))
        if self.conversation_id:
            self._tokens.append((conversation_id_var, conversation_id_var.set(self.conversation_id)))
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
