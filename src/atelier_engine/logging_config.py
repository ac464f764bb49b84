"""Structured logging configuration using structlog.

JSON output in production, colored console output in development. Every
entry carries the request_id bound by the API middleware so a single order
action can be followed through payment, generation and settlement.

Usage:
    from atelier_engine.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("order.paid", order_id="abc-123", tx_hash="0x...")
"""

from __future__ import annotations

import logging
import sys
import uuid
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

REDACTED = "***"
_SECRET_SUFFIXES = ("api_key", "api_key_id", "_secret", "authorization", "password")


def render_money_and_ids(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Log USDC amounts as exact decimal strings and ids/enums as plain text.

    JSONRenderer would otherwise fall back to repr(), e.g. "Decimal('5.50')".
    """
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = format(value, "f")
        elif isinstance(value, uuid.UUID):
            event_dict[key] = str(value)
        elif isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def redact_secrets(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask provider API keys and CDP wallet credentials if one is ever logged."""
    for key in event_dict:
        if key.lower().endswith(_SECRET_SUFFIXES) and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog with shared processors.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON (for production). If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        render_money_and_ids,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    # Provider SDKs and HTTP clients are chatty at DEBUG
    for noisy_logger in (
        "uvicorn.access",
        "sqlalchemy.engine",
        "httpx",
        "httpcore",
        "LiteLLM",
        "aiosqlite",
    ):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Optional logger name. If None, uses the calling module's name.

    Returns:
        A bound structlog logger with context variable support.
    """
    return structlog.get_logger(name)
