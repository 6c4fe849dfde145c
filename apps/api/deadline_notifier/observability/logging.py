"""
Structured logging for the deadline notifier.
JSON lines on stdout so scheduler and dispatch events can be alerted on.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
  structlog.configure(
    processors=[
      structlog.contextvars.merge_contextvars,
      structlog.stdlib.add_log_level,
      structlog.stdlib.add_logger_name,
      structlog.processors.TimeStamper(fmt="iso"),
      _drop_empty_fields,
      structlog.processors.format_exc_info,
      structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=LoggerFactory(),
    context_class=dict,
    cache_logger_on_first_use=True,
  )

  logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=getattr(logging, log_level.upper(), logging.INFO),
  )

  # Quiet chatty third-party loggers.
  logging.getLogger("httpx").setLevel(logging.WARNING)
  logging.getLogger("httpcore").setLevel(logging.WARNING)
  logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
  logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _drop_empty_fields(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
  return {k: v for k, v in event_dict.items() if v is not None}


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
  return structlog.get_logger(name)
