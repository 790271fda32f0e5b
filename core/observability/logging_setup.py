"""
Rental Core Logging Setup

Stdlib logging with one format for the whole process. Every record carries
the current request id (set by RequestContextMiddleware) so log lines from a
single HTTP call or sweep can be grepped together.
"""
from __future__ import annotations
from contextvars import ContextVar
import logging
import os

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


def get_request_id() -> str:
    return _request_id.get()


def set_request_id(value: str):
    """Set the id for the current context; returns a token for reset."""
    return _request_id.set(value)


def reset_request_id(token) -> None:
    _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    """Stamp records with the request id from the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger once; safe to call repeatedly."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers:
        if getattr(handler, "_rental_handler", False):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._rental_handler = True
    root.addHandler(handler)
