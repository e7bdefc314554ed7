"""
Logging for the checkout service.

Modules take a logger with ``get_logger(__name__)``. Ids and strings that
come from webhook input go through the sanitisers before they reach a log
line: the gateway's callback is unauthenticated until the token check.
"""

import logging
import os
import sys
from functools import cache

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
# The platform stamps each line in production
LOG_FORMAT_SIMPLE = "%(levelname)s - %(name)s - %(message)s"

# Every gateway and Supabase request is an httpx request line at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "httpcore.http11", "httpcore.connection")

_ESCAPES = str.maketrans({"\n": "\\n", "\r": "\\r", "\t": "\\t", "\x00": ""})


def _get_log_level() -> int:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def _configure_root_logger() -> None:
    """Attach one stdout handler, unless the host (uvicorn, pytest) already did."""
    root = logging.getLogger()
    if root.handlers:
        return

    level = _get_log_level()
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    production = os.environ.get("APP_ENV", "").lower() == "production"
    handler.setFormatter(logging.Formatter(LOG_FORMAT_SIMPLE if production else LOG_FORMAT))
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


_configure_root_logger()


@cache
def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _escape_log_injection(value: str) -> str:
    """Keep one log record on one line: escape CR/LF/tab, drop NUL."""
    return value.translate(_ESCAPES)


def sanitize_id_for_logging(id_value: str | None) -> str:
    """Session, invoice or payment id cut to its first 8 characters ("N/A" when empty)."""
    if not id_value:
        return "N/A"
    return _escape_log_injection(str(id_value))[:8]


def sanitize_string_for_logging(value: str | None, max_length: int = 50) -> str:
    """Free text from a webhook body, escaped and cut to ``max_length`` with an ellipsis."""
    if not value:
        return "N/A"
    safe_value = _escape_log_injection(str(value))
    if len(safe_value) <= max_length:
        return safe_value
    return safe_value[:max_length] + "..."


__all__ = [
    "LOG_FORMAT",
    "LOG_FORMAT_SIMPLE",
    "get_logger",
    "sanitize_id_for_logging",
    "sanitize_string_for_logging",
]
