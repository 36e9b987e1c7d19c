"""Logging setup: a human-readable console stream and a JSON-lines file.

Request-scoped values (request id, calling user) live in context variables
and are stamped onto every record by ``RequestContextFilter`` so that log
lines emitted deep inside the key selector still carry them.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import pathlib
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent

_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_user_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("user_id", default=None)
_CONTEXT = {"request_id": _request_id, "user_id": _user_id}

# Field names that are masked even when a caller passes them through ``extra``.
_SECRET_FIELDS = frozenset({"api_key", "secret", "authorization", "x-goog-api-key"})

# Attributes every LogRecord carries; anything else came from ``extra``.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

_configured = False


class RequestContextFilter(logging.Filter):
    """Copy the bound request id and user id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT.items():
            setattr(record, name, var.get())
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_") or value is None:
                continue
            payload[key] = "***" if key.lower() in _SECRET_FIELDS else value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def set_request_id(request_id: str | None) -> contextvars.Token[str | None]:
    """Bind the current request ID to the logging context."""
    return _request_id.set(request_id)


def reset_request_id(token: contextvars.Token[str | None]) -> None:
    _request_id.reset(token)


def get_request_id() -> str | None:
    return _request_id.get()


def set_user_id(user_id: str | None) -> contextvars.Token[str | None]:
    """Bind the calling user to the logging context."""
    return _user_id.set(user_id)


def reset_user_id(token: contextvars.Token[str | None]) -> None:
    _user_id.reset(token)


def get_user_id() -> str | None:
    return _user_id.get()


def _log_file_path() -> pathlib.Path:
    path = pathlib.Path(os.getenv("LOG_FILE", "logs/chatdesk.jsonl"))
    if not path.is_absolute():
        path = BASE_DIR.parent / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _console_handler(context_filter: logging.Filter) -> logging.Handler:
    level_name = os.getenv("LOG_LEVEL", "WARNING").upper()
    handler = logging.StreamHandler()
    handler.setLevel(getattr(logging, level_name, logging.WARNING))
    handler.addFilter(context_filter)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s "
            "(request_id=%(request_id)s user_id=%(user_id)s)"
        )
    )
    return handler


def _file_handler(context_filter: logging.Filter) -> logging.Handler:
    handler = RotatingFileHandler(_log_file_path(), maxBytes=10_000_000, backupCount=5)
    handler.setLevel(logging.INFO)
    handler.addFilter(context_filter)
    handler.setFormatter(JsonFormatter())
    return handler


def configure_logging() -> None:
    """Install the console and file handlers on the root logger, once per process."""
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    context_filter = RequestContextFilter()
    root.addHandler(_console_handler(context_filter))
    root.addHandler(_file_handler(context_filter))

    for noisy in ("uvicorn", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True


__all__ = [
    "configure_logging",
    "get_request_id",
    "get_user_id",
    "reset_request_id",
    "reset_user_id",
    "set_request_id",
    "set_user_id",
]
