"""JSON logging for the gradebook.

Every module obtains its logger through :func:`get_logger`. Records are
written to stdout as one JSON object per line. While a request is being
served the correlation id, the caller's teacher id and role, and the
request timings live in a context variable and are copied onto every record
emitted for that request.

Identifiers that matter when tracing a mark submission (``assessment_id``,
``submission_id``, ``class_id``) are lifted out of ``extra`` onto the top
level of the record; everything else passed in ``extra`` lands under
``context`` after sensitive keys have been masked.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
import time
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

_request_state: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("request_state")

MASK = "[REDACTED]"
DEFAULT_SENSITIVE_FIELDS = "password,token,email,phone,dateOfBirth,date_of_birth"

# Order of keys in every emitted record.
RECORD_FIELDS = (
    "ts",
    "level",
    "logger",
    "msg",
    "request_id",
    "teacher_id",
    "role",
    "method",
    "path",
    "route",
    "status",
    "duration_ms",
    "db_time_ms",
    "assessment_id",
    "submission_id",
    "class_id",
    "error_type",
    "error",
    "stack",
    "context",
)

_LIFTED_FIELDS = frozenset(RECORD_FIELDS) - {"ts", "level", "logger", "msg", "stack", "context"}

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

def get_request_context() -> Dict[str, Any]:
    return _request_state.get({})


def merge_request_context(**values: Any) -> None:
    """Add values to the request context; ``None`` values are skipped."""

    state = dict(get_request_context())
    state.update({key: value for key, value in values.items() if value is not None})
    _request_state.set(state)


def clear_request_context() -> None:
    _request_state.set({})


def get_request_id() -> Optional[str]:
    """Correlation id of the request being served, if any."""
    return get_request_context().get("request_id")


def set_request_id(request_id: str) -> None:
    merge_request_context(request_id=request_id)


def clear_request_id() -> None:
    state = dict(get_request_context())
    state.pop("request_id", None)
    _request_state.set(state)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

def sensitive_fields() -> frozenset:
    raw = os.environ.get("SENSITIVE_FIELDS", DEFAULT_SENSITIVE_FIELDS)
    return frozenset(name.strip().lower() for name in raw.split(",") if name.strip())


def redact_sensitive_data(data: Any, fields: Optional[Iterable[str]] = None) -> Any:
    """Mask values stored under sensitive keys, at any depth.

    Keys match case-insensitively. Teacher payloads carry e-mail addresses
    and student payloads dates of birth; both go through here before they
    reach a log record.
    """

    names = sensitive_fields() if fields is None else frozenset(f.lower() for f in fields)
    if isinstance(data, dict):
        return {key: MASK if str(key).lower() in names else redact_sensitive_data(value, names)
                for key, value in data.items()}
    if isinstance(data, (list, tuple, set)):
        return [redact_sensitive_data(item, names) for item in data]
    return data


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _encode(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


class JSONFormatter(logging.Formatter):
    """Render a record as one line of JSON with a fixed key order."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = dict.fromkeys(RECORD_FIELDS)
        entry.update(
            ts=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"),
            level=record.levelname,
            logger=record.name,
            msg=record.getMessage(),
        )
        for key, value in get_request_context().items():
            if key in _LIFTED_FIELDS:
                entry[key] = value

        context: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in _LIFTED_FIELDS:
                if value is not None:
                    entry[key] = value
            else:
                context[key] = value
        if context:
            entry["context"] = redact_sensitive_data(context)

        if record.exc_info and record.exc_info[0] is not None:
            entry["error_type"] = record.exc_info[0].__name__
            entry["error"] = str(record.exc_info[1])
            entry["stack"] = self.formatException(record.exc_info)
        elif record.stack_info:
            entry["stack"] = record.stack_info

        return json.dumps(entry, default=_encode, separators=(",", ":"))


_handler: Optional[logging.Handler] = None


def configure_logging(level: Optional[str] = None) -> None:
    """Install the JSON handler on the root logger once; later calls only adjust the level.

    ``level`` falls back to the ``LOG_LEVEL`` environment variable.
    """

    global _handler
    root = logging.getLogger()
    if _handler is None:
        _handler = logging.StreamHandler(stream=sys.stdout)
        _handler.setFormatter(JSONFormatter())
        root.handlers = [_handler]
        logging.captureWarnings(True)
        # The request middleware writes its own access records.
        for name in ("werkzeug", "gunicorn.access", "gunicorn.error"):
            server_logger = logging.getLogger(name)
            server_logger.handlers = []
            server_logger.propagate = True
            server_logger.setLevel(logging.WARNING)
    name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, name, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    if _handler is None:
        configure_logging()
    return logging.getLogger(name)


class DBTimer:
    """Add the time spent inside the block to the request's ``db_time_ms``.

    Several store calls in one request accumulate.
    """

    def __enter__(self) -> "DBTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        elapsed = (time.perf_counter() - self._start) * 1000
        total = get_request_context().get("db_time_ms") or 0.0
        merge_request_context(db_time_ms=round(total + elapsed, 2))


__all__ = [
    "DBTimer",
    "JSONFormatter",
    "RECORD_FIELDS",
    "clear_request_context",
    "clear_request_id",
    "configure_logging",
    "get_logger",
    "get_request_context",
    "get_request_id",
    "merge_request_context",
    "redact_sensitive_data",
    "sensitive_fields",
    "set_request_id",
]
