"""Per-request correlation id and caller identity.

The upstream identity provider authenticates callers and forwards the
teacher id and role as headers; both are merged into the logging context
next to the correlation id so every record of a request can be attributed.
"""

from __future__ import annotations

import uuid
from typing import Optional

from flask import Flask, g, request

from app_logging import clear_request_context, clear_request_id, merge_request_context, set_request_id
from domain import Role, is_valid_identity

HEADER_NAME = "X-Request-ID"
TEACHER_HEADER = "X-Teacher-ID"
ROLE_HEADER = "X-User-Role"


def _header(name: str) -> Optional[str]:
    value = request.headers.get(name, "").strip()
    return value or None


def caller_role() -> Role:
    """Role claimed by the caller; an absent or unknown claim means a plain teacher."""

    try:
        return Role(_header(ROLE_HEADER) or Role.TEACHER.value)
    except ValueError:
        return Role.TEACHER


def caller_teacher_id() -> Optional[str]:
    return _header(TEACHER_HEADER)


def init_correlation_id(app: Flask) -> None:
    """Register handlers that attach a correlation id and caller identity to each request."""

    @app.before_request
    def _assign_request_id() -> None:
        request_id = _header(HEADER_NAME) or str(uuid.uuid4())
        set_request_id(request_id)
        teacher_id = caller_teacher_id()
        merge_request_context(
            teacher_id=teacher_id if is_valid_identity(teacher_id) else None,
            role=caller_role().value,
        )
        g.request_id = request_id

    @app.after_request
    def _append_request_id(response):
        request_id = getattr(g, "request_id", None) or _header(HEADER_NAME)
        if request_id:
            response.headers[HEADER_NAME] = request_id
        return response

    @app.teardown_request
    def _teardown_request(_exc):
        clear_request_id()
        clear_request_context()


__all__ = ["HEADER_NAME", "ROLE_HEADER", "TEACHER_HEADER", "caller_role", "caller_teacher_id",
           "init_correlation_id"]
