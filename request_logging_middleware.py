"""Access logging for the gradebook API.

Each sampled request produces a ``request_start`` and a ``request_end``
record. The assessment or submission a request acts on is copied into the
logging context so service-level records of the same request carry it too.
"""

from __future__ import annotations

import json
import random
import time
from typing import Any, Dict, Optional

from flask import Flask, Response, current_app, g, request

from app_logging import get_logger, merge_request_context, redact_sensitive_data

_access_logger = get_logger("gradecentral.request")

_UNLOGGED_PATHS = frozenset({"/health"})


def _sampled() -> bool:
    if request.path in _UNLOGGED_PATHS:
        return False
    rate = current_app.config.get("REQUEST_LOG_SAMPLE_RATE", 1.0)
    return rate >= 1.0 or random.random() < rate


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() if forwarded else (request.remote_addr or "unknown")


def _subject_ids(body: Any) -> Dict[str, Optional[str]]:
    """Assessment, submission and class the request refers to, when it names them."""

    view_args = request.view_args or {}
    ids = {
        "assessment_id": view_args.get("assessment_id"),
        "submission_id": view_args.get("submission_id"),
        "class_id": request.args.get("classId"),
    }
    if isinstance(body, dict):
        ids["assessment_id"] = ids["assessment_id"] or body.get("assessmentId")
        ids["class_id"] = ids["class_id"] or body.get("classId")
    return ids


def _summarise_body(body: Any) -> Any:
    # Mark and attendance lists are reduced to their length.
    if not isinstance(body, dict):
        return body
    summary = dict(body)
    for key in ("marks", "records"):
        if isinstance(summary.get(key), list):
            summary[key] = f"<{len(summary[key])} entries>"
    return redact_sensitive_data(summary)


def _response_excerpt(response: Response) -> Optional[str]:
    limit = current_app.config.get("RESPONSE_BODY_MAX_BYTES", 2048)
    if not limit or response.direct_passthrough or not response.is_json:
        return None
    try:
        text = json.dumps(redact_sensitive_data(response.get_json()))
    except ValueError:
        return None
    if len(text) > limit:
        return f"{text[:limit]}... truncated {len(text) - limit} bytes"
    return text


def init_request_logging(app: Flask) -> None:
    """Register the ``request_start`` / ``request_end`` hooks on ``app``."""

    @app.before_request
    def _start() -> None:
        g._request_start = time.perf_counter()
        g._log_request = _sampled()
        body = request.get_json(silent=True) if request.method in {"POST", "PUT"} else None
        merge_request_context(
            method=request.method,
            path=request.path,
            route=request.url_rule.rule if request.url_rule else None,
            **_subject_ids(body),
        )
        if g._log_request:
            payload: Dict[str, Any] = {}
            if request.args:
                payload["query"] = redact_sensitive_data(request.args.to_dict(flat=False))
            if body is not None:
                payload["json"] = _summarise_body(body)
            _access_logger.info("request_start", extra={
                "event": "request_start",
                "client_ip": _client_ip(),
                "user_agent": request.headers.get("User-Agent"),
                "request_payload": payload,
            })

    @app.after_request
    def _end(response: Response) -> Response:
        started = getattr(g, "_request_start", None)
        merge_request_context(
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2) if started else None,
        )
        if getattr(g, "_log_request", False):
            log = _access_logger.warning if response.status_code >= 500 else _access_logger.info
            log("request_end", extra={"event": "request_end",
                                      "response_body": _response_excerpt(response)})
        return response


__all__ = ["init_request_logging"]
