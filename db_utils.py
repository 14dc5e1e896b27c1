"""Database resilience helpers."""

from __future__ import annotations

import functools
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from app_logging import DBTimer, get_logger
from models import db
from results import STORE_UNAVAILABLE, ActionResult

T = TypeVar("T")

_logger = get_logger("gradecentral.db")


def retry_with_backoff(func: Callable[[], T], attempts: int = 3, base_delay: float = 0.1,
                       max_total_delay: float = 2.0) -> T:
    """Call ``func`` until it stops raising ``SQLAlchemyError``, doubling the pause each time.

    Only used at start-up (table creation); request handlers do not retry.
    Pauses never add up to more than ``max_total_delay`` seconds. The last
    error is re-raised once the attempts are spent.
    """

    slept = 0.0
    attempt = 1
    while True:
        try:
            return func()
        except SQLAlchemyError as exc:
            _logger.warning("store not ready", extra={"attempt": attempt, "error": str(exc)})
            pause = min(base_delay * 2 ** (attempt - 1), max_total_delay - slept)
            if attempt >= attempts or pause <= 0:
                raise
        time.sleep(pause)
        slept += pause
        attempt += 1


def store_action(description: str) -> Callable[[Callable[..., ActionResult]], Callable[..., ActionResult]]:
    """Turn store failures of a mutating service call into a failed result.

    The session is rolled back and the error logged; the caller receives
    ``ActionResult(success=False, kind="store_unavailable")`` instead of an
    exception.
    """

    def decorator(func: Callable[..., ActionResult]) -> Callable[..., ActionResult]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> ActionResult:
            try:
                with DBTimer():
                    return func(*args, **kwargs)
            except SQLAlchemyError as exc:
                db.session.rollback()
                _logger.error("store operation failed", exc_info=True,
                              extra={"operation": func.__name__})
                return ActionResult.fail(f"Failed to {description}: {exc}", kind=STORE_UNAVAILABLE)
        return wrapper
    return decorator


__all__ = ["retry_with_backoff", "store_action"]
