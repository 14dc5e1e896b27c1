"""Uniform result types returned across the service boundary.

Service operations never raise to their callers. Mutations return an
:class:`ActionResult`; batch folds that skip unresolvable items return a
:class:`BatchResult` so the skipped entries stay inspectable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

VALIDATION = "validation"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
STORE_UNAVAILABLE = "store_unavailable"


@dataclass
class ActionResult:
    success: bool
    message: str
    data: Any = None
    errors: Optional[Dict[str, str]] = None
    kind: Optional[str] = None

    @classmethod
    def ok(cls, message: str, data: Any = None) -> "ActionResult":
        return cls(True, message, data=data)

    @classmethod
    def fail(cls, message: str, kind: str = VALIDATION,
             errors: Optional[Dict[str, str]] = None) -> "ActionResult":
        return cls(False, message, errors=errors, kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        if self.errors:
            payload["errors"] = self.errors
        return payload


@dataclass(frozen=True)
class SkipReason:
    """Why an item was left out of a batch (e.g. its exam was deleted)."""

    key: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "reason": self.reason}


@dataclass
class BatchResult(Generic[T]):
    succeeded: List[T] = field(default_factory=list)
    skipped: List[SkipReason] = field(default_factory=list)

    def skip(self, key: str, reason: str) -> None:
        self.skipped.append(SkipReason(key, reason))


__all__ = [
    "ActionResult",
    "BatchResult",
    "CONFLICT",
    "NOT_FOUND",
    "STORE_UNAVAILABLE",
    "SkipReason",
    "VALIDATION",
]
