"""Value types shared by the grading engine and the services.

These are deliberately free of any database dependency so the pure engine
modules (``responsibilities``, ``reconciler``, ``anomalies``) can be driven
from fixtures.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import List, NamedTuple, Optional

from grading import GradingScaleItem

# Literal placeholder some clients send when the auth provider had no uid.
UNDEFINED_ID = "undefined"


class Role(str, enum.Enum):
    TEACHER = "teacher"
    DOS = "dos"
    ADMIN = "admin"


class DosStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"


class AssessmentKey(NamedTuple):
    """One (exam, class, subject) obligation.

    Persisted as ``"<examId>_<classId>_<subjectId>"``; identifiers therefore
    must not contain underscores.
    """

    exam_id: str
    class_id: str
    subject_id: str

    @property
    def composite(self) -> str:
        return f"{self.exam_id}_{self.class_id}_{self.subject_id}"

    @classmethod
    def parse(cls, composite: str) -> Optional["AssessmentKey"]:
        parts = (composite or "").split("_")
        if len(parts) != 3 or not all(parts):
            return None
        return cls(*parts)

    def __str__(self) -> str:
        return self.composite


@dataclass
class SubjectAssignment:
    subject_id: str
    class_ids: List[str] = field(default_factory=list)


@dataclass
class SystemContext:
    """Singleton settings threaded explicitly into the engine.

    Built once per service call from ``GeneralSettings``; the engine never
    re-reads ambient state.
    """

    current_term_id: Optional[str] = None
    default_scale: List[GradingScaleItem] = field(default_factory=list)
    global_deadline: Optional[date] = None
    is_default_template: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.current_term_id) and not self.is_default_template


def is_valid_identity(teacher_id: Optional[str]) -> bool:
    """The caller id must be present, non-blank and not the literal ``"undefined"``."""

    if not isinstance(teacher_id, str):
        return False
    stripped = teacher_id.strip()
    return bool(stripped) and stripped != UNDEFINED_ID
