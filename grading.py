"""Grading-scale resolution.

Turns a raw score into a grade symbol by looking its percentage up in an
ordered list of score-range tiers. Resolution runs inside report rendering,
so it never raises: missing input yields ``"N/A"`` and a score that falls in
a gap between tiers yields ``"Ungraded"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

NOT_AVAILABLE = "N/A"
UNGRADED = "Ungraded"

GRADE_DESCRIPTORS = {
    "A": "Achieved extraordinary level of competencies.",
    "B": "Achieved good level of competencies.",
    "C": "Achieved adequate level of competencies.",
    "D": "Achieved minimum level of competencies.",
    "E": "Achieved basic level of competencies.",
}
UNKNOWN_DESCRIPTOR = "Competency level not specified."

# Template scale stored when the general settings have never been saved.
TEMPLATE_SCALE = (
    {"grade": "A", "minScore": 80, "maxScore": 100},
    {"grade": "B", "minScore": 70, "maxScore": 79},
)


@dataclass(frozen=True)
class GradingScaleItem:
    grade: str
    min_score: float
    max_score: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GradingScaleItem":
        return cls(
            grade=str(data["grade"]),
            min_score=float(data["minScore"]),
            max_score=float(data["maxScore"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"grade": self.grade, "minScore": self.min_score, "maxScore": self.max_score}

    def covers(self, percentage: float) -> bool:
        return self.min_score <= percentage <= self.max_score


def scale_from_json(raw: Optional[Iterable[Mapping[str, Any]]]) -> List[GradingScaleItem]:
    """Build scale items from stored JSON, dropping malformed tiers."""

    items = []
    for entry in raw or ():
        try:
            items.append(GradingScaleItem.from_dict(entry))
        except (KeyError, TypeError, ValueError):
            continue
    return items


def scale_to_json(scale: Iterable[GradingScaleItem]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in scale]


def resolve_grade(score: Optional[float], max_marks: Optional[float],
                  scale: Sequence[GradingScaleItem]) -> str:
    """Return the grade for ``score`` out of ``max_marks``.

    The first tier (in declaration order) whose inclusive range contains the
    percentage wins.
    """

    if score is None or not max_marks or not scale:
        return NOT_AVAILABLE
    percentage = score / max_marks * 100
    for tier in scale:
        if tier.covers(percentage):
            return tier.grade
    return UNGRADED


def grade_descriptor(grade: str) -> str:
    return GRADE_DESCRIPTORS.get(grade, UNKNOWN_DESCRIPTOR)


def validate_scale(raw: Any) -> Dict[str, str]:
    """Validate a submitted scale; return field-level messages (empty when valid).

    Bounds are rejected, never clamped.
    """

    errors: Dict[str, str] = {}
    if not isinstance(raw, list) or not raw:
        return {"scale": "A grading scale needs at least one tier."}
    for index, entry in enumerate(raw):
        prefix = f"scale[{index}]"
        if not isinstance(entry, Mapping):
            errors[prefix] = "Each tier must be an object."
            continue
        grade = entry.get("grade")
        if not isinstance(grade, str) or not grade.strip():
            errors[f"{prefix}.grade"] = "Grade symbol is required."
        try:
            low = float(entry.get("minScore"))
            high = float(entry.get("maxScore"))
        except (TypeError, ValueError):
            errors[f"{prefix}.minScore"] = "Minimum and maximum scores must be numbers."
            continue
        if not 0 <= low <= 100:
            errors[f"{prefix}.minScore"] = "Minimum score must be between 0 and 100."
        if not 0 <= high <= 100:
            errors[f"{prefix}.maxScore"] = "Maximum score must be between 0 and 100."
        if low > high:
            errors[f"{prefix}.minScore"] = "Minimum score cannot be greater than maximum score."
    return errors


def scale_for_exam(exam, policies, default_scale: Sequence[GradingScaleItem]) -> List[GradingScaleItem]:
    """Pick the scale used to grade marks of ``exam``.

    The exam's own policy comes first, then the policy flagged default, then
    the scale kept in the general settings.
    """

    by_id = {policy.id: policy for policy in policies}
    policy_id = getattr(exam, "grading_policy_id", None) if exam is not None else None
    if policy_id and policy_id in by_id:
        scale = by_id[policy_id].scale_items
        if scale:
            return scale
    for policy in policies:
        if policy.is_default and policy.scale_items:
            return policy.scale_items
    return list(default_scale)
