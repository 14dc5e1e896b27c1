"""Assessment responsibility calculator.

Works out which (exam, class, subject) assessments a teacher owes marks for
in the current term. Obligations come from two paths and are merged by
:class:`~domain.AssessmentKey`:

* explicit subject assignments: every current-term exam that is general or
  scoped to the assigned subject, for each class in the assignment;
* class-teacher oversight: for each class the teacher heads, every subject
  some teacher teaches in that class, crossed with every current-term exam
  compatible with both the class and the subject.

The functions here are pure; the caller loads teachers, classes, subjects and
exams and passes them in together with a :class:`~domain.SystemContext`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from app_logging import get_logger
from domain import AssessmentKey, SystemContext, is_valid_identity

ASSIGNED = "assigned"
CLASS_TEACHER = "class_teacher"

_logger = get_logger("gradecentral.responsibilities")


@dataclass
class Obligation:
    key: AssessmentKey
    school_class: object
    subject: object
    exam: object
    sources: Set[str] = field(default_factory=set)

    @property
    def name(self) -> str:
        return f"{self.school_class.name} - {self.subject.name} - {self.exam.name}"

    def to_dict(self) -> Dict[str, object]:
        return {
            'assessmentId': self.key.composite,
            'examId': self.key.exam_id,
            'classId': self.key.class_id,
            'subjectId': self.key.subject_id,
            'name': self.name,
            'examName': self.exam.name,
            'className': self.school_class.name,
            'subjectName': self.subject.name,
            'maxMarks': self.exam.max_marks,
            'sources': sorted(self.sources),
        }


def precondition_notice(teacher_id: Optional[str], context: SystemContext) -> Optional[str]:
    """Return an advisory message when responsibilities cannot be computed."""

    if not is_valid_identity(teacher_id):
        return f"Invalid teacher identifier: {teacher_id!r}."
    if context.is_default_template:
        return "System settings have not been configured yet. Please contact the D.O.S."
    if not context.current_term_id:
        return "No current term is set. Please contact the D.O.S."
    return None


def subjects_taught_in_class(class_id: str, teachers: Iterable) -> List[str]:
    """Subject ids any teacher is assigned to teach in ``class_id``, first-seen order."""

    seen: Dict[str, None] = {}
    for teacher in teachers:
        for assignment in teacher.subject_assignments:
            if class_id in assignment.class_ids:
                seen.setdefault(assignment.subject_id, None)
    return list(seen)


def _exam_fits(exam, class_id: Optional[str], subject_id: str) -> bool:
    if exam.subject_id and exam.subject_id != subject_id:
        return False
    if class_id is not None and exam.class_id and exam.class_id != class_id:
        return False
    return True


def compute_responsibilities(teacher_id: Optional[str], context: SystemContext, teachers: Iterable,
                             classes: Iterable, subjects: Iterable,
                             exams: Iterable) -> Dict[AssessmentKey, Obligation]:
    """Return every assessment ``teacher_id`` owes in the current term.

    Never raises for missing data: an invalid identity or unconfigured
    settings yield an empty mapping, and assignments that point at a deleted
    class or subject are skipped with a warning.
    """

    notice = precondition_notice(teacher_id, context)
    if notice:
        _logger.warning("responsibilities not computed", extra={"reason": notice})
        return {}

    teachers = list(teachers)
    teacher = next((t for t in teachers if t.id == teacher_id), None)
    if teacher is None:
        _logger.warning("teacher not found", extra={"teacher_id": teacher_id})
        return {}

    classes_by_id = {c.id: c for c in classes}
    subjects_by_id = {s.id: s for s in subjects}
    term_exams = [e for e in exams if e.term_id == context.current_term_id]

    obligations: Dict[AssessmentKey, Obligation] = {}

    def add(school_class, subject, exam, source: str) -> None:
        key = AssessmentKey(exam.id, school_class.id, subject.id)
        entry = obligations.get(key)
        if entry is None:
            entry = obligations[key] = Obligation(key, school_class, subject, exam)
        entry.sources.add(source)

    for assignment in teacher.subject_assignments:
        subject = subjects_by_id.get(assignment.subject_id)
        if subject is None:
            _logger.warning("assigned subject not found",
                            extra={"teacher_id": teacher_id, "subject_id": assignment.subject_id})
            continue
        for class_id in assignment.class_ids:
            school_class = classes_by_id.get(class_id)
            if school_class is None:
                _logger.warning("assigned class not found",
                                extra={"teacher_id": teacher_id, "class_id": class_id})
                continue
            for exam in term_exams:
                if _exam_fits(exam, None, subject.id):
                    add(school_class, subject, exam, ASSIGNED)

    for school_class in classes_by_id.values():
        if school_class.class_teacher_id != teacher_id:
            continue
        for subject_id in subjects_taught_in_class(school_class.id, teachers):
            subject = subjects_by_id.get(subject_id)
            if subject is None:
                _logger.warning("subject taught in class not found",
                                extra={"class_id": school_class.id, "subject_id": subject_id})
                continue
            for exam in term_exams:
                if _exam_fits(exam, school_class.id, subject.id):
                    add(school_class, subject, exam, CLASS_TEACHER)

    return obligations


__all__ = [
    "ASSIGNED",
    "CLASS_TEACHER",
    "Obligation",
    "compute_responsibilities",
    "precondition_notice",
    "subjects_taught_in_class",
]
