"""Submission reconciler.

Splits a teacher's obligations into pending and completed sets against the
mark submissions already on record, and folds approved submissions into
class-level summaries with grade distributions.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from app_logging import get_logger
from domain import AssessmentKey, DosStatus
from grading import GradingScaleItem, resolve_grade
from results import BatchResult

_logger = get_logger("gradecentral.reconciler")


@dataclass
class Reconciliation:
    pending: Dict[AssessmentKey, Any] = field(default_factory=dict)
    completed: Dict[AssessmentKey, Any] = field(default_factory=dict)


def submitted_keys(submissions: Iterable) -> Set[AssessmentKey]:
    """Keys of submissions that count as done.

    A rejected submission re-opens its obligation, so it is left out.
    """

    keys = set()
    for submission in submissions:
        if submission.dos_status == DosStatus.REJECTED:
            continue
        key = AssessmentKey.parse(submission.assessment_id)
        if key is not None:
            keys.add(key)
    return keys


def reconcile(responsibilities: Mapping[AssessmentKey, Any],
              submitted: Set[AssessmentKey]) -> Reconciliation:
    result = Reconciliation()
    for key, obligation in responsibilities.items():
        if key in submitted:
            result.completed[key] = obligation
        else:
            result.pending[key] = obligation
    return result


@dataclass
class StudentMark:
    student_id: str
    student_name: str
    score: Optional[float]
    grade: str

    def to_dict(self) -> Dict[str, Any]:
        return {'studentIdNumber': self.student_id, 'studentName': self.student_name,
                'score': self.score, 'grade': self.grade}


@dataclass
class ClassAssessmentSummary:
    exam_id: str
    exam_name: str
    subject_id: str
    subject_name: str
    max_marks: float
    marks: List[StudentMark]
    average: float
    highest: float
    lowest: float
    submission_count: int
    grade_distribution: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'examId': self.exam_id,
            'examName': self.exam_name,
            'subjectId': self.subject_id,
            'subjectName': self.subject_name,
            'maxMarks': self.max_marks,
            'marks': [mark.to_dict() for mark in self.marks],
            'summary': {
                'average': self.average,
                'highest': self.highest,
                'lowest': self.lowest,
                'submissionCount': self.submission_count,
            },
            'gradeDistribution': [{'grade': grade, 'count': count}
                                  for grade, count in self.grade_distribution.items()],
        }


def aggregate(submission, exam, subject, scale: Sequence[GradingScaleItem],
              student_names: Optional[Mapping[str, str]] = None) -> ClassAssessmentSummary:
    """Summarise one submission: per-student grades, average/high/low, histogram.

    With no scores present average, highest and lowest are all ``0``.
    """

    student_names = student_names or {}
    marks = []
    for entry in submission.submitted_marks or []:
        score = entry.get('score')
        marks.append(StudentMark(
            student_id=entry.get('studentId'),
            student_name=student_names.get(entry.get('studentId'), 'Unknown Student'),
            score=score,
            grade=resolve_grade(score, exam.max_marks, scale),
        ))

    scores = [mark.score for mark in marks if mark.score is not None]
    if scores:
        average, highest, lowest = sum(scores) / len(scores), max(scores), min(scores)
    else:
        average = highest = lowest = 0

    return ClassAssessmentSummary(
        exam_id=exam.id,
        exam_name=exam.name,
        subject_id=subject.id,
        subject_name=subject.name,
        max_marks=exam.max_marks,
        marks=marks,
        average=average,
        highest=highest,
        lowest=lowest,
        submission_count=len(scores),
        grade_distribution=dict(Counter(mark.grade for mark in marks)),
    )


def aggregate_submissions(submissions: Iterable, exams: Mapping[str, Any],
                          subjects: Mapping[str, Any],
                          scale_for: Callable[[Any], Sequence[GradingScaleItem]],
                          student_names: Optional[Mapping[str, str]] = None,
                          classes: Optional[Mapping[str, Any]] = None,
                          ) -> BatchResult[ClassAssessmentSummary]:
    """Aggregate a batch, skipping submissions whose exam, subject or class is gone.

    The class is only checked when ``classes`` is given.
    """

    batch: BatchResult[ClassAssessmentSummary] = BatchResult()
    for submission in submissions:
        exam = exams.get(submission.exam_id)
        subject = subjects.get(submission.subject_id)
        class_gone = classes is not None and submission.class_id not in classes
        if exam is None or subject is None or class_gone:
            missing = "exam" if exam is None else "subject" if subject is None else "class"
            _logger.warning("submission skipped from aggregation",
                            extra={"submission_id": submission.id, "missing": missing})
            batch.skip(submission.assessment_id, f"{missing} no longer exists")
            continue
        batch.succeeded.append(aggregate(submission, exam, subject, scale_for(exam), student_names))
    return batch


__all__ = [
    "ClassAssessmentSummary",
    "Reconciliation",
    "StudentMark",
    "aggregate",
    "aggregate_submissions",
    "reconcile",
    "submitted_keys",
]
