"""Report-card assembly.

Combines a student's approved marks for one term into the structure the PDF
renderer consumes. Formative ("AOI") exams are scaled to 20 and averaged;
the summative ("EOT") exam is scaled to 80; the final score per subject is
their sum out of 100.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from app_logging import get_logger
from domain import AssessmentKey
from grading import GradingScaleItem, grade_descriptor, resolve_grade, scale_to_json
from responsibilities import subjects_taught_in_class
from results import SkipReason

FORMATIVE = "Formative"
SUMMATIVE = "Summative"
AOI_WEIGHT = 20
EOT_WEIGHT = 80

_logger = get_logger("gradecentral.reports")


@dataclass
class _SubjectTally:
    subject_name: str
    teacher_initials: str
    aoi_scores: List[Tuple[float, float]]
    eot_raw: Optional[float] = None
    eot_max: float = 100


def teacher_initials(name: Optional[str]) -> str:
    if not name:
        return "N/A"
    return "".join(part[0] for part in name.split() if part)


def relevant_assessment_keys(student, exams: Iterable, teachers: Iterable) -> Set[AssessmentKey]:
    """Assessment keys that may hold marks for ``student`` in the given exams.

    An exam counts when it is open to the student's class and stream; a
    general exam fans out to every subject taught in the class.
    """

    subject_ids = subjects_taught_in_class(student.class_id, teachers)
    keys = set()
    for exam in exams:
        if exam.class_id and exam.class_id != student.class_id:
            continue
        if exam.stream and exam.stream != student.stream:
            continue
        if exam.subject_id:
            if exam.subject_id in subject_ids:
                keys.add(AssessmentKey(exam.id, student.class_id, exam.subject_id))
        else:
            for subject_id in subject_ids:
                keys.add(AssessmentKey(exam.id, student.class_id, subject_id))
    return keys


def build_report_card(student, term, school_class, exams: Iterable, submissions: Iterable,
                      subjects: Iterable, teachers: Iterable, scale: Sequence[GradingScaleItem],
                      school: Mapping[str, str], next_term: Mapping[str, str],
                      report_title: str = "") -> Tuple[Dict[str, Any], List[SkipReason]]:
    """Build ``ReportCardData`` from approved ``submissions``.

    Returns the report and the submissions that were skipped because their
    exam or subject no longer resolves.
    """

    exams_by_id = {exam.id: exam for exam in exams}
    subjects_by_id = {subject.id: subject for subject in subjects}
    teachers_by_id = {teacher.id: teacher for teacher in teachers}
    skipped: List[SkipReason] = []
    tallies: Dict[str, _SubjectTally] = {}

    for submission in submissions:
        exam = exams_by_id.get(submission.exam_id)
        subject = subjects_by_id.get(submission.subject_id)
        if exam is None or subject is None:
            reason = "exam no longer exists" if exam is None else "subject no longer exists"
            _logger.warning("submission skipped from report card",
                            extra={"submission_id": submission.id, "reason": reason})
            skipped.append(SkipReason(submission.assessment_id, reason))
            continue
        mark = next((m for m in submission.submitted_marks or []
                     if m.get('studentId') == student.student_id_number), None)
        if mark is None or mark.get('score') is None:
            continue
        teacher = teachers_by_id.get(submission.teacher_id)
        tally = tallies.setdefault(subject.id, _SubjectTally(
            subject_name=subject.name,
            teacher_initials=teacher_initials(teacher.name if teacher else None),
            aoi_scores=[],
        ))
        if exam.category == FORMATIVE:
            tally.aoi_scores.append((float(mark['score']), float(exam.max_marks)))
        elif exam.category == SUMMATIVE:
            tally.eot_raw = float(mark['score'])
            tally.eot_max = float(exam.max_marks)

    results = []
    total, counted = 0.0, 0
    for tally in tallies.values():
        aoi_total = 0.0
        if tally.aoi_scores:
            converted = [raw / maximum * AOI_WEIGHT for raw, maximum in tally.aoi_scores]
            aoi_total = sum(converted) / len(converted)
        eot_score = tally.eot_raw / tally.eot_max * EOT_WEIGHT if tally.eot_raw is not None else 0.0
        final_score = aoi_total + eot_score
        grade = resolve_grade(final_score, 100, scale)
        if final_score > 0:
            total += final_score
            counted += 1
        results.append({
            'subjectName': tally.subject_name,
            'teacherInitials': tally.teacher_initials,
            'aoiTotal': aoi_total,
            'eotScore': eot_score,
            'finalScore': final_score,
            'grade': grade,
            'descriptor': grade_descriptor(grade),
        })

    report = {
        'schoolDetails': dict(school),
        'reportTitle': report_title,
        'student': student.to_dict(),
        'term': term.to_dict(),
        'class': school_class.to_dict(),
        'results': sorted(results, key=lambda row: row['subjectName']),
        'summary': {
            'average': total / counted if counted else 0,
            'gradeScale': scale_to_json(sorted(scale, key=lambda item: item.min_score, reverse=True)),
        },
        'comments': {'classTeacher': '', 'headTeacher': ''},
        'nextTerm': dict(next_term),
    }
    return report, skipped
