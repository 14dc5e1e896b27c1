"""Teacher-facing operations.

Each function loads what it needs from the database, builds a
:class:`~domain.SystemContext` once and hands plain objects to the pure
engine modules. Mutations return :class:`~results.ActionResult` and never
raise; read operations degrade to empty results plus advisory notices.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from anomalies import (AnomalyClassifier, AnomalyThresholds, GradeEntry,
                       RuleBasedClassifier, safe_classify)
from app_logging import DBTimer, get_logger
from db_utils import store_action
from domain import AssessmentKey, AttendanceStatus, DosStatus, SystemContext, is_valid_identity
from grading import scale_for_exam, scale_from_json
from models import (GENERAL_SETTINGS_ID, AttendanceEntry, DailyAttendance, Exam,
                    GeneralSettings, GradingPolicy, MarkSubmission, SchoolClass, Student,
                    Subject, Teacher, db, utcnow)
from reconciler import aggregate_submissions, reconcile, submitted_keys
from responsibilities import Obligation, compute_responsibilities, precondition_notice
from results import CONFLICT, NOT_FOUND, VALIDATION, ActionResult

ANOMALY_STATUS = "Pending Review (Anomaly Detected)"
ACCEPTED_STATUS = "Accepted"
NO_DEADLINE = "No deadline set"

_logger = get_logger("gradecentral.teacher")


# ---------------------------------------------------------------------------
# Context and responsibilities
# ---------------------------------------------------------------------------

def load_context() -> SystemContext:
    """Build the system context from the general-settings row.

    A missing row is treated like the unsaved default template.
    """

    settings = db.session.get(GeneralSettings, GENERAL_SETTINGS_ID)
    if settings is None:
        return SystemContext(is_default_template=True)
    return SystemContext(
        current_term_id=settings.current_term_id,
        default_scale=scale_from_json(settings.default_grading_scale),
        global_deadline=settings.global_marks_submission_deadline,
        is_default_template=bool(settings.is_default_template),
    )


def load_responsibilities(teacher_id: Optional[str],
                          context: Optional[SystemContext] = None,
                          ) -> Tuple[Dict[AssessmentKey, Obligation], List[str]]:
    """Return ``(obligations, notices)`` for ``teacher_id``.

    Store errors are logged and reported as a notice with no obligations.
    """

    try:
        with DBTimer():
            context = context or load_context()
            notice = precondition_notice(teacher_id, context)
            if notice:
                _logger.warning("responsibilities unavailable",
                                extra={"teacher_id": teacher_id, "reason": notice})
                return {}, [notice]
            if db.session.get(Teacher, teacher_id) is None:
                _logger.warning("teacher not found", extra={"teacher_id": teacher_id})
                return {}, [f"Teacher {teacher_id} was not found."]
            obligations = compute_responsibilities(
                teacher_id,
                context,
                teachers=Teacher.query.all(),
                classes=SchoolClass.query.all(),
                subjects=Subject.query.all(),
                exams=Exam.query.filter_by(term_id=context.current_term_id).all(),
            )
    except SQLAlchemyError:
        db.session.rollback()
        _logger.error("could not load responsibilities", exc_info=True,
                      extra={"teacher_id": teacher_id})
        return {}, ["The database is currently unavailable. Please try again later."]
    return obligations, []


def _teacher_submissions(teacher_id: str) -> List[MarkSubmission]:
    return (MarkSubmission.query.filter_by(teacher_id=teacher_id)
            .order_by(MarkSubmission.date_submitted.desc()).all())


def get_teacher_assessments(teacher_id: Optional[str]) -> Dict[str, Any]:
    """Assessments the teacher still owes marks for, sorted by name."""

    obligations, notices = load_responsibilities(teacher_id)
    if not obligations:
        return {'assessments': [], 'notices': notices}
    split = reconcile(obligations, submitted_keys(_teacher_submissions(teacher_id)))
    pending = sorted(split.pending.values(), key=lambda o: o.name)
    return {
        'assessments': [{'id': o.key.composite, 'name': o.name, 'maxMarks': o.exam.max_marks}
                        for o in pending],
        'notices': notices,
    }


def get_students_for_assessment(assessment_id: str) -> List[Dict[str, Any]]:
    """Students of the assessment's class, narrowed to the exam's stream if it has one."""

    key = AssessmentKey.parse(assessment_id)
    if key is None:
        return []
    query = Student.query.filter_by(class_id=key.class_id)
    exam = db.session.get(Exam, key.exam_id)
    if exam is not None and exam.stream:
        query = query.filter_by(stream=exam.stream)
    students = query.order_by(Student.last_name, Student.first_name).all()
    return [student.to_dict() for student in students]


# ---------------------------------------------------------------------------
# Mark submission
# ---------------------------------------------------------------------------

def validate_marks(marks: Any, max_marks: float) -> Tuple[List[Dict[str, Any]], Dict[str, str]]:
    """Check ``[{studentId, score}]`` entries; return cleaned marks and field errors.

    A ``None`` score records a missing mark. Scores outside ``0..max_marks``
    are rejected, never clamped.
    """

    errors: Dict[str, str] = {}
    cleaned: List[Dict[str, Any]] = []
    if not isinstance(marks, list):
        return [], {'marks': 'Marks must be a list of {studentId, score} entries.'}
    for index, entry in enumerate(marks):
        prefix = f"marks[{index}]"
        if not isinstance(entry, dict):
            errors[prefix] = 'Each mark must be an object.'
            continue
        student_id = entry.get('studentId')
        if not isinstance(student_id, str) or not student_id.strip():
            errors[f"{prefix}.studentId"] = 'Student ID is required.'
            continue
        score = entry.get('score')
        if score is not None:
            if isinstance(score, bool) or not isinstance(score, (int, float)) \
                    or not math.isfinite(score):
                errors[f"{prefix}.score"] = 'Score must be a number.'
                continue
            if score < 0 or score > max_marks:
                errors[f"{prefix}.score"] = f"Score must be between 0 and {max_marks:g}."
                continue
            score = float(score)
        cleaned.append({'studentId': student_id.strip(), 'score': score})
    return cleaned, errors


def historical_average(key: AssessmentKey) -> Optional[float]:
    """Mean percentage of approved submissions for the same class and subject in other exams."""

    rows = (db.session.query(MarkSubmission.average_score, Exam.max_marks)
            .join(Exam, Exam.id == MarkSubmission.exam_id)
            .filter(MarkSubmission.class_id == key.class_id,
                    MarkSubmission.subject_id == key.subject_id,
                    MarkSubmission.exam_id != key.exam_id,
                    MarkSubmission.dos_status == DosStatus.APPROVED)
            .all())
    percentages = [average / max_marks * 100 for average, max_marks in rows
                   if average is not None and max_marks]
    if not percentages:
        return None
    return sum(percentages) / len(percentages)


def _classifier() -> AnomalyClassifier:
    classifier = current_app.extensions.get('grade_classifier')
    if classifier is None:
        classifier = RuleBasedClassifier(AnomalyThresholds.from_config(current_app.config))
    return classifier


@store_action("submit marks")
def submit_marks(teacher_id: Optional[str], assessment_id: str, marks: Any) -> ActionResult:
    """Validate, classify and store a teacher's marks for one assessment."""

    if not is_valid_identity(teacher_id):
        return ActionResult.fail("A valid teacher identifier is required.",
                                 errors={'teacherId': 'Invalid teacher identifier.'})
    key = AssessmentKey.parse(assessment_id)
    if key is None:
        return ActionResult.fail("Invalid assessment identifier.",
                                 errors={'assessmentId': 'Expected examId_classId_subjectId.'})

    teacher = db.session.get(Teacher, teacher_id)
    exam = db.session.get(Exam, key.exam_id)
    school_class = db.session.get(SchoolClass, key.class_id)
    subject = db.session.get(Subject, key.subject_id)
    for label, record in (('Teacher', teacher), ('Exam', exam), ('Class', school_class),
                          ('Subject', subject)):
        if record is None:
            _logger.warning("submission references missing record",
                            extra={"assessment_id": assessment_id, "missing": label})
            return ActionResult.fail(f"{label} not found for this assessment.", kind=NOT_FOUND)

    cleaned, errors = validate_marks(marks, exam.max_marks)
    if errors:
        return ActionResult.fail("Some marks are invalid.", errors=errors)
    if not cleaned:
        return ActionResult.fail("No marks were provided.", errors={'marks': 'At least one mark is required.'})

    existing = (MarkSubmission.query
                .filter(MarkSubmission.teacher_id == teacher_id,
                        MarkSubmission.assessment_id == key.composite,
                        MarkSubmission.dos_status != DosStatus.REJECTED)
                .first())
    if existing is not None:
        return ActionResult.fail(
            "Marks for this assessment have already been submitted and are awaiting or "
            "have passed review.", kind=CONFLICT)

    report = safe_classify(
        _classifier(),
        subject.name,
        exam.name,
        [GradeEntry(m['studentId'], m['score']) for m in cleaned],
        historical_average=historical_average(key),
        max_marks=exam.max_marks,
    )

    scores = [m['score'] for m in cleaned if m['score'] is not None]
    submission = MarkSubmission(
        teacher_id=teacher_id,
        assessment_id=key.composite,
        exam_id=key.exam_id,
        class_id=key.class_id,
        subject_id=key.subject_id,
        assessment_name=f"{school_class.name} - {subject.name} - {exam.name}",
        submitted_marks=cleaned,
        student_count=len(scores),
        average_score=sum(scores) / len(scores) if scores else None,
        status=ANOMALY_STATUS if report.has_anomalies else ACCEPTED_STATUS,
        anomaly_explanations=[a.to_dict() for a in report.anomalies],
        dos_status=DosStatus.PENDING,
    )
    db.session.add(submission)
    db.session.commit()
    _logger.info("marks submitted", extra={"teacher_id": teacher_id,
                                           "assessment_id": key.composite,
                                           "anomaly_count": len(report.anomalies)})

    if report.has_anomalies:
        message = "Marks submitted. Potential anomalies were detected and logged for review."
    else:
        message = "Marks submitted successfully. No anomalies detected."
    data = submission.to_dict()
    data['anomalies'] = report.to_dict()
    return ActionResult.ok(message, data=data)


def display_status(submission: MarkSubmission) -> str:
    if submission.dos_status == DosStatus.APPROVED:
        return "Approved by D.O.S."
    if submission.dos_status == DosStatus.REJECTED:
        return "Rejected by D.O.S."
    return submission.status


def get_submission_history(teacher_id: Optional[str]) -> List[Dict[str, Any]]:
    """A teacher's submissions, newest first."""

    if not is_valid_identity(teacher_id):
        _logger.warning("history requested with invalid identity", extra={"teacher_id": teacher_id})
        return []
    history = []
    for submission in _teacher_submissions(teacher_id):
        row = submission.to_dict()
        row['displayStatus'] = display_status(submission)
        history.append(row)
    return history


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

def _deadline_for(exam: Exam, context: SystemContext) -> Optional[date]:
    return exam.marks_submission_deadline or context.global_deadline


def get_teacher_dashboard(teacher_id: Optional[str], today: Optional[date] = None) -> Dict[str, Any]:
    """Pending assignments with deadlines, notifications and headline stats."""

    today = today or date.today()
    warning_days = current_app.config.get('DEADLINE_WARNING_DAYS', 3)
    recent_days = current_app.config.get('RECENT_SUBMISSION_DAYS', 7)
    dashboard: Dict[str, Any] = {
        'teacherName': None,
        'assignments': [],
        'notifications': [],
        'stats': {'classCount': 0, 'subjectCount': 0, 'recentSubmissions': 0},
        'resourcesText': None,
        'announcement': None,
    }

    try:
        context = load_context()
    except SQLAlchemyError:
        db.session.rollback()
        _logger.error("could not load settings for dashboard", exc_info=True)
        dashboard['notifications'].append({'id': 'error_store', 'type': 'warning',
                                           'message': 'The database is currently unavailable.'})
        return dashboard

    obligations, notices = load_responsibilities(teacher_id, context)
    for index, notice in enumerate(notices):
        dashboard['notifications'].append({'id': f'config_{index}', 'type': 'warning',
                                           'message': notice})
    if not is_valid_identity(teacher_id):
        return dashboard

    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        return dashboard
    dashboard['teacherName'] = teacher.name

    settings = db.session.get(GeneralSettings, GENERAL_SETTINGS_ID)
    if settings is not None:
        dashboard['resourcesText'] = settings.teacher_dashboard_resources_text
        if settings.dos_global_announcement_text:
            dashboard['announcement'] = {'text': settings.dos_global_announcement_text,
                                         'type': settings.dos_global_announcement_type or 'info'}

    submissions = _teacher_submissions(teacher_id)
    split = reconcile(obligations, submitted_keys(submissions))
    for obligation in sorted(split.pending.values(), key=lambda o: o.name):
        deadline = _deadline_for(obligation.exam, context)
        dashboard['assignments'].append({
            'id': obligation.key.composite,
            'className': obligation.school_class.name,
            'subjectName': obligation.subject.name,
            'examName': obligation.exam.name,
            'nextDeadlineInfo': deadline.isoformat() if deadline else NO_DEADLINE,
        })
        if deadline is None:
            continue
        if deadline < today:
            dashboard['notifications'].append({
                'id': f'overdue_{obligation.key.composite}', 'type': 'warning',
                'message': f"Marks for {obligation.name} were due on {deadline.isoformat()}.",
            })
        elif deadline - today <= timedelta(days=warning_days):
            dashboard['notifications'].append({
                'id': f'deadline_{obligation.key.composite}', 'type': 'deadline',
                'message': f"Marks for {obligation.name} are due on {deadline.isoformat()}.",
            })

    latest_seen = set()
    for submission in submissions:
        # Newest first; only the latest submission per key decides.
        if submission.assessment_id in latest_seen:
            continue
        latest_seen.add(submission.assessment_id)
        if submission.dos_status == DosStatus.REJECTED:
            reason = f": {submission.dos_reject_reason}" if submission.dos_reject_reason else "."
            dashboard['notifications'].append({
                'id': f'rejected_{submission.id}', 'type': 'warning',
                'message': f"Your submission for {submission.assessment_name} was rejected{reason}",
            })

    cutoff = datetime.combine(today - timedelta(days=recent_days), datetime.min.time())
    class_ids = {a.class_id for a in teacher.assignments}
    class_ids.update(c.id for c in teacher.classes_overseen)
    dashboard['stats'] = {
        'classCount': len(class_ids),
        'subjectCount': len({a.subject_id for a in teacher.assignments}),
        'recentSubmissions': sum(1 for s in submissions if s.date_submitted >= cutoff),
    }
    return dashboard


def get_class_teacher_data(teacher_id: Optional[str], today: Optional[date] = None) -> Dict[str, Any]:
    """Students, approved-assessment summaries and today's attendance per overseen class."""

    today = today or date.today()
    if not is_valid_identity(teacher_id):
        return {'classes': [], 'notices': [f"Invalid teacher identifier: {teacher_id!r}."]}
    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        _logger.warning("teacher not found", extra={"teacher_id": teacher_id})
        return {'classes': [], 'notices': [f"Teacher {teacher_id} was not found."]}

    context = load_context()
    exams = {exam.id: exam for exam in Exam.query.all()}
    subjects = {subject.id: subject for subject in Subject.query.all()}
    policies = GradingPolicy.query.all()

    classes = []
    for school_class in sorted(teacher.classes_overseen, key=lambda c: c.name):
        students = sorted(school_class.students, key=lambda s: (s.last_name, s.first_name))
        names = {s.student_id_number: s.full_name for s in students}
        approved = (MarkSubmission.query
                    .filter_by(class_id=school_class.id, dos_status=DosStatus.APPROVED)
                    .order_by(MarkSubmission.date_submitted.desc()).all())
        batch = aggregate_submissions(
            approved, exams, subjects,
            lambda exam: scale_for_exam(exam, policies, context.default_scale),
            names, {school_class.id: school_class},
        )
        sheet = db.session.get(DailyAttendance, DailyAttendance.key_for(school_class.id, today))
        tallies = {status.value: 0 for status in AttendanceStatus}
        if sheet is not None:
            for entry in sheet.entries:
                tallies[entry.status.value] += 1
        classes.append({
            'class': school_class.to_dict(),
            'students': [s.to_dict() for s in students],
            'assessments': [summary.to_dict() for summary in batch.succeeded],
            'skipped': [reason.to_dict() for reason in batch.skipped],
            'attendanceToday': {**tallies, 'recorded': sheet is not None,
                                'totalStudents': len(students)},
        })
    return {'classes': classes, 'notices': []}


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------

def _parse_records(records: Any) -> Tuple[List[Tuple[str, AttendanceStatus]], Dict[str, str]]:
    errors: Dict[str, str] = {}
    parsed: List[Tuple[str, AttendanceStatus]] = []
    if not isinstance(records, list):
        return [], {'records': 'Records must be a list of {studentId, status} entries.'}
    seen = set()
    for index, record in enumerate(records):
        prefix = f"records[{index}]"
        if not isinstance(record, dict):
            errors[prefix] = 'Each record must be an object.'
            continue
        student_id = record.get('studentId')
        if not isinstance(student_id, str) or not student_id:
            errors[f"{prefix}.studentId"] = 'Student ID is required.'
            continue
        try:
            status = AttendanceStatus(record.get('status'))
        except ValueError:
            errors[f"{prefix}.status"] = 'Status must be one of present, absent, late.'
            continue
        if student_id in seen:
            errors[f"{prefix}.studentId"] = 'Duplicate student in attendance records.'
            continue
        seen.add(student_id)
        parsed.append((student_id, status))
    return parsed, errors


@store_action("save attendance")
def save_attendance(teacher_id: Optional[str], class_id: str, on: date,
                    records: Sequence[Dict[str, Any]]) -> ActionResult:
    """Create or replace the attendance sheet for ``(class_id, on)``."""

    if not is_valid_identity(teacher_id):
        return ActionResult.fail("A valid teacher identifier is required.",
                                 errors={'teacherId': 'Invalid teacher identifier.'})
    if db.session.get(SchoolClass, class_id) is None:
        return ActionResult.fail("Class not found.", kind=NOT_FOUND)
    parsed, errors = _parse_records(records)
    if errors:
        return ActionResult.fail("Some attendance records are invalid.", kind=VALIDATION,
                                 errors=errors)

    sheet_id = DailyAttendance.key_for(class_id, on)
    sheet = db.session.get(DailyAttendance, sheet_id)
    created = sheet is None
    if created:
        sheet = DailyAttendance(id=sheet_id, class_id=class_id, date=on)
        db.session.add(sheet)
    else:
        sheet.entries.clear()
        db.session.flush()
    sheet.teacher_id = teacher_id
    sheet.last_updated_at = utcnow()
    for student_id, status in parsed:
        sheet.entries.append(AttendanceEntry(student_id=student_id, status=status))
    db.session.commit()

    _logger.info("attendance saved", extra={"class_id": class_id, "date": on,
                                            "entries": len(parsed), "created": created})
    return ActionResult.ok("Attendance saved successfully.",
                           data={'id': sheet_id, 'entries': len(parsed)})


def get_attendance_history(teacher_id: Optional[str], class_id: str) -> List[Dict[str, Any]]:
    """Flattened per-student attendance rows for a class, newest date first."""

    if not is_valid_identity(teacher_id):
        return []
    names = {s.id: s.full_name for s in Student.query.filter_by(class_id=class_id).all()}
    sheets = (DailyAttendance.query.filter_by(class_id=class_id)
              .order_by(DailyAttendance.date.desc()).all())
    rows = []
    for sheet in sheets:
        for entry in sheet.entries:
            rows.append({
                'date': sheet.date.isoformat(),
                'studentId': entry.student_id,
                'studentName': names.get(entry.student_id, 'Unknown Student'),
                'status': entry.status.value,
            })
    return rows
