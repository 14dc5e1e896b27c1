"""Director-of-Studies operations: school set-up, mark review and reporting.

Mutations return :class:`~results.ActionResult`. Payloads use the camelCase
field names of the JSON API; validation failures carry field-level messages
keyed by those names.
"""

from __future__ import annotations

import csv
import io
import math
import re
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from flask import current_app

from analysis import rank_marks, score_frequency, summarize
from app_logging import get_logger
from db_utils import store_action
from domain import AssessmentKey, AttendanceStatus, DosStatus, Role
from grading import (TEMPLATE_SCALE, resolve_grade, scale_for_exam, scale_from_json,
                     validate_scale)
from models import (GENERAL_SETTINGS_ID, DailyAttendance, Exam, GeneralSettings, GradingPolicy,
                    MarkSubmission, SchoolClass, Student, Subject, Teacher, TeachingAssignment,
                    Term, db, utcnow)
from reports import build_report_card, relevant_assessment_keys
from results import CONFLICT, NOT_FOUND, ActionResult
from teacher_service import load_context, validate_marks

SUBJECT_CODE = re.compile(r"^[A-Z]{3,4}$")
EXAM_CATEGORIES = ("Formative", "Summative")
ANNOUNCEMENT_TYPES = ("info", "warning")

_logger = get_logger("gradecentral.dos")


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def _text(data: Mapping[str, Any], field: str, errors: Dict[str, str], required: bool = True,
          label: Optional[str] = None) -> Optional[str]:
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            errors[field] = f"{label or field} is required."
        return None
    if not isinstance(value, str):
        errors[field] = f"{label or field} must be text."
        return None
    return value.strip()


def _date(data: Mapping[str, Any], field: str, errors: Dict[str, str],
          required: bool = False) -> Optional[date]:
    value = data.get(field)
    if not value:
        if required:
            errors[field] = f"{field} is required."
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        errors[field] = f"{field} must be a date in YYYY-MM-DD format."
        return None


def _identifier(data: Mapping[str, Any], errors: Dict[str, str]) -> Optional[str]:
    """Optional caller-chosen id; underscores would break composite assessment keys."""

    value = data.get('id')
    if value is None:
        return None
    if not isinstance(value, str) or not value or '_' in value:
        errors['id'] = "Identifiers must be non-empty and must not contain underscores."
        return None
    return value


def _exists(model, record_id: Optional[str]) -> bool:
    return bool(record_id) and db.session.get(model, record_id) is not None


def _loaded(model, record_id: str, label: str) -> ActionResult:
    record = db.session.get(model, record_id)
    if record is None:
        return ActionResult.fail(f"{label} not found.", kind=NOT_FOUND)
    return ActionResult.ok(f"{label} loaded.", data=record.to_dict())


def _invalid(errors: Dict[str, str]) -> ActionResult:
    return ActionResult.fail("Please correct the highlighted fields.", errors=errors)


def _settings() -> GeneralSettings:
    settings = db.session.get(GeneralSettings, GENERAL_SETTINGS_ID)
    if settings is None:
        settings = GeneralSettings(id=GENERAL_SETTINGS_ID,
                                   default_grading_scale=[dict(t) for t in TEMPLATE_SCALE],
                                   is_default_template=True)
        db.session.add(settings)
        db.session.flush()
        _logger.info("general settings template created")
    return settings


# ---------------------------------------------------------------------------
# General settings
# ---------------------------------------------------------------------------

@store_action("load general settings")
def get_general_settings() -> ActionResult:
    settings = _settings()
    db.session.commit()
    return ActionResult.ok("General settings loaded.", data=settings.to_dict())


@store_action("update general settings")
def update_general_settings(data: Mapping[str, Any]) -> ActionResult:
    """Partial update; any successful save clears the template flag."""

    errors: Dict[str, str] = {}
    settings = _settings()
    if 'currentTermId' in data:
        term_id = data.get('currentTermId') or None
        if term_id and not _exists(Term, term_id):
            errors['currentTermId'] = "Selected term does not exist."
        else:
            settings.current_term_id = term_id
    if 'defaultGradingScale' in data:
        scale_errors = validate_scale(data.get('defaultGradingScale'))
        if scale_errors:
            errors.update({f"defaultGradingScale.{k}": v for k, v in scale_errors.items()})
        else:
            settings.default_grading_scale = [item.to_dict() for item in
                                              scale_from_json(data['defaultGradingScale'])]
    if 'markSubmissionTimeZone' in data:
        zone = _text(data, 'markSubmissionTimeZone', errors, label="Time zone")
        if zone:
            settings.mark_submission_time_zone = zone
    if 'globalMarksSubmissionDeadline' in data:
        if data.get('globalMarksSubmissionDeadline'):
            deadline = _date(data, 'globalMarksSubmissionDeadline', errors)
            if deadline:
                settings.global_marks_submission_deadline = deadline
        else:
            settings.global_marks_submission_deadline = None
    if 'dosGlobalAnnouncementType' in data:
        kind = data.get('dosGlobalAnnouncementType') or None
        if kind is not None and kind not in ANNOUNCEMENT_TYPES:
            errors['dosGlobalAnnouncementType'] = "Announcement type must be info or warning."
        else:
            settings.dos_global_announcement_type = kind
    if 'dosGlobalAnnouncementText' in data:
        settings.dos_global_announcement_text = data.get('dosGlobalAnnouncementText') or None
    if 'teacherDashboardResourcesText' in data:
        settings.teacher_dashboard_resources_text = data.get('teacherDashboardResourcesText') or None

    if errors:
        db.session.rollback()
        return _invalid(errors)
    settings.is_default_template = False
    db.session.commit()
    _logger.info("general settings updated", extra={"fields": sorted(data)})
    return ActionResult.ok("General settings updated successfully.", data=settings.to_dict())


# ---------------------------------------------------------------------------
# Teachers
# ---------------------------------------------------------------------------

def _teacher_fields(data: Mapping[str, Any], errors: Dict[str, str]) -> Dict[str, Any]:
    email = _text(data, 'email', errors, label="Email")
    if email and '@' not in email:
        errors['email'] = "Email address is invalid."
    role = None
    if data.get('role'):
        try:
            role = Role(data['role'])
        except ValueError:
            errors['role'] = "Role must be one of teacher, dos, admin."
    return {'name': _text(data, 'name', errors, label="Name"),
            'email': email.lower() if email else None, 'role': role}


def _email_taken(email: str, teacher_id: Optional[str] = None) -> Optional[ActionResult]:
    query = Teacher.query.filter_by(email=email)
    if teacher_id:
        query = query.filter(Teacher.id != teacher_id)
    if query.first() is None:
        return None
    return ActionResult.fail("A teacher with this email already exists.", kind=CONFLICT,
                             errors={'email': "Email already in use."})


@store_action("create teacher")
def create_teacher(data: Mapping[str, Any]) -> ActionResult:
    errors: Dict[str, str] = {}
    record_id = _identifier(data, errors)
    fields = _teacher_fields(data, errors)
    if errors:
        return _invalid(errors)
    taken = _email_taken(fields['email'])
    if taken is not None:
        return taken
    teacher = Teacher(**fields)
    if record_id:
        teacher.id = record_id
    db.session.add(teacher)
    db.session.commit()
    _logger.info("teacher created", extra={"created_teacher_id": teacher.id})
    return ActionResult.ok("Teacher created successfully.", data=teacher.to_dict())


@store_action("update teacher")
def update_teacher(teacher_id: str, data: Mapping[str, Any]) -> ActionResult:
    """Update name, email and role. Assignments are changed separately."""

    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        return ActionResult.fail("Teacher not found.", kind=NOT_FOUND)
    errors: Dict[str, str] = {}
    fields = _teacher_fields(data, errors)
    if errors:
        return _invalid(errors)
    taken = _email_taken(fields['email'], teacher_id)
    if taken is not None:
        return taken
    for attr, value in fields.items():
        setattr(teacher, attr, value)
    db.session.commit()
    _logger.info("teacher updated", extra={"target_teacher_id": teacher_id})
    return ActionResult.ok("Teacher account updated successfully.", data=teacher.to_dict())


@store_action("delete teacher")
def delete_teacher(teacher_id: str) -> ActionResult:
    """Delete a teacher with their teaching assignments.

    Classes they oversaw are left without a class teacher. Submissions they
    made stay on record.
    """

    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        return ActionResult.fail("Teacher not found.", kind=NOT_FOUND)
    name = teacher.name
    released = 0
    for school_class in list(teacher.classes_overseen):
        school_class.class_teacher_id = None
        released += 1
    db.session.flush()
    db.session.delete(teacher)
    db.session.commit()
    _logger.info("teacher deleted",
                 extra={"target_teacher_id": teacher_id, "classes_released": released})
    return ActionResult.ok(f"Teacher {name} deleted.", data={'classesReleased': released})


def get_teacher(teacher_id: str) -> ActionResult:
    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        return ActionResult.fail("Teacher not found.", kind=NOT_FOUND)
    data = teacher.to_dict()
    data['classTeacherFor'] = sorted(c.id for c in teacher.classes_overseen)
    return ActionResult.ok("Teacher loaded.", data=data)


def list_teachers() -> List[Dict[str, Any]]:
    return [t.to_dict() for t in Teacher.query.order_by(Teacher.name).all()]


@store_action("update teacher assignments")
def update_teacher_assignments(teacher_id: str, class_teacher_for: Iterable[str],
                               subject_assignments: Iterable[Mapping[str, Any]]) -> ActionResult:
    """Replace a teacher's subject assignments and class-teacher duties.

    A class handed to this teacher is taken from its previous class teacher,
    so each class keeps at most one.
    """

    teacher = db.session.get(Teacher, teacher_id)
    if teacher is None:
        return ActionResult.fail("Teacher not found.", kind=NOT_FOUND)

    errors: Dict[str, str] = {}
    class_teacher_for = list(dict.fromkeys(class_teacher_for or []))
    for index, class_id in enumerate(class_teacher_for):
        if not _exists(SchoolClass, class_id):
            errors[f"classTeacherFor[{index}]"] = f"Class {class_id} does not exist."
    pairs: List[Tuple[str, str]] = []
    for index, entry in enumerate(subject_assignments or []):
        subject_id = entry.get('subjectId') if isinstance(entry, Mapping) else None
        if not _exists(Subject, subject_id):
            errors[f"subjectAssignments[{index}].subjectId"] = "Subject does not exist."
            continue
        for class_index, class_id in enumerate(entry.get('classIds') or []):
            if not _exists(SchoolClass, class_id):
                errors[f"subjectAssignments[{index}].classIds[{class_index}]"] = \
                    f"Class {class_id} does not exist."
            elif (subject_id, class_id) not in pairs:
                pairs.append((subject_id, class_id))
    if errors:
        return _invalid(errors)

    for school_class in SchoolClass.query.filter_by(class_teacher_id=teacher_id).all():
        if school_class.id not in class_teacher_for:
            school_class.class_teacher_id = None
    for class_id in class_teacher_for:
        db.session.get(SchoolClass, class_id).class_teacher_id = teacher_id

    teacher.assignments.clear()
    db.session.flush()
    for subject_id, class_id in pairs:
        teacher.assignments.append(TeachingAssignment(subject_id=subject_id, class_id=class_id))
    db.session.commit()
    _logger.info("teacher assignments updated",
                 extra={"target_teacher_id": teacher_id, "assignment_count": len(pairs),
                        "class_teacher_for": class_teacher_for})
    return ActionResult.ok("Teacher assignments updated successfully.", data=teacher.to_dict())


# ---------------------------------------------------------------------------
# Classes, subjects and students
# ---------------------------------------------------------------------------

def _class_fields(data: Mapping[str, Any], errors: Dict[str, str]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        'name': _text(data, 'name', errors, label="Class name"),
        'level': _text(data, 'level', errors, required=False) or '',
    }
    streams = data.get('streams') or []
    if not isinstance(streams, list) or not all(isinstance(s, str) and s.strip() for s in streams):
        errors['streams'] = "Streams must be a list of names."
    else:
        fields['streams'] = [s.strip() for s in streams]
    class_teacher_id = data.get('classTeacherId') or None
    if class_teacher_id and not _exists(Teacher, class_teacher_id):
        errors['classTeacherId'] = "Class teacher does not exist."
    fields['class_teacher_id'] = class_teacher_id
    return fields


@store_action("create class")
def create_class(data: Mapping[str, Any]) -> ActionResult:
    errors: Dict[str, str] = {}
    record_id = _identifier(data, errors)
    fields = _class_fields(data, errors)
    if errors:
        return _invalid(errors)
    school_class = SchoolClass(**fields)
    if record_id:
        school_class.id = record_id
    db.session.add(school_class)
    db.session.commit()
    return ActionResult.ok("Class created successfully.", data=school_class.to_dict())


@store_action("update class")
def update_class(class_id: str, data: Mapping[str, Any]) -> ActionResult:
    school_class = db.session.get(SchoolClass, class_id)
    if school_class is None:
        return ActionResult.fail("Class not found.", kind=NOT_FOUND)
    errors: Dict[str, str] = {}
    fields = _class_fields(data, errors)
    if errors:
        return _invalid(errors)
    for attr, value in fields.items():
        setattr(school_class, attr, value)
    db.session.commit()
    return ActionResult.ok("Class updated successfully.", data=school_class.to_dict())


def get_class(class_id: str) -> ActionResult:
    return _loaded(SchoolClass, class_id, "Class")


def list_classes() -> List[Dict[str, Any]]:
    return [c.to_dict() for c in SchoolClass.query.order_by(SchoolClass.name).all()]


@store_action("delete class")
def delete_class(class_id: str) -> ActionResult:
    """Delete an empty class with its teaching assignments and attendance sheets.

    Mark submissions for the class stay on record; readers skip them.
    """

    school_class = db.session.get(SchoolClass, class_id)
    if school_class is None:
        return ActionResult.fail("Class not found.", kind=NOT_FOUND)
    enrolled = Student.query.filter_by(class_id=class_id).count()
    if enrolled:
        return ActionResult.fail(
            f"Class {school_class.name} still has {enrolled} student(s) and cannot be deleted.",
            kind=CONFLICT)
    name = school_class.name
    TeachingAssignment.query.filter_by(class_id=class_id).delete(synchronize_session=False)
    for sheet in DailyAttendance.query.filter_by(class_id=class_id).all():
        db.session.delete(sheet)
    db.session.delete(school_class)
    db.session.commit()
    _logger.info("class deleted", extra={"class_id": class_id})
    return ActionResult.ok(f"Class {name} deleted.")


def _subject_fields(data: Mapping[str, Any], errors: Dict[str, str]) -> Dict[str, Any]:
    name = _text(data, 'name', errors, label="Subject name")
    code = _text(data, 'code', errors, required=False)
    if code is not None and not SUBJECT_CODE.match(code):
        errors['code'] = "Subject code must be 3 or 4 uppercase letters."
    return {'name': name, 'code': code}


@store_action("create subject")
def create_subject(data: Mapping[str, Any]) -> ActionResult:
    errors: Dict[str, str] = {}
    record_id = _identifier(data, errors)
    fields = _subject_fields(data, errors)
    if errors:
        return _invalid(errors)
    subject = Subject(**fields)
    if record_id:
        subject.id = record_id
    db.session.add(subject)
    db.session.commit()
    return ActionResult.ok("Subject created successfully.", data=subject.to_dict())


def get_subject(subject_id: str) -> ActionResult:
    return _loaded(Subject, subject_id, "Subject")


@store_action("update subject")
def update_subject(subject_id: str, data: Mapping[str, Any]) -> ActionResult:
    subject = db.session.get(Subject, subject_id)
    if subject is None:
        return ActionResult.fail("Subject not found.", kind=NOT_FOUND)
    errors: Dict[str, str] = {}
    fields = _subject_fields(data, errors)
    if errors:
        return _invalid(errors)
    for attr, value in fields.items():
        setattr(subject, attr, value)
    db.session.commit()
    return ActionResult.ok("Subject updated successfully.", data=subject.to_dict())


@store_action("delete subject")
def delete_subject(subject_id: str) -> ActionResult:
    subject = db.session.get(Subject, subject_id)
    if subject is None:
        return ActionResult.fail("Subject not found.", kind=NOT_FOUND)
    in_use = TeachingAssignment.query.filter_by(subject_id=subject_id).count()
    if in_use:
        return ActionResult.fail(
            f"Subject {subject.name} is assigned to {in_use} teaching assignment(s) and "
            "cannot be deleted.", kind=CONFLICT)
    name = subject.name
    db.session.delete(subject)
    db.session.commit()
    return ActionResult.ok(f"Subject {name} deleted.")


def list_subjects() -> List[Dict[str, Any]]:
    return [s.to_dict() for s in Subject.query.order_by(Subject.name).all()]


def _student_fields(data: Mapping[str, Any], errors: Dict[str, str]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        'student_id_number': _text(data, 'studentIdNumber', errors, label="Student ID number"),
        'first_name': _text(data, 'firstName', errors, label="First name"),
        'last_name': _text(data, 'lastName', errors, label="Last name"),
    }
    class_id = data.get('classId')
    school_class = db.session.get(SchoolClass, class_id) if class_id else None
    if school_class is None:
        errors['classId'] = "Class does not exist."
    fields['class_id'] = class_id
    stream = _text(data, 'stream', errors, required=False)
    if stream and school_class is not None and school_class.streams \
            and stream not in school_class.streams:
        errors['stream'] = f"Stream must be one of {', '.join(school_class.streams)}."
    fields['stream'] = stream
    fields['date_of_birth'] = _date(data, 'dateOfBirth', errors)
    fields['gender'] = data.get('gender') or None
    return fields


def _number_taken(number: str, student_id: Optional[str] = None) -> Optional[ActionResult]:
    query = Student.query.filter_by(student_id_number=number)
    if student_id:
        query = query.filter(Student.id != student_id)
    if query.first() is None:
        return None
    return ActionResult.fail("A student with this ID number already exists.", kind=CONFLICT,
                             errors={'studentIdNumber': "Student ID number already in use."})


@store_action("create student")
def create_student(data: Mapping[str, Any]) -> ActionResult:
    errors: Dict[str, str] = {}
    record_id = _identifier(data, errors)
    fields = _student_fields(data, errors)
    if errors:
        return _invalid(errors)
    taken = _number_taken(fields['student_id_number'])
    if taken is not None:
        return taken
    student = Student(**fields)
    if record_id:
        student.id = record_id
    db.session.add(student)
    db.session.commit()
    return ActionResult.ok("Student created successfully.", data=student.to_dict())


def get_student(student_id: str) -> ActionResult:
    return _loaded(Student, student_id, "Student")


@store_action("update student")
def update_student(student_id: str, data: Mapping[str, Any]) -> ActionResult:
    student = db.session.get(Student, student_id)
    if student is None:
        return ActionResult.fail("Student not found.", kind=NOT_FOUND)
    errors: Dict[str, str] = {}
    fields = _student_fields(data, errors)
    if errors:
        return _invalid(errors)
    taken = _number_taken(fields['student_id_number'], student_id)
    if taken is not None:
        return taken
    for attr, value in fields.items():
        setattr(student, attr, value)
    db.session.commit()
    return ActionResult.ok("Student updated successfully.", data=student.to_dict())


@store_action("delete student")
def delete_student(student_id: str) -> ActionResult:
    """Delete one student. Submitted marks naming them are left as they are."""

    student = db.session.get(Student, student_id)
    if student is None:
        return ActionResult.fail("Student not found.", kind=NOT_FOUND)
    name = student.full_name
    db.session.delete(student)
    db.session.commit()
    _logger.info("student deleted", extra={"student_id": student_id})
    return ActionResult.ok(f"Student {name} deleted.")


def _delete_students(query, scope: str) -> ActionResult:
    removed = query.delete(synchronize_session=False)
    db.session.commit()
    db.session.expire_all()
    _logger.info("students deleted", extra={"scope": scope, "students_removed": removed})
    if not removed:
        return ActionResult.ok("No students to delete.", data={'studentsRemoved': 0})
    return ActionResult.ok(f"Deleted {removed} student record(s).",
                           data={'studentsRemoved': removed})


@store_action("delete students")
def delete_students_by_class(class_id: str) -> ActionResult:
    if not class_id:
        return ActionResult.fail("Class ID is required.", errors={'classId': "Class ID is required."})
    if not _exists(SchoolClass, class_id):
        return ActionResult.fail("Class not found.", kind=NOT_FOUND)
    return _delete_students(Student.query.filter_by(class_id=class_id), class_id)


@store_action("delete all students")
def delete_all_students() -> ActionResult:
    return _delete_students(Student.query, "all")


def get_students_by_class(class_id: str) -> List[Dict[str, Any]]:
    students = (Student.query.filter_by(class_id=class_id)
                .order_by(Student.last_name, Student.first_name).all())
    return [s.to_dict() for s in students]


# ---------------------------------------------------------------------------
# Terms and exams
# ---------------------------------------------------------------------------

def _term_fields(data: Mapping[str, Any], errors: Dict[str, str]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {'name': _text(data, 'name', errors, label="Term name")}
    try:
        fields['year'] = int(data.get('year'))
    except (TypeError, ValueError):
        errors['year'] = "Year must be a number."
    fields['start_date'] = _date(data, 'startDate', errors, required=True)
    fields['end_date'] = _date(data, 'endDate', errors, required=True)
    if fields['start_date'] and fields['end_date'] and fields['start_date'] > fields['end_date']:
        errors['endDate'] = "End date cannot be before start date."
    return fields


@store_action("create term")
def create_term(data: Mapping[str, Any]) -> ActionResult:
    errors: Dict[str, str] = {}
    record_id = _identifier(data, errors)
    fields = _term_fields(data, errors)
    if errors:
        return _invalid(errors)
    term = Term(**fields)
    if record_id:
        term.id = record_id
    db.session.add(term)
    db.session.commit()
    return ActionResult.ok("Term created successfully.", data=term.to_dict())


@store_action("update term")
def update_term(term_id: str, data: Mapping[str, Any]) -> ActionResult:
    term = db.session.get(Term, term_id)
    if term is None:
        return ActionResult.fail("Term not found.", kind=NOT_FOUND)
    errors: Dict[str, str] = {}
    fields = _term_fields(data, errors)
    if errors:
        return _invalid(errors)
    for attr, value in fields.items():
        setattr(term, attr, value)
    db.session.commit()
    return ActionResult.ok("Term updated successfully.", data=term.to_dict())


def get_term(term_id: str) -> ActionResult:
    return _loaded(Term, term_id, "Term")


def list_terms() -> List[Dict[str, Any]]:
    terms = Term.query.order_by(Term.year.desc(), Term.start_date.desc()).all()
    return [t.to_dict() for t in terms]


def _exam_fields(data: Mapping[str, Any], errors: Dict[str, str]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        'name': _text(data, 'name', errors, label="Exam name"),
        'description': data.get('description') or None,
        'exam_date': _date(data, 'examDate', errors),
        'marks_submission_deadline': _date(data, 'marksSubmissionDeadline', errors),
        'stream': data.get('stream') or None,
    }
    term_id = data.get('termId')
    if not _exists(Term, term_id):
        errors['termId'] = "Term does not exist."
    fields['term_id'] = term_id
    max_marks = data.get('maxMarks')
    if isinstance(max_marks, bool) or not isinstance(max_marks, (int, float)) \
            or not math.isfinite(max_marks) or max_marks <= 0:
        errors['maxMarks'] = "Max marks must be a number greater than 0."
    else:
        fields['max_marks'] = float(max_marks)
    for field, attr, model in (('classId', 'class_id', SchoolClass),
                               ('subjectId', 'subject_id', Subject),
                               ('teacherId', 'teacher_id', Teacher),
                               ('gradingPolicyId', 'grading_policy_id', GradingPolicy)):
        value = data.get(field) or None
        if value and not _exists(model, value):
            errors[field] = f"{field} refers to a record that does not exist."
        fields[attr] = value
    category = data.get('category') or None
    if category is not None and category not in EXAM_CATEGORIES:
        errors['category'] = "Category must be Formative or Summative."
    fields['category'] = category
    return fields


@store_action("create exam")
def create_exam(data: Mapping[str, Any]) -> ActionResult:
    errors: Dict[str, str] = {}
    record_id = _identifier(data, errors)
    fields = _exam_fields(data, errors)
    if errors:
        return _invalid(errors)
    exam = Exam(**fields)
    if record_id:
        exam.id = record_id
    db.session.add(exam)
    db.session.commit()
    return ActionResult.ok("Exam created successfully.", data=exam.to_dict())


@store_action("update exam")
def update_exam(exam_id: str, data: Mapping[str, Any]) -> ActionResult:
    exam = db.session.get(Exam, exam_id)
    if exam is None:
        return ActionResult.fail("Exam not found.", kind=NOT_FOUND)
    errors: Dict[str, str] = {}
    fields = _exam_fields(data, errors)
    if errors:
        return _invalid(errors)
    for attr, value in fields.items():
        setattr(exam, attr, value)
    db.session.commit()
    return ActionResult.ok("Exam updated successfully.", data=exam.to_dict())


@store_action("delete exam")
def delete_exam(exam_id: str) -> ActionResult:
    """Delete an exam together with every mark submission recorded against it."""

    exam = db.session.get(Exam, exam_id)
    if exam is None:
        return ActionResult.fail("Exam not found.", kind=NOT_FOUND)
    name = exam.name
    removed = MarkSubmission.query.filter_by(exam_id=exam_id).delete(synchronize_session=False)
    db.session.delete(exam)
    db.session.commit()
    _logger.info("exam deleted", extra={"exam_id": exam_id, "submissions_removed": removed})
    return ActionResult.ok(
        f"Exam {name} deleted along with {removed} mark submission(s).",
        data={'submissionsRemoved': removed})


def get_exam(exam_id: str) -> ActionResult:
    return _loaded(Exam, exam_id, "Exam")


def list_exams(term_id: Optional[str] = None) -> List[Dict[str, Any]]:
    query = Exam.query
    if term_id:
        query = query.filter_by(term_id=term_id)
    return [e.to_dict() for e in query.order_by(Exam.name).all()]


# ---------------------------------------------------------------------------
# Grading policies
# ---------------------------------------------------------------------------

def _apply_policy(policy: GradingPolicy, data: Mapping[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    name = _text(data, 'name', errors, label="Policy name")
    scale_errors = validate_scale(data.get('scale'))
    errors.update(scale_errors)
    if errors:
        return errors
    policy.name = name
    policy.scale = [item.to_dict() for item in scale_from_json(data['scale'])]
    policy.is_default = bool(data.get('isDefault', policy.is_default))
    return errors


def _promote_default(policy: GradingPolicy) -> None:
    """Make ``policy`` the only default and copy its scale into the settings."""

    (GradingPolicy.query.filter(GradingPolicy.id != policy.id, GradingPolicy.is_default.is_(True))
     .update({GradingPolicy.is_default: False}, synchronize_session=False))
    _settings().default_grading_scale = list(policy.scale)


@store_action("create grading policy")
def create_grading_policy(data: Mapping[str, Any]) -> ActionResult:
    errors: Dict[str, str] = {}
    record_id = _identifier(data, errors)
    policy = GradingPolicy()
    errors.update(_apply_policy(policy, data))
    if errors:
        return _invalid(errors)
    if record_id:
        policy.id = record_id
    db.session.add(policy)
    db.session.flush()
    if policy.is_default:
        _promote_default(policy)
    db.session.commit()
    return ActionResult.ok("Grading policy created successfully.", data=policy.to_dict())


@store_action("update grading policy")
def update_grading_policy(policy_id: str, data: Mapping[str, Any]) -> ActionResult:
    """Update a policy. Leaving out ``isDefault`` keeps the current flag.

    The default policy cannot be un-defaulted directly; another policy has to
    be made default instead.
    """

    policy = db.session.get(GradingPolicy, policy_id)
    if policy is None:
        return ActionResult.fail("Grading policy not found.", kind=NOT_FOUND)
    if policy.is_default and not data.get('isDefault', True):
        return ActionResult.fail("Make another grading policy the default first.", kind=CONFLICT,
                                 errors={'isDefault': "The default policy cannot be cleared."})
    errors = _apply_policy(policy, data)
    if errors:
        db.session.rollback()
        return _invalid(errors)
    if policy.is_default:
        _promote_default(policy)
    db.session.commit()
    return ActionResult.ok("Grading policy updated successfully.", data=policy.to_dict())


@store_action("delete grading policy")
def delete_grading_policy(policy_id: str) -> ActionResult:
    policy = db.session.get(GradingPolicy, policy_id)
    if policy is None:
        return ActionResult.fail("Grading policy not found.", kind=NOT_FOUND)
    if policy.is_default:
        return ActionResult.fail("The default grading policy cannot be deleted.", kind=CONFLICT)
    used_by = Exam.query.filter_by(grading_policy_id=policy_id).count()
    if used_by:
        return ActionResult.fail(
            f"Grading policy is used by {used_by} exam(s) and cannot be deleted.", kind=CONFLICT)
    name = policy.name
    db.session.delete(policy)
    db.session.commit()
    return ActionResult.ok(f"Grading policy {name} deleted.")


def get_grading_policy(policy_id: str) -> ActionResult:
    return _loaded(GradingPolicy, policy_id, "Grading policy")


def list_grading_policies() -> List[Dict[str, Any]]:
    return [p.to_dict() for p in GradingPolicy.query.order_by(GradingPolicy.name).all()]


# ---------------------------------------------------------------------------
# Mark review
# ---------------------------------------------------------------------------

def _latest_submission(key: AssessmentKey) -> Optional[MarkSubmission]:
    return (MarkSubmission.query.filter_by(assessment_id=key.composite)
            .order_by(MarkSubmission.date_submitted.desc()).first())


def _review_rows(submission: MarkSubmission, exam: Exam, stream: Optional[str],
                 scale) -> List[Dict[str, Any]]:
    students = {s.student_id_number: s for s in
                Student.query.filter_by(class_id=submission.class_id).all()}
    rows = []
    for mark in submission.submitted_marks or []:
        student = students.get(mark.get('studentId'))
        if stream and (student is None or student.stream != stream):
            continue
        rows.append({
            'studentIdNumber': mark.get('studentId'),
            'studentName': student.full_name if student else 'Unknown Student',
            'score': mark.get('score'),
            'grade': resolve_grade(mark.get('score'), exam.max_marks, scale),
        })
    return rows


def _review_target(class_id: str, subject_id: str, exam_id: str
                   ) -> Tuple[Optional[Exam], Optional[MarkSubmission], Optional[ActionResult]]:
    exam = db.session.get(Exam, exam_id)
    if exam is None:
        return None, None, ActionResult.fail("Exam not found.", kind=NOT_FOUND)
    submission = _latest_submission(AssessmentKey(exam_id, class_id, subject_id))
    if submission is None:
        return exam, None, ActionResult.fail("No marks have been submitted for this assessment.",
                                             kind=NOT_FOUND)
    return exam, submission, None


def _exam_scale(exam: Exam):
    return scale_for_exam(exam, GradingPolicy.query.all(), load_context().default_scale)


def get_marks_for_review(class_id: str, subject_id: str, exam_id: str,
                         stream: Optional[str] = None) -> ActionResult:
    """Latest submission for the assessment with student names and grades."""

    exam, submission, failure = _review_target(class_id, subject_id, exam_id)
    if failure:
        return failure
    data = submission.to_dict()
    data['maxMarks'] = exam.max_marks
    data['marks'] = _review_rows(submission, exam, stream, _exam_scale(exam))
    return ActionResult.ok("Marks loaded for review.", data=data)


def _pending_submission(submission_id: str) -> Tuple[Optional[MarkSubmission], Optional[ActionResult]]:
    submission = db.session.get(MarkSubmission, submission_id)
    if submission is None:
        return None, ActionResult.fail("Submission not found.", kind=NOT_FOUND)
    if submission.dos_status != DosStatus.PENDING:
        return None, ActionResult.fail(
            f"Submission has already been {submission.dos_status.value.lower()}.", kind=CONFLICT)
    return submission, None


@store_action("approve submission")
def approve_submission(submission_id: str) -> ActionResult:
    submission, failure = _pending_submission(submission_id)
    if failure:
        return failure
    submission.dos_status = DosStatus.APPROVED
    submission.dos_reject_reason = None
    submission.dos_last_reviewed_at = utcnow()
    db.session.commit()
    _logger.info("submission approved", extra={"submission_id": submission_id})
    return ActionResult.ok("Marks approved.", data=submission.to_dict())


@store_action("reject submission")
def reject_submission(submission_id: str, reason: Optional[str]) -> ActionResult:
    if not reason or not str(reason).strip():
        return ActionResult.fail("A reason is required to reject marks.",
                                 errors={'reason': "Rejection reason is required."})
    submission, failure = _pending_submission(submission_id)
    if failure:
        return failure
    submission.dos_status = DosStatus.REJECTED
    submission.dos_reject_reason = str(reason).strip()
    submission.dos_last_reviewed_at = utcnow()
    db.session.commit()
    _logger.info("submission rejected", extra={"submission_id": submission_id})
    return ActionResult.ok("Marks rejected.", data=submission.to_dict())


@store_action("update marks")
def update_marks_by_dos(submission_id: str, marks: Any) -> ActionResult:
    submission = db.session.get(MarkSubmission, submission_id)
    if submission is None:
        return ActionResult.fail("Submission not found.", kind=NOT_FOUND)
    exam = db.session.get(Exam, submission.exam_id)
    if exam is None:
        return ActionResult.fail("Exam for this submission no longer exists.", kind=NOT_FOUND)
    cleaned, errors = validate_marks(marks, exam.max_marks)
    if errors:
        return ActionResult.fail("Some marks are invalid.", errors=errors)
    scores = [m['score'] for m in cleaned if m['score'] is not None]
    submission.submitted_marks = cleaned
    submission.student_count = len(scores)
    submission.average_score = sum(scores) / len(scores) if scores else None
    submission.dos_edited = True
    submission.dos_last_edited_at = utcnow()
    db.session.commit()
    _logger.info("marks edited by dos", extra={"submission_id": submission_id})
    return ActionResult.ok("Marks updated successfully.", data=submission.to_dict())


def export_submission_csv(submission_id: str) -> ActionResult:
    """Render a submission as CSV: Student ID, Student Name, Score, Grade."""

    submission = db.session.get(MarkSubmission, submission_id)
    if submission is None:
        return ActionResult.fail("Submission not found.", kind=NOT_FOUND)
    exam = db.session.get(Exam, submission.exam_id)
    if exam is None:
        return ActionResult.fail("Exam for this submission no longer exists.", kind=NOT_FOUND)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(['Student ID', 'Student Name', 'Score', 'Grade'])
    for row in _review_rows(submission, exam, None, _exam_scale(exam)):
        score = row['score']
        writer.writerow([row['studentIdNumber'], row['studentName'],
                         '' if score is None else f"{score:g}", row['grade']])
    filename = re.sub(r"[^A-Za-z0-9]+", "_", submission.assessment_name).strip('_') + ".csv"
    return ActionResult.ok("Export ready.", data={'filename': filename,
                                                  'content': buffer.getvalue()})


def assessment_analysis(class_id: str, subject_id: str, exam_id: str,
                        stream: Optional[str] = None) -> ActionResult:
    """Summary statistics, score histogram, ranking and grade counts for one assessment."""

    exam, submission, failure = _review_target(class_id, subject_id, exam_id)
    if failure:
        return failure
    rows = _review_rows(submission, exam, stream, _exam_scale(exam))
    scores = [row['score'] for row in rows if row['score'] is not None]
    distribution: Dict[str, int] = {}
    for row in rows:
        distribution[row['grade']] = distribution.get(row['grade'], 0) + 1
    return ActionResult.ok("Analysis ready.", data={
        'assessmentName': submission.assessment_name,
        'maxMarks': exam.max_marks,
        'statistics': summarize(scores).to_dict(),
        'scoreFrequency': score_frequency(scores, exam.max_marks),
        'gradeDistribution': [{'grade': g, 'count': c} for g, c in distribution.items()],
        'rankedMarks': rank_marks(rows),
    })


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def _school_details(config: Mapping[str, Any]) -> Dict[str, str]:
    return {
        'name': config.get('SCHOOL_NAME', ''),
        'address': config.get('SCHOOL_ADDRESS', ''),
        'location': config.get('SCHOOL_LOCATION', ''),
        'phone': config.get('SCHOOL_PHONE', ''),
        'email': config.get('SCHOOL_EMAIL', ''),
        'logoUrl': config.get('SCHOOL_LOGO_URL', ''),
        'theme': config.get('SCHOOL_THEME', ''),
    }


def _next_term(config: Mapping[str, Any]) -> Dict[str, str]:
    return {
        'begins': config.get('NEXT_TERM_BEGINS', ''),
        'ends': config.get('NEXT_TERM_ENDS', ''),
        'fees': config.get('NEXT_TERM_FEES', ''),
    }


def generate_report_card(student_id: str, term_id: str) -> ActionResult:
    """Assemble the report card of one student for one term from approved marks."""

    student = db.session.get(Student, student_id)
    if student is None:
        return ActionResult.fail("Student not found.", kind=NOT_FOUND)
    term = db.session.get(Term, term_id)
    if term is None:
        return ActionResult.fail("Term not found.", kind=NOT_FOUND)
    school_class = db.session.get(SchoolClass, student.class_id)
    if school_class is None:
        return ActionResult.fail("Student's class not found.", kind=NOT_FOUND)

    teachers = Teacher.query.all()
    exams = Exam.query.filter_by(term_id=term_id).all()
    keys = relevant_assessment_keys(student, exams, teachers)
    latest: Dict[str, MarkSubmission] = {}
    if keys:
        approved = (MarkSubmission.query
                    .filter(MarkSubmission.assessment_id.in_([k.composite for k in keys]),
                            MarkSubmission.dos_status == DosStatus.APPROVED)
                    .order_by(MarkSubmission.date_submitted).all())
        for submission in approved:
            latest[submission.assessment_id] = submission

    policies = GradingPolicy.query.all()
    scale = scale_for_exam(None, policies, load_context().default_scale)
    config = current_app.config
    report, skipped = build_report_card(
        student, term, school_class, exams, latest.values(), Subject.query.all(), teachers,
        scale, _school_details(config), _next_term(config),
        report_title=f"{term.name} {term.year} Report Card",
    )
    report['skipped'] = [reason.to_dict() for reason in skipped]
    return ActionResult.ok("Report card generated.", data=report)


def get_attendance_summary(class_id: str, on: date) -> ActionResult:
    """Tallies and per-status student lists for a class on one date."""

    school_class = db.session.get(SchoolClass, class_id)
    if school_class is None:
        return ActionResult.fail("Class not found.", kind=NOT_FOUND)
    students = {s.id: s for s in school_class.students}
    counts = {status.value: 0 for status in AttendanceStatus}
    details: Dict[str, List[Dict[str, str]]] = {status.value: [] for status in AttendanceStatus}
    sheet = db.session.get(DailyAttendance, DailyAttendance.key_for(class_id, on))
    if sheet is not None:
        for entry in sheet.entries:
            student = students.get(entry.student_id)
            counts[entry.status.value] += 1
            details[entry.status.value].append({
                'studentId': entry.student_id,
                'studentName': student.full_name if student else 'Unknown Student',
            })
    return ActionResult.ok("Attendance summary loaded.", data={
        'classId': class_id,
        'className': school_class.name,
        'date': on.isoformat(),
        'recorded': sheet is not None,
        'totalStudents': len(students),
        'counts': counts,
        'details': details,
    })
