"""Database models for the gradebook.

SQLAlchemy is used as the ORM layer. The models include:

* :class:`Teacher` and :class:`TeachingAssignment` – staff and the
  (subject, class) pairs they teach.
* :class:`SchoolClass`, :class:`Subject`, :class:`Student`.
* :class:`Term`, :class:`Exam`, :class:`GradingPolicy` and the singleton
  :class:`GeneralSettings` row that marks the current term.
* :class:`MarkSubmission` – a teacher's marks for one assessment.
* :class:`DailyAttendance` / :class:`AttendanceEntry` – one attendance sheet
  per class per calendar date, enforced by a unique constraint on
  ``(class_id, date)``.

Identifiers are opaque strings so that composite assessment keys
(``examId_classId_subjectId``) can be formed from them. Mark submissions hold
plain id columns rather than foreign keys: the exam, class or subject they
refer to may be deleted after the fact and readers skip such records.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from flask_sqlalchemy import SQLAlchemy

from domain import AssessmentKey, AttendanceStatus, DosStatus, Role, SubjectAssignment
from grading import GradingScaleItem, scale_from_json

db = SQLAlchemy()

GENERAL_SETTINGS_ID = 1


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so we store naive values."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls):
    return db.Enum(enum_cls, values_callable=lambda members: [m.value for m in members],
                   native_enum=False, validate_strings=True)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


class Teacher(db.Model):
    """A member of staff.

    ``role`` is optional; a missing role is treated as a plain teacher.
    Class-teacher duties are a back-reference from :class:`SchoolClass`.
    """

    __tablename__ = 'teacher'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    name: str = db.Column(db.String(120), nullable=False)
    email: str = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(_enum(Role), nullable=True)

    assignments = db.relationship('TeachingAssignment', backref='teacher', lazy=True,
                                  cascade='all, delete-orphan',
                                  order_by='TeachingAssignment.id')

    @property
    def effective_role(self) -> Role:
        return self.role or Role.TEACHER

    @property
    def subject_assignments(self) -> List[SubjectAssignment]:
        """Teaching assignments grouped by subject, in insertion order."""

        grouped: Dict[str, SubjectAssignment] = {}
        for row in self.assignments:
            entry = grouped.setdefault(row.subject_id, SubjectAssignment(row.subject_id))
            if row.class_id not in entry.class_ids:
                entry.class_ids.append(row.class_id)
        return list(grouped.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.effective_role.value,
            'subjectsAssigned': [
                {'subjectId': sa.subject_id, 'classIds': sa.class_ids}
                for sa in self.subject_assignments
            ],
        }

    def __repr__(self) -> str:
        return f"<Teacher {self.name}>"


class TeachingAssignment(db.Model):
    """One (subject, class) pair taught by a teacher."""

    __tablename__ = 'teaching_assignment'

    id: int = db.Column(db.Integer, primary_key=True)
    teacher_id: str = db.Column(db.String(64), db.ForeignKey('teacher.id'), nullable=False)
    subject_id: str = db.Column(db.String(64), nullable=False)
    class_id: str = db.Column(db.String(64), nullable=False)

    __table_args__ = (db.UniqueConstraint('teacher_id', 'subject_id', 'class_id',
                                          name='uix_assignment_teacher_subject_class'),)

    def __repr__(self) -> str:
        return (f"<TeachingAssignment teacher={self.teacher_id} subject={self.subject_id} "
                f"class={self.class_id}>")


class SchoolClass(db.Model):
    """A class (form) such as "Senior 2". At most one class teacher."""

    __tablename__ = 'school_class'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    name: str = db.Column(db.String(80), nullable=False)
    level: str = db.Column(db.String(40), nullable=False, default='')
    streams = db.Column(db.JSON, nullable=False, default=list)
    class_teacher_id: Optional[str] = db.Column(db.String(64), db.ForeignKey('teacher.id'),
                                                nullable=True)

    students = db.relationship('Student', backref='school_class', lazy=True)
    class_teacher = db.relationship('Teacher', backref='classes_overseen', lazy=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'level': self.level,
            'streams': list(self.streams or []),
            'classTeacherId': self.class_teacher_id,
        }

    def __repr__(self) -> str:
        return f"<SchoolClass {self.name}>"


class Subject(db.Model):
    __tablename__ = 'subject'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    name: str = db.Column(db.String(80), nullable=False)
    code: Optional[str] = db.Column(db.String(4), nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'code': self.code}

    def __repr__(self) -> str:
        return f"<Subject {self.name}>"


class Student(db.Model):
    """A student. ``student_id_number`` is the official number marks are keyed by."""

    __tablename__ = 'student'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    student_id_number: str = db.Column(db.String(40), unique=True, nullable=False)
    first_name: str = db.Column(db.String(80), nullable=False)
    last_name: str = db.Column(db.String(80), nullable=False)
    class_id: str = db.Column(db.String(64), db.ForeignKey('school_class.id'), nullable=False)
    stream: Optional[str] = db.Column(db.String(40), nullable=True)
    date_of_birth: Optional[date] = db.Column(db.Date, nullable=True)
    gender: Optional[str] = db.Column(db.String(10), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'studentIdNumber': self.student_id_number,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'classId': self.class_id,
            'stream': self.stream,
            'dateOfBirth': _iso(self.date_of_birth),
            'gender': self.gender,
        }

    def __repr__(self) -> str:
        return f"<Student {self.student_id_number}>"


class Term(db.Model):
    __tablename__ = 'term'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    name: str = db.Column(db.String(80), nullable=False)
    year: int = db.Column(db.Integer, nullable=False)
    start_date: date = db.Column(db.Date, nullable=False)
    end_date: date = db.Column(db.Date, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'year': self.year,
            'startDate': _iso(self.start_date),
            'endDate': _iso(self.end_date),
        }

    def __repr__(self) -> str:
        return f"<Term {self.name} {self.year}>"


class Exam(db.Model):
    """An exam scheduled in a term.

    With no ``class_id``/``subject_id`` the exam is general and applies to
    every class and subject a teacher is responsible for.
    """

    __tablename__ = 'exam'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    name: str = db.Column(db.String(120), nullable=False)
    term_id: str = db.Column(db.String(64), db.ForeignKey('term.id'), nullable=False)
    max_marks: float = db.Column(db.Float, nullable=False)
    description: Optional[str] = db.Column(db.Text, nullable=True)
    exam_date: Optional[date] = db.Column(db.Date, nullable=True)
    class_id: Optional[str] = db.Column(db.String(64), nullable=True)
    subject_id: Optional[str] = db.Column(db.String(64), nullable=True)
    teacher_id: Optional[str] = db.Column(db.String(64), nullable=True)
    stream: Optional[str] = db.Column(db.String(40), nullable=True)
    marks_submission_deadline: Optional[date] = db.Column(db.Date, nullable=True)
    grading_policy_id: Optional[str] = db.Column(db.String(64), nullable=True)
    category: Optional[str] = db.Column(db.String(20), nullable=True)  # Formative, Summative

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'termId': self.term_id,
            'maxMarks': self.max_marks,
            'description': self.description,
            'examDate': _iso(self.exam_date),
            'classId': self.class_id,
            'subjectId': self.subject_id,
            'teacherId': self.teacher_id,
            'stream': self.stream,
            'marksSubmissionDeadline': _iso(self.marks_submission_deadline),
            'gradingPolicyId': self.grading_policy_id,
            'category': self.category,
        }

    def __repr__(self) -> str:
        return f"<Exam {self.name} term={self.term_id}>"


class GradingPolicy(db.Model):
    __tablename__ = 'grading_policy'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    name: str = db.Column(db.String(80), nullable=False)
    scale = db.Column(db.JSON, nullable=False, default=list)
    is_default: bool = db.Column(db.Boolean, nullable=False, default=False)

    @property
    def scale_items(self) -> List[GradingScaleItem]:
        return scale_from_json(self.scale)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'scale': list(self.scale or []),
                'isDefault': bool(self.is_default)}

    def __repr__(self) -> str:
        return f"<GradingPolicy {self.name}>"


class GeneralSettings(db.Model):
    """System-wide settings; a single row with ``id == 1``.

    ``is_default_template`` stays true until an administrator saves the
    settings for the first time.
    """

    __tablename__ = 'general_settings'

    id: int = db.Column(db.Integer, primary_key=True, default=GENERAL_SETTINGS_ID)
    current_term_id: Optional[str] = db.Column(db.String(64), nullable=True)
    default_grading_scale = db.Column(db.JSON, nullable=False, default=list)
    mark_submission_time_zone: str = db.Column(db.String(64), nullable=False, default='UTC')
    global_marks_submission_deadline: Optional[date] = db.Column(db.Date, nullable=True)
    dos_global_announcement_text: Optional[str] = db.Column(db.Text, nullable=True)
    dos_global_announcement_type: Optional[str] = db.Column(db.String(10), nullable=True)
    teacher_dashboard_resources_text: Optional[str] = db.Column(db.Text, nullable=True)
    is_default_template: bool = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'currentTermId': self.current_term_id,
            'defaultGradingScale': list(self.default_grading_scale or []),
            'markSubmissionTimeZone': self.mark_submission_time_zone,
            'globalMarksSubmissionDeadline': _iso(self.global_marks_submission_deadline),
            'dosGlobalAnnouncementText': self.dos_global_announcement_text,
            'dosGlobalAnnouncementType': self.dos_global_announcement_type,
            'teacherDashboardResourcesText': self.teacher_dashboard_resources_text,
            'isDefaultTemplate': bool(self.is_default_template),
        }


class MarkSubmission(db.Model):
    """A teacher's marks for one assessment.

    History is append-only: a resubmission after rejection creates a new row.
    ``dos_status`` moves from Pending to Approved or Rejected exactly once.
    """

    __tablename__ = 'mark_submission'

    id: str = db.Column(db.String(64), primary_key=True, default=new_id)
    teacher_id: str = db.Column(db.String(64), nullable=False, index=True)
    assessment_id: str = db.Column(db.String(200), nullable=False, index=True)
    exam_id: str = db.Column(db.String(64), nullable=False, index=True)
    class_id: str = db.Column(db.String(64), nullable=False)
    subject_id: str = db.Column(db.String(64), nullable=False)
    assessment_name: str = db.Column(db.String(255), nullable=False)
    date_submitted: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    submitted_marks = db.Column(db.JSON, nullable=False, default=list)
    student_count: int = db.Column(db.Integer, nullable=False, default=0)
    average_score: Optional[float] = db.Column(db.Float, nullable=True)
    status: str = db.Column(db.String(60), nullable=False)
    anomaly_explanations = db.Column(db.JSON, nullable=False, default=list)
    dos_status = db.Column(_enum(DosStatus), nullable=False, default=DosStatus.PENDING)
    dos_reject_reason: Optional[str] = db.Column(db.Text, nullable=True)
    dos_last_reviewed_at: Optional[datetime] = db.Column(db.DateTime, nullable=True)
    dos_edited: bool = db.Column(db.Boolean, nullable=False, default=False)
    dos_last_edited_at: Optional[datetime] = db.Column(db.DateTime, nullable=True)

    @property
    def key(self) -> AssessmentKey:
        return AssessmentKey(self.exam_id, self.class_id, self.subject_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'teacherId': self.teacher_id,
            'assessmentId': self.assessment_id,
            'assessmentName': self.assessment_name,
            'dateSubmitted': self.date_submitted.isoformat() if self.date_submitted else None,
            'studentCount': self.student_count,
            'averageScore': self.average_score,
            'status': self.status,
            'submittedMarks': list(self.submitted_marks or []),
            'anomalyExplanations': list(self.anomaly_explanations or []),
            'dosStatus': self.dos_status.value if self.dos_status else None,
            'dosRejectReason': self.dos_reject_reason,
            'dosEdited': bool(self.dos_edited),
        }

    def __repr__(self) -> str:
        return f"<MarkSubmission {self.assessment_id} status={self.dos_status}>"


class DailyAttendance(db.Model):
    """Attendance sheet for one class on one date, keyed ``classId_date``."""

    __tablename__ = 'daily_attendance'

    id: str = db.Column(db.String(120), primary_key=True)
    class_id: str = db.Column(db.String(64), db.ForeignKey('school_class.id'), nullable=False)
    teacher_id: str = db.Column(db.String(64), nullable=False)
    date = db.Column(db.Date, nullable=False)
    last_updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)

    entries = db.relationship('AttendanceEntry', backref='sheet', lazy=True,
                              cascade='all, delete-orphan', order_by='AttendanceEntry.id')

    __table_args__ = (db.UniqueConstraint('class_id', 'date', name='uix_attendance_class_date'),)

    @staticmethod
    def key_for(class_id: str, on: date) -> str:
        return f"{class_id}_{on.isoformat()}"

    def __repr__(self) -> str:
        return f"<DailyAttendance class={self.class_id} date={self.date}>"


class AttendanceEntry(db.Model):
    __tablename__ = 'attendance_entry'

    id: int = db.Column(db.Integer, primary_key=True)
    attendance_id: str = db.Column(db.String(120), db.ForeignKey('daily_attendance.id'),
                                   nullable=False)
    student_id: str = db.Column(db.String(64), nullable=False)
    status = db.Column(_enum(AttendanceStatus), nullable=False)

    __table_args__ = (db.UniqueConstraint('attendance_id', 'student_id',
                                          name='uix_attendance_entry_student'),)

    def __repr__(self) -> str:
        return f"<AttendanceEntry student={self.student_id} status={self.status}>"
