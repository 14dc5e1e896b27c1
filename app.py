"""Flask application exposing the gradebook JSON API.

This module wires together the configuration, database models, logging
middleware and route definitions. Callers are authenticated upstream; the
identity provider forwards the caller's id in ``X-Teacher-ID`` and role in
``X-User-Role``.

Teacher endpoints (caller is the teacher in ``X-Teacher-ID``):

* ``GET /api/teacher/assessments`` – assessments still awaiting marks.
* ``GET /api/teacher/assessments/<assessment_id>/students`` – students to mark.
* ``POST /api/teacher/marks`` – submit marks; runs the anomaly checks.
* ``GET /api/teacher/submissions`` – submission history, newest first.
* ``GET /api/teacher/dashboard`` – assignments, deadlines and notifications.
* ``GET /api/teacher/class-management`` – overview of classes the caller heads.
* ``POST /api/teacher/attendance`` – create or replace a day's attendance sheet.
* ``GET /api/teacher/attendance?classId=`` – attendance history of a class.

D.O.S. endpoints (role ``dos`` or ``admin``) live under ``/api/dos/``: general
settings, teachers and their assignments, classes, subjects, students,
terms, exams, grading policies, mark review (approve, reject, edit, CSV
export, analysis), report cards and attendance summaries.

Service results map to status codes: validation 400, not found 404,
conflict 409, store unavailable 503.
"""

from __future__ import annotations

import os
from datetime import date
from typing import Any, Dict, Mapping, Optional

from flask import Flask, Response, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import BadRequest, Forbidden, HTTPException

import dos_service
import teacher_service
from anomalies import AnomalyThresholds, RuleBasedClassifier
from app_logging import configure_logging, get_logger, get_request_id
from config import Config
from correlation_id_middleware import caller_role, caller_teacher_id, init_correlation_id
from db_utils import retry_with_backoff
from domain import Role
from models import db
from request_logging_middleware import init_request_logging
from results import CONFLICT, NOT_FOUND, STORE_UNAVAILABLE, VALIDATION, ActionResult

_STATUS_BY_KIND = {
    VALIDATION: 400,
    NOT_FOUND: 404,
    CONFLICT: 409,
    STORE_UNAVAILABLE: 503,
}

_logger = get_logger("gradecentral.app")


def _respond(result: ActionResult, success_status: int = 200):
    if result.success:
        return jsonify(result.to_dict()), success_status
    return jsonify(result.to_dict()), _STATUS_BY_KIND.get(result.kind, 400)


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('Missing JSON payload')
    return data


def _parse_day(value: Optional[str], field: str = 'date') -> date:
    if not value:
        return date.today()
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise BadRequest(f'Invalid {field} format, must be YYYY-MM-DD')


def _required_args(*names: str) -> Dict[str, str]:
    values = {name: request.args.get(name, '').strip() for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise BadRequest(f"Missing {', '.join(missing)} parameter")
    return values


def _require_dos() -> None:
    if caller_role() not in (Role.DOS, Role.ADMIN):
        raise Forbidden('This operation is restricted to the Director of Studies')


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    """Application factory used by both the server and tests.

    ``overrides`` are applied on top of :class:`config.Config` before the
    database is bound, so tests can point the app at an in-memory database.
    Tables are created at start-up; an unreachable database is logged and
    surfaces later through the 503 handler.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    configure_logging(app.config.get('LOG_LEVEL'))
    app.json.sort_keys = False
    db.init_app(app)
    app.extensions['grade_classifier'] = RuleBasedClassifier(
        AnomalyThresholds.from_config(app.config))

    init_correlation_id(app)
    init_request_logging(app)

    with app.app_context():
        try:
            retry_with_backoff(db.create_all)
        except SQLAlchemyError as exc:
            _logger.warning("database unavailable during table creation",
                            extra={"error": str(exc)})

    @app.route('/health')
    def healthcheck():
        """Lightweight endpoint used by router health checks."""
        return jsonify({'status': 'ok'}), 200

    # -- Teacher -----------------------------------------------------------

    @app.route('/api/teacher/assessments', methods=['GET'])
    def api_teacher_assessments():
        return jsonify(teacher_service.get_teacher_assessments(caller_teacher_id()))

    @app.route('/api/teacher/assessments/<assessment_id>/students', methods=['GET'])
    def api_assessment_students(assessment_id: str):
        return jsonify(teacher_service.get_students_for_assessment(assessment_id))

    @app.route('/api/teacher/marks', methods=['POST'])
    def api_submit_marks():
        data = _json_body()
        result = teacher_service.submit_marks(caller_teacher_id(), data.get('assessmentId', ''),
                                              data.get('marks'))
        return _respond(result, 201)

    @app.route('/api/teacher/submissions', methods=['GET'])
    def api_submission_history():
        return jsonify(teacher_service.get_submission_history(caller_teacher_id()))

    @app.route('/api/teacher/dashboard', methods=['GET'])
    def api_teacher_dashboard():
        return jsonify(teacher_service.get_teacher_dashboard(caller_teacher_id()))

    @app.route('/api/teacher/class-management', methods=['GET'])
    def api_class_management():
        return jsonify(teacher_service.get_class_teacher_data(caller_teacher_id()))

    @app.route('/api/teacher/attendance', methods=['POST'])
    def api_save_attendance():
        data = _json_body()
        if not data.get('classId'):
            raise BadRequest('classId is required')
        result = teacher_service.save_attendance(caller_teacher_id(), data['classId'],
                                                 _parse_day(data.get('date')),
                                                 data.get('records', []))
        return _respond(result)

    @app.route('/api/teacher/attendance', methods=['GET'])
    def api_attendance_history():
        class_id = _required_args('classId')['classId']
        return jsonify(teacher_service.get_attendance_history(caller_teacher_id(), class_id))

    # -- D.O.S.: settings and staff ------------------------------------------

    @app.route('/api/dos/settings', methods=['GET'])
    def api_get_settings():
        _require_dos()
        return _respond(dos_service.get_general_settings())

    @app.route('/api/dos/settings', methods=['PUT'])
    def api_update_settings():
        _require_dos()
        return _respond(dos_service.update_general_settings(_json_body()))

    @app.route('/api/dos/teachers', methods=['GET'])
    def api_list_teachers():
        _require_dos()
        return jsonify(dos_service.list_teachers())

    @app.route('/api/dos/teachers', methods=['POST'])
    def api_create_teacher():
        _require_dos()
        return _respond(dos_service.create_teacher(_json_body()), 201)

    @app.route('/api/dos/teachers/<teacher_id>', methods=['GET'])
    def api_get_teacher(teacher_id: str):
        _require_dos()
        return _respond(dos_service.get_teacher(teacher_id))

    @app.route('/api/dos/teachers/<teacher_id>', methods=['PUT'])
    def api_update_teacher(teacher_id: str):
        _require_dos()
        return _respond(dos_service.update_teacher(teacher_id, _json_body()))

    @app.route('/api/dos/teachers/<teacher_id>', methods=['DELETE'])
    def api_delete_teacher(teacher_id: str):
        _require_dos()
        return _respond(dos_service.delete_teacher(teacher_id))

    @app.route('/api/dos/teachers/<teacher_id>/assignments', methods=['PUT'])
    def api_update_assignments(teacher_id: str):
        _require_dos()
        data = _json_body()
        result = dos_service.update_teacher_assignments(
            teacher_id, data.get('classTeacherFor', []), data.get('subjectAssignments', []))
        return _respond(result)

    # -- D.O.S.: school structure --------------------------------------------

    @app.route('/api/dos/classes', methods=['GET'])
    def api_list_classes():
        _require_dos()
        return jsonify(dos_service.list_classes())

    @app.route('/api/dos/classes', methods=['POST'])
    def api_create_class():
        _require_dos()
        return _respond(dos_service.create_class(_json_body()), 201)

    @app.route('/api/dos/classes/<class_id>', methods=['GET'])
    def api_get_class(class_id: str):
        _require_dos()
        return _respond(dos_service.get_class(class_id))

    @app.route('/api/dos/classes/<class_id>', methods=['PUT'])
    def api_update_class(class_id: str):
        _require_dos()
        return _respond(dos_service.update_class(class_id, _json_body()))

    @app.route('/api/dos/classes/<class_id>', methods=['DELETE'])
    def api_delete_class(class_id: str):
        _require_dos()
        return _respond(dos_service.delete_class(class_id))

    @app.route('/api/dos/classes/<class_id>/students', methods=['DELETE'])
    def api_delete_class_students(class_id: str):
        _require_dos()
        return _respond(dos_service.delete_students_by_class(class_id))

    @app.route('/api/dos/subjects', methods=['GET'])
    def api_list_subjects():
        _require_dos()
        return jsonify(dos_service.list_subjects())

    @app.route('/api/dos/subjects', methods=['POST'])
    def api_create_subject():
        _require_dos()
        return _respond(dos_service.create_subject(_json_body()), 201)

    @app.route('/api/dos/subjects/<subject_id>', methods=['GET'])
    def api_get_subject(subject_id: str):
        _require_dos()
        return _respond(dos_service.get_subject(subject_id))

    @app.route('/api/dos/subjects/<subject_id>', methods=['PUT'])
    def api_update_subject(subject_id: str):
        _require_dos()
        return _respond(dos_service.update_subject(subject_id, _json_body()))

    @app.route('/api/dos/subjects/<subject_id>', methods=['DELETE'])
    def api_delete_subject(subject_id: str):
        _require_dos()
        return _respond(dos_service.delete_subject(subject_id))

    @app.route('/api/dos/students', methods=['GET'])
    def api_list_students():
        _require_dos()
        class_id = _required_args('classId')['classId']
        return jsonify(dos_service.get_students_by_class(class_id))

    @app.route('/api/dos/students', methods=['POST'])
    def api_create_student():
        _require_dos()
        return _respond(dos_service.create_student(_json_body()), 201)

    @app.route('/api/dos/students', methods=['DELETE'])
    def api_delete_all_students():
        _require_dos()
        return _respond(dos_service.delete_all_students())

    @app.route('/api/dos/students/<student_id>', methods=['GET'])
    def api_get_student(student_id: str):
        _require_dos()
        return _respond(dos_service.get_student(student_id))

    @app.route('/api/dos/students/<student_id>', methods=['PUT'])
    def api_update_student(student_id: str):
        _require_dos()
        return _respond(dos_service.update_student(student_id, _json_body()))

    @app.route('/api/dos/students/<student_id>', methods=['DELETE'])
    def api_delete_student(student_id: str):
        _require_dos()
        return _respond(dos_service.delete_student(student_id))

    # -- D.O.S.: terms, exams and grading ----------------------------------

    @app.route('/api/dos/terms', methods=['GET'])
    def api_list_terms():
        _require_dos()
        return jsonify(dos_service.list_terms())

    @app.route('/api/dos/terms', methods=['POST'])
    def api_create_term():
        _require_dos()
        return _respond(dos_service.create_term(_json_body()), 201)

    @app.route('/api/dos/terms/<term_id>', methods=['GET'])
    def api_get_term(term_id: str):
        _require_dos()
        return _respond(dos_service.get_term(term_id))

    @app.route('/api/dos/terms/<term_id>', methods=['PUT'])
    def api_update_term(term_id: str):
        _require_dos()
        return _respond(dos_service.update_term(term_id, _json_body()))

    @app.route('/api/dos/exams', methods=['GET'])
    def api_list_exams():
        _require_dos()
        return jsonify(dos_service.list_exams(request.args.get('termId')))

    @app.route('/api/dos/exams', methods=['POST'])
    def api_create_exam():
        _require_dos()
        return _respond(dos_service.create_exam(_json_body()), 201)

    @app.route('/api/dos/exams/<exam_id>', methods=['GET'])
    def api_get_exam(exam_id: str):
        _require_dos()
        return _respond(dos_service.get_exam(exam_id))

    @app.route('/api/dos/exams/<exam_id>', methods=['PUT'])
    def api_update_exam(exam_id: str):
        _require_dos()
        return _respond(dos_service.update_exam(exam_id, _json_body()))

    @app.route('/api/dos/exams/<exam_id>', methods=['DELETE'])
    def api_delete_exam(exam_id: str):
        _require_dos()
        return _respond(dos_service.delete_exam(exam_id))

    @app.route('/api/dos/grading-policies', methods=['GET'])
    def api_list_policies():
        _require_dos()
        return jsonify(dos_service.list_grading_policies())

    @app.route('/api/dos/grading-policies', methods=['POST'])
    def api_create_policy():
        _require_dos()
        return _respond(dos_service.create_grading_policy(_json_body()), 201)

    @app.route('/api/dos/grading-policies/<policy_id>', methods=['GET'])
    def api_get_policy(policy_id: str):
        _require_dos()
        return _respond(dos_service.get_grading_policy(policy_id))

    @app.route('/api/dos/grading-policies/<policy_id>', methods=['PUT'])
    def api_update_policy(policy_id: str):
        _require_dos()
        return _respond(dos_service.update_grading_policy(policy_id, _json_body()))

    @app.route('/api/dos/grading-policies/<policy_id>', methods=['DELETE'])
    def api_delete_policy(policy_id: str):
        _require_dos()
        return _respond(dos_service.delete_grading_policy(policy_id))

    # -- D.O.S.: mark review and reporting -------------------------------------

    @app.route('/api/dos/marks-review', methods=['GET'])
    def api_marks_review():
        _require_dos()
        args = _required_args('classId', 'subjectId', 'examId')
        return _respond(dos_service.get_marks_for_review(
            args['classId'], args['subjectId'], args['examId'], request.args.get('stream')))

    @app.route('/api/dos/submissions/<submission_id>/approve', methods=['POST'])
    def api_approve_submission(submission_id: str):
        _require_dos()
        return _respond(dos_service.approve_submission(submission_id))

    @app.route('/api/dos/submissions/<submission_id>/reject', methods=['POST'])
    def api_reject_submission(submission_id: str):
        _require_dos()
        return _respond(dos_service.reject_submission(submission_id, _json_body().get('reason')))

    @app.route('/api/dos/submissions/<submission_id>/marks', methods=['PUT'])
    def api_update_marks(submission_id: str):
        _require_dos()
        return _respond(dos_service.update_marks_by_dos(submission_id, _json_body().get('marks')))

    @app.route('/api/dos/submissions/<submission_id>/export', methods=['GET'])
    def api_export_submission(submission_id: str):
        _require_dos()
        result = dos_service.export_submission_csv(submission_id)
        if not result.success:
            return _respond(result)
        return Response(
            result.data['content'],
            mimetype='text/csv',
            headers={'Content-Disposition': f"attachment; filename={result.data['filename']}"},
        )

    @app.route('/api/dos/analysis', methods=['GET'])
    def api_assessment_analysis():
        _require_dos()
        args = _required_args('classId', 'subjectId', 'examId')
        return _respond(dos_service.assessment_analysis(
            args['classId'], args['subjectId'], args['examId'], request.args.get('stream')))

    @app.route('/api/dos/report-cards/<student_id>', methods=['GET'])
    def api_report_card(student_id: str):
        _require_dos()
        term_id = _required_args('termId')['termId']
        return _respond(dos_service.generate_report_card(student_id, term_id))

    @app.route('/api/dos/attendance-summary', methods=['GET'])
    def api_attendance_summary():
        _require_dos()
        class_id = _required_args('classId')['classId']
        return _respond(dos_service.get_attendance_summary(
            class_id, _parse_day(request.args.get('date'))))

    # -- Errors ------------------------------------------------------------

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        response = jsonify({'error': error.description, 'status': error.code,
                            'request_id': get_request_id()})
        response.status_code = error.code or 500
        return response

    def handle_db_error(error):
        db.session.rollback()
        _logger.error("database operation failed", exc_info=error)
        return jsonify({'error': 'Database temporarily unavailable', 'status': 503,
                        'request_id': get_request_id()}), 503

    app.register_error_handler(SQLAlchemyError, handle_db_error)

    return app


app = create_app()

if __name__ == '__main__':
    # Gunicorn is used in production; this starts the development server.
    port = int(os.environ.get('PORT', 8000))
    app.run(host='0.0.0.0', port=port, debug=True)
