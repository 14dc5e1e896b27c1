import csv
import io
from datetime import date

import pytest

import dos_service
from conftest import FULL_SCALE, marks_for
from domain import DosStatus
from grading import scale_from_json
from models import (Exam, GeneralSettings, GradingPolicy, MarkSubmission, SchoolClass, Student,
                    Subject, Teacher, TeachingAssignment, db)
from reconciler import aggregate_submissions
from teacher_service import save_attendance, submit_marks

STEADY = [65, 70, 58, 68, 72, 61]


def test_general_settings_template_is_created_on_first_read(ctx):
    result = dos_service.get_general_settings()
    assert result.success
    assert result.data['isDefaultTemplate'] is True
    assert [t['grade'] for t in result.data['defaultGradingScale']] == ['A', 'B']
    assert db.session.get(GeneralSettings, 1) is not None


def test_updating_settings_clears_template_flag(ctx):
    dos_service.get_general_settings()
    result = dos_service.update_general_settings({'teacherDashboardResourcesText': 'See wiki'})
    assert result.success
    assert result.data['isDefaultTemplate'] is False
    assert result.data['teacherDashboardResourcesText'] == 'See wiki'


def test_settings_validation(school):
    result = dos_service.update_general_settings({
        'currentTermId': 'missing',
        'defaultGradingScale': [{'grade': 'A', 'minScore': 90, 'maxScore': 80}],
        'dosGlobalAnnouncementType': 'urgent',
    })
    assert not result.success
    assert set(result.errors) == {'currentTermId', 'defaultGradingScale.scale[0].minScore',
                                  'dosGlobalAnnouncementType'}
    assert db.session.get(GeneralSettings, 1).current_term_id == 'term1'


def test_create_teacher_and_duplicate_email(ctx):
    created = dos_service.create_teacher({'name': 'Ann', 'email': 'Ann@Example.org', 'role': 'dos'})
    assert created.success
    assert created.data['role'] == 'dos'
    duplicate = dos_service.create_teacher({'name': 'Ann B', 'email': 'ann@example.org'})
    assert duplicate.kind == 'conflict'
    invalid = dos_service.create_teacher({'name': '', 'email': 'nope', 'role': 'janitor'})
    assert set(invalid.errors) == {'name', 'email', 'role'}


def test_update_teacher_assignments_moves_class_teacher(school):
    result = dos_service.update_teacher_assignments(
        't1', ['c1'], [{'subjectId': 'math', 'classIds': ['c1']},
                       {'subjectId': 'eng', 'classIds': ['c2', 'c2']}])
    assert result.success, result.errors
    assert result.data['subjectsAssigned'] == [{'subjectId': 'math', 'classIds': ['c1']},
                                               {'subjectId': 'eng', 'classIds': ['c2']}]
    assert db.session.get(SchoolClass, 'c1').class_teacher_id == 't1'

    dos_service.update_teacher_assignments('t1', [], [])
    assert db.session.get(SchoolClass, 'c1').class_teacher_id is None
    assert dos_service.get_teacher('t1').data['subjectsAssigned'] == []


def test_update_teacher_assignments_validates_references(school):
    result = dos_service.update_teacher_assignments(
        't1', ['c9'], [{'subjectId': 'art', 'classIds': ['c1']},
                       {'subjectId': 'math', 'classIds': ['c9']}])
    assert set(result.errors) == {'classTeacherFor[0]', 'subjectAssignments[0].subjectId',
                                  'subjectAssignments[1].classIds[0]'}
    assert dos_service.update_teacher_assignments('ghost', [], []).kind == 'not_found'


def test_subject_code_and_delete_rules(school):
    assert 'code' in dos_service.create_subject({'name': 'Physics', 'code': 'ph'}).errors
    created = dos_service.create_subject({'id': 'phy', 'name': 'Physics', 'code': 'PHYS'})
    assert created.success

    blocked = dos_service.delete_subject('math')
    assert blocked.kind == 'conflict'
    assert dos_service.delete_subject('phy').success
    assert dos_service.delete_subject('phy').kind == 'not_found'


def test_identifiers_with_underscores_are_refused(school):
    result = dos_service.create_class({'id': 'senior_3', 'name': 'Senior 3'})
    assert 'id' in result.errors


def test_student_creation_rules(school):
    ok = dos_service.create_student({'studentIdNumber': 'S99', 'firstName': 'New',
                                     'lastName': 'Pupil', 'classId': 'c1', 'stream': 'East',
                                     'dateOfBirth': '2010-04-01'})
    assert ok.success
    assert ok.data['dateOfBirth'] == '2010-04-01'
    duplicate = dos_service.create_student({'studentIdNumber': 'S99', 'firstName': 'A',
                                            'lastName': 'B', 'classId': 'c1'})
    assert duplicate.kind == 'conflict'
    bad = dos_service.create_student({'studentIdNumber': 'S100', 'firstName': 'A',
                                      'lastName': 'B', 'classId': 'c1', 'stream': 'North'})
    assert 'stream' in bad.errors
    assert len(dos_service.get_students_by_class('c1')) == 7


def test_term_dates_must_be_ordered(school):
    result = dos_service.create_term({'name': 'Term 2', 'year': 2024, 'startDate': '2024-06-01',
                                      'endDate': '2024-05-01'})
    assert 'endDate' in result.errors
    ok = dos_service.update_term('term1', {'name': 'Term One', 'year': 2024,
                                           'startDate': '2024-02-01', 'endDate': '2024-05-02'})
    assert ok.data['name'] == 'Term One'


def test_exam_validation(school):
    result = dos_service.create_exam({'name': 'Test', 'termId': 'term1', 'maxMarks': 0,
                                      'category': 'Oral', 'subjectId': 'art'})
    assert set(result.errors) == {'maxMarks', 'category', 'subjectId'}
    ok = dos_service.create_exam({'id': 'final', 'name': 'Final', 'termId': 'term1',
                                  'maxMarks': 80, 'classId': 'c1'})
    assert ok.success
    assert ok.data['maxMarks'] == 80

    for max_marks in (float('nan'), float('inf'), True):
        result = dos_service.create_exam({'name': 'Test', 'termId': 'term1', 'maxMarks': max_marks})
        assert set(result.errors) == {'maxMarks'}


def test_delete_exam_cascades_submissions(school):
    submit_marks('t1', 'mid_c1_math', marks_for(STEADY))
    submit_marks('t1', 'mid_c2_math', marks_for([50, 60], prefix='X'))
    submit_marks('t1', 'quiz_c1_math', marks_for([10, 12]))
    result = dos_service.delete_exam('mid')
    assert result.success
    assert result.data == {'submissionsRemoved': 2}
    assert MarkSubmission.query.count() == 1


def test_grading_policy_default_handling(school):
    scale = [{'grade': 'P', 'minScore': 50, 'maxScore': 100},
             {'grade': 'F', 'minScore': 0, 'maxScore': 49.99}]
    created = dos_service.create_grading_policy({'id': 'passfail', 'name': 'Pass/Fail',
                                                 'scale': scale, 'isDefault': True})
    assert created.success
    assert db.session.get(GradingPolicy, 'standard').is_default is False
    assert db.session.get(GeneralSettings, 1).default_grading_scale[0]['grade'] == 'P'

    assert dos_service.delete_grading_policy('passfail').kind == 'conflict'

    cleared = dos_service.update_grading_policy('passfail', {'name': 'Pass/Fail', 'scale': scale,
                                                             'isDefault': False})
    assert cleared.kind == 'conflict'
    assert db.session.get(GradingPolicy, 'passfail').is_default is True
    renamed = dos_service.update_grading_policy('passfail', {'name': 'Pass or Fail',
                                                             'scale': scale})
    assert renamed.data['isDefault'] is True
    assert GradingPolicy.query.filter_by(is_default=True).count() == 1

    dos_service.update_grading_policy('standard', {'name': 'Standard', 'scale': scale})
    dos_service.create_exam({'name': 'Graded', 'termId': 'term1', 'maxMarks': 10,
                             'gradingPolicyId': 'standard'})
    assert dos_service.delete_grading_policy('standard').kind == 'conflict'

    invalid = dos_service.create_grading_policy({'name': 'Broken', 'scale': []})
    assert 'scale' in invalid.errors


def test_review_transitions_are_terminal(school):
    submission = submit_marks('t1', 'mid_c1_math', marks_for(STEADY)).data
    assert dos_service.reject_submission(submission['id'], ' ').kind == 'validation'
    assert dos_service.approve_submission(submission['id']).success
    again = dos_service.reject_submission(submission['id'], 'Too late')
    assert again.kind == 'conflict'
    assert db.session.get(MarkSubmission, submission['id']).dos_status == DosStatus.APPROVED
    assert dos_service.approve_submission('missing').kind == 'not_found'


def test_update_marks_by_dos(school):
    submission = submit_marks('t1', 'quiz_c1_math', marks_for([10, 12])).data
    out_of_range = dos_service.update_marks_by_dos(submission['id'], marks_for([10, 30]))
    assert 'marks[1].score' in out_of_range.errors

    result = dos_service.update_marks_by_dos(submission['id'], marks_for([14, 16, None]))
    assert result.success
    assert result.data['dosEdited'] is True
    assert result.data['studentCount'] == 2
    assert result.data['averageScore'] == pytest.approx(15)


def test_marks_for_review_filters_by_stream(school):
    submit_marks('t1', 'mid_c1_math', marks_for(STEADY))
    everyone = dos_service.get_marks_for_review('c1', 'math', 'mid')
    assert len(everyone.data['marks']) == 6
    assert everyone.data['marks'][0] == {'studentIdNumber': 'S1', 'studentName': 'Pupil1 Okello',
                                         'score': 65, 'grade': 'C'}
    east = dos_service.get_marks_for_review('c1', 'math', 'mid', stream='East')
    assert [m['studentIdNumber'] for m in east.data['marks']] == ['S1', 'S3', 'S5']
    assert dos_service.get_marks_for_review('c1', 'eng', 'mid').kind == 'not_found'


def test_export_submission_csv(school):
    submission = submit_marks('t1', 'quiz_c1_math', marks_for([16, None])).data
    result = dos_service.export_submission_csv(submission['id'])
    rows = list(csv.reader(io.StringIO(result.data['content'])))
    assert rows[0] == ['Student ID', 'Student Name', 'Score', 'Grade']
    assert rows[1] == ['S1', 'Pupil1 Okello', '16', 'A']
    assert rows[2] == ['S2', 'Pupil2 Okello', '', 'N/A']
    assert result.data['filename'] == 'Senior_1_Mathematics_Quiz.csv'


def test_assessment_analysis(school):
    submit_marks('t1', 'mid_c1_math', marks_for(STEADY))
    result = dos_service.assessment_analysis('c1', 'math', 'mid')
    assert result.success
    stats = result.data['statistics']
    assert stats['count'] == 6
    assert stats['highest'] == 72
    assert result.data['rankedMarks'][0]['studentIdNumber'] == 'S5'
    assert result.data['rankedMarks'][0]['rank'] == 1
    assert sum(b['count'] for b in result.data['scoreFrequency']) == 6


def test_attendance_summary(school):
    empty = dos_service.get_attendance_summary('c1', date(2024, 3, 4))
    assert empty.data['recorded'] is False
    assert empty.data['counts'] == {'present': 0, 'absent': 0, 'late': 0}
    assert empty.data['totalStudents'] == 6

    save_attendance('t2', 'c1', date(2024, 3, 4), [{'studentId': 's1', 'status': 'absent'},
                                                   {'studentId': 's2', 'status': 'present'}])
    summary = dos_service.get_attendance_summary('c1', date(2024, 3, 4))
    assert summary.data['counts'] == {'present': 1, 'absent': 1, 'late': 0}
    assert summary.data['details']['absent'] == [{'studentId': 's1',
                                                  'studentName': 'Pupil1 Okello'}]
    assert dos_service.get_attendance_summary('c9', date(2024, 3, 4)).kind == 'not_found'


@pytest.mark.parametrize('getter, model_id', [
    (dos_service.get_student, 's1'),
    (dos_service.get_class, 'c1'),
    (dos_service.get_subject, 'math'),
    (dos_service.get_term, 'term1'),
    (dos_service.get_exam, 'mid'),
    (dos_service.get_grading_policy, 'standard'),
])
def test_records_can_be_loaded_by_id(school, getter, model_id):
    result = getter(model_id)
    assert result.success
    assert result.data['id'] == model_id
    assert getter('missing').kind == 'not_found'


def test_update_teacher_details(school):
    result = dos_service.update_teacher('t1', {'name': 'Grace Nabirye',
                                               'email': 'Grace@School.org', 'role': 'dos'})
    assert result.success, result.errors
    assert result.data['email'] == 'grace@school.org'
    assert result.data['role'] == 'dos'
    assert result.data['subjectsAssigned'][0]['subjectId'] == 'math'

    email = db.session.get(Teacher, 't2').email
    taken = dos_service.update_teacher('t1', {'name': 'Grace', 'email': email})
    assert taken.kind == 'conflict'
    assert dos_service.update_teacher('ghost', {'name': 'X', 'email': 'x@y.z'}).kind == 'not_found'


def test_delete_teacher_releases_classes(school):
    result = dos_service.delete_teacher('t2')
    assert result.success
    assert result.data == {'classesReleased': 1}
    assert db.session.get(Teacher, 't2') is None
    assert db.session.get(SchoolClass, 'c1').class_teacher_id is None
    assert TeachingAssignment.query.filter_by(teacher_id='t2').count() == 0
    assert dos_service.delete_teacher('t2').kind == 'not_found'


def test_update_subject(school):
    result = dos_service.update_subject('math', {'name': 'Mathematics', 'code': 'MATH'})
    assert result.data['code'] == 'MATH'
    assert 'code' in dos_service.update_subject('math', {'name': 'Maths', 'code': 'M1'}).errors
    assert db.session.get(Subject, 'math').code == 'MATH'
    assert dos_service.update_subject('art', {'name': 'Art'}).kind == 'not_found'


def test_update_student(school):
    result = dos_service.update_student('s1', {'studentIdNumber': 'S1', 'firstName': 'Pupil1',
                                               'lastName': 'Okello', 'classId': 'c1',
                                               'stream': 'West'})
    assert result.success, result.errors
    assert result.data['stream'] == 'West'

    taken = dos_service.update_student('s1', {'studentIdNumber': 'S2', 'firstName': 'A',
                                              'lastName': 'B', 'classId': 'c1'})
    assert taken.kind == 'conflict'
    moved = dos_service.update_student('s1', {'studentIdNumber': 'S1', 'firstName': 'A',
                                              'lastName': 'B', 'classId': 'c9'})
    assert 'classId' in moved.errors
    assert db.session.get(Student, 's1').class_id == 'c1'


def test_deleted_student_report_cards(school):
    submission = submit_marks('t1', 'mid_c1_math', marks_for(STEADY)).data
    dos_service.approve_submission(submission['id'])

    assert dos_service.delete_student('s2').success
    assert dos_service.generate_report_card('s2', 'term1').kind == 'not_found'
    assert dos_service.delete_student('s2').kind == 'not_found'

    remaining = dos_service.generate_report_card('s1', 'term1')
    assert remaining.success
    assert remaining.data['results']


def test_bulk_student_deletion(school):
    assert dos_service.delete_students_by_class('c9').kind == 'not_found'
    assert dos_service.delete_students_by_class('').kind == 'validation'

    by_class = dos_service.delete_students_by_class('c2')
    assert by_class.data == {'studentsRemoved': 1}
    assert dos_service.get_students_by_class('c1')

    everyone = dos_service.delete_all_students()
    assert everyone.data == {'studentsRemoved': 6}
    assert Student.query.count() == 0
    assert dos_service.delete_all_students().message == "No students to delete."


def test_deleted_class_is_skipped_when_aggregating(school):
    submission = submit_marks('t1', 'mid_c2_math', marks_for([50, 60], prefix='X')).data
    dos_service.approve_submission(submission['id'])

    assert dos_service.delete_class('c2').kind == 'conflict'
    dos_service.delete_students_by_class('c2')
    result = dos_service.delete_class('c2')
    assert result.success
    assert TeachingAssignment.query.filter_by(class_id='c2').count() == 0
    assert MarkSubmission.query.filter_by(class_id='c2').count() == 1

    batch = aggregate_submissions(
        MarkSubmission.query.all(), {e.id: e for e in Exam.query.all()},
        {s.id: s for s in Subject.query.all()}, lambda exam: scale_from_json(FULL_SCALE),
        classes={c.id: c for c in SchoolClass.query.all()})
    assert batch.succeeded == []
    assert [s.reason for s in batch.skipped] == ['class no longer exists']
