from datetime import date

import pytest

from conftest import marks_for
from domain import AssessmentKey, DosStatus
from dos_service import approve_submission, generate_report_card
from grading import GradingScaleItem
from models import (Exam, MarkSubmission, SchoolClass, Student, Subject, Teacher,
                    TeachingAssignment, Term)
from reports import build_report_card, relevant_assessment_keys, teacher_initials
from teacher_service import submit_marks

SCALE = [GradingScaleItem('B', 70, 79.99), GradingScaleItem('A', 80, 100)]


def _teacher(teacher_id, name, *pairs):
    teacher = Teacher(id=teacher_id, name=name, email=f'{teacher_id}@example.org')
    for subject_id, class_id in pairs:
        teacher.assignments.append(TeachingAssignment(subject_id=subject_id, class_id=class_id))
    return teacher


def _submission(exam_id, subject_id, score, teacher_id='t1'):
    key = AssessmentKey(exam_id, 'c1', subject_id)
    return MarkSubmission(id=key.composite, teacher_id=teacher_id, assessment_id=key.composite,
                          exam_id=exam_id, class_id='c1', subject_id=subject_id,
                          submitted_marks=[{'studentId': 'S1', 'score': score}],
                          dos_status=DosStatus.APPROVED)


@pytest.fixture
def records():
    return {
        'student': Student(id='st1', student_id_number='S1', first_name='Ann', last_name='Okello',
                           class_id='c1', stream='East'),
        'term': Term(id='term1', name='Term 1', year=2024, start_date=date(2024, 2, 1),
                     end_date=date(2024, 5, 1)),
        'class': SchoolClass(id='c1', name='Senior 1', streams=['East', 'West']),
        'subjects': [Subject(id='math', name='Mathematics'), Subject(id='eng', name='English')],
        'teachers': [_teacher('t1', 'John Kato', ('math', 'c1')),
                     _teacher('t2', 'Mary Auma', ('eng', 'c1'))],
        'exams': [
            Exam(id='bot', name='Beginning', term_id='term1', max_marks=20, category='Formative'),
            Exam(id='mot', name='Middle', term_id='term1', max_marks=50, category='Formative'),
            Exam(id='eot', name='End', term_id='term1', max_marks=100, category='Summative'),
        ],
    }


def test_report_card_combines_formative_and_summative(records):
    submissions = [
        _submission('bot', 'math', 10),
        _submission('mot', 'math', 40),
        _submission('eot', 'math', 75),
        _submission('eot', 'eng', 100, teacher_id='t2'),
        _submission('gone', 'math', 50),
    ]
    report, skipped = build_report_card(
        records['student'], records['term'], records['class'], records['exams'], submissions,
        records['subjects'], records['teachers'], SCALE, {'name': 'Test School'},
        {'begins': '2024-05-20'}, report_title='Term 1 Report')

    english, maths = report['results']
    assert english['subjectName'] == 'English'
    assert english['finalScore'] == pytest.approx(80)
    assert english['grade'] == 'A'
    assert english['teacherInitials'] == 'MA'

    assert maths['aoiTotal'] == pytest.approx(13)
    assert maths['eotScore'] == pytest.approx(60)
    assert maths['finalScore'] == pytest.approx(73)
    assert maths['grade'] == 'B'
    assert maths['descriptor'].startswith('Achieved good')

    assert report['summary']['average'] == pytest.approx(76.5)
    assert [tier['grade'] for tier in report['summary']['gradeScale']] == ['A', 'B']
    assert report['schoolDetails']['name'] == 'Test School'
    assert report['comments'] == {'classTeacher': '', 'headTeacher': ''}
    assert [s.key for s in skipped] == ['gone_c1_math']


def test_relevant_keys_respect_class_and_stream(records):
    exams = records['exams'] + [
        Exam(id='other', name='Other', term_id='term1', max_marks=100, class_id='c2'),
        Exam(id='west', name='West only', term_id='term1', max_marks=100, stream='West'),
        Exam(id='mathonly', name='Maths', term_id='term1', max_marks=100, subject_id='math'),
    ]
    keys = relevant_assessment_keys(records['student'], exams, records['teachers'])
    assert AssessmentKey('eot', 'c1', 'eng') in keys
    assert AssessmentKey('mathonly', 'c1', 'math') in keys
    assert not any(k.exam_id in ('other', 'west') for k in keys)
    assert AssessmentKey('mathonly', 'c1', 'eng') not in keys


def test_teacher_initials():
    assert teacher_initials('John Kato') == 'JK'
    assert teacher_initials(None) == 'N/A'


def test_generate_report_card_uses_only_approved_marks(school):
    quiz = submit_marks('t1', 'quiz_c1_math', marks_for([15, 12, 14, 16, 13, 11]))
    mid = submit_marks('t1', 'mid_c1_math', marks_for([70, 65, 68, 72, 61, 66]))
    submit_marks('t2', 'mid_c1_eng', marks_for([90, 85, 88, 92, 81, 86]))
    assert quiz.success and mid.success
    approve_submission(quiz.data['id'])
    approve_submission(mid.data['id'])

    result = generate_report_card('s1', 'term1')
    assert result.success
    rows = result.data['results']
    assert [row['subjectName'] for row in rows] == ['Mathematics']
    # 15/20 -> 15/20 formative, 70/100 -> 56/80 summative
    assert rows[0]['finalScore'] == pytest.approx(71)
    assert rows[0]['grade'] == 'B'
    assert result.data['reportTitle'] == 'Term 1 2024 Report Card'
    assert result.data['skipped'] == []


def test_generate_report_card_unknown_student(school):
    result = generate_report_card('nobody', 'term1')
    assert not result.success
    assert result.kind == 'not_found'
