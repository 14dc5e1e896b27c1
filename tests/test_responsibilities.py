from types import SimpleNamespace

import pytest

from domain import AssessmentKey, SubjectAssignment, SystemContext
from responsibilities import (ASSIGNED, CLASS_TEACHER, compute_responsibilities,
                              precondition_notice, subjects_taught_in_class)


def teacher(teacher_id, *assignments):
    return SimpleNamespace(
        id=teacher_id,
        subject_assignments=[SubjectAssignment(subject, list(classes))
                             for subject, classes in assignments],
    )


def exam(exam_id, term='term1', class_id=None, subject_id=None):
    return SimpleNamespace(id=exam_id, name=exam_id.title(), term_id=term, class_id=class_id,
                           subject_id=subject_id, max_marks=100)


CONTEXT = SystemContext(current_term_id='term1')
CLASSES = [
    SimpleNamespace(id='c1', name='Senior 1', class_teacher_id='t2'),
    SimpleNamespace(id='c2', name='Senior 2', class_teacher_id=None),
]
SUBJECTS = [SimpleNamespace(id='math', name='Mathematics'),
            SimpleNamespace(id='eng', name='English')]
TEACHERS = [
    teacher('t1', ('math', ['c1', 'c2'])),
    teacher('t2', ('eng', ['c1'])),
]
EXAMS = [
    exam('mid'),
    exam('quiz', subject_id='math'),
    exam('essay', subject_id='eng'),
    exam('old', term='term0'),
]


def compute(teacher_id, context=CONTEXT, teachers=TEACHERS, classes=CLASSES, subjects=SUBJECTS,
            exams=EXAMS):
    return compute_responsibilities(teacher_id, context, teachers, classes, subjects, exams)


def test_assigned_path_covers_general_and_subject_exams():
    result = compute('t1')
    assert set(result) == {
        AssessmentKey('mid', 'c1', 'math'),
        AssessmentKey('mid', 'c2', 'math'),
        AssessmentKey('quiz', 'c1', 'math'),
        AssessmentKey('quiz', 'c2', 'math'),
    }
    assert all(o.sources == {ASSIGNED} for o in result.values())


def test_class_teacher_oversees_subjects_taught_by_others():
    result = compute('t2')
    quiz = AssessmentKey('quiz', 'c1', 'math')
    assert quiz in result
    assert result[quiz].sources == {CLASS_TEACHER}
    assert result[quiz].name == 'Senior 1 - Mathematics - Quiz'
    assert set(result) == {
        AssessmentKey('mid', 'c1', 'eng'),
        AssessmentKey('essay', 'c1', 'eng'),
        AssessmentKey('mid', 'c1', 'math'),
        AssessmentKey('quiz', 'c1', 'math'),
    }


def test_both_paths_collapse_to_one_obligation():
    classes = [SimpleNamespace(id='c1', name='Senior 1', class_teacher_id='t1'),
               SimpleNamespace(id='c2', name='Senior 2', class_teacher_id=None)]
    result = compute('t1', classes=classes)
    key = AssessmentKey('quiz', 'c1', 'math')
    assert result[key].sources == {ASSIGNED, CLASS_TEACHER}
    # Class-teacher duties for c1 add the English exams; math keys are not duplicated.
    assert len(result) == 6


def test_class_scoped_exam_is_limited_to_its_class_for_class_teachers():
    exams = [exam('c2only', class_id='c2', subject_id='math')]
    assert compute('t2', exams=exams) == {}


@pytest.mark.parametrize('teacher_id', [None, '', '   ', 'undefined'])
def test_invalid_identity_yields_nothing(teacher_id):
    assert compute(teacher_id) == {}
    assert precondition_notice(teacher_id, CONTEXT).startswith('Invalid teacher identifier')


def test_unconfigured_settings_yield_nothing():
    template = SystemContext(current_term_id='term1', is_default_template=True)
    assert compute('t1', context=template) == {}
    assert 'not been configured' in precondition_notice('t1', template)

    no_term = SystemContext()
    assert compute('t1', context=no_term) == {}
    assert 'No current term' in precondition_notice('t1', no_term)


def test_unknown_teacher_yields_nothing():
    assert compute('ghost') == {}


def test_deleted_subject_and_class_are_skipped():
    teachers = [teacher('t1', ('math', ['c1', 'gone']), ('deleted', ['c1']))]
    result = compute('t1', teachers=teachers)
    assert set(result) == {AssessmentKey('mid', 'c1', 'math'), AssessmentKey('quiz', 'c1', 'math')}


def test_subjects_taught_in_class_scans_every_teacher():
    assert subjects_taught_in_class('c1', TEACHERS) == ['math', 'eng']
    assert subjects_taught_in_class('c2', TEACHERS) == ['math']
    assert subjects_taught_in_class('c9', TEACHERS) == []
