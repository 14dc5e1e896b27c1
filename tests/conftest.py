import os
import sys
from datetime import date
from pathlib import Path
from typing import Generator

import pytest

# The module-level app in ``app.py`` is built at import time; keep it off disk.
os.environ['DATABASE_URL'] = 'sqlite://'
sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import create_app  # noqa: E402
from domain import Role  # noqa: E402
from models import (GENERAL_SETTINGS_ID, Exam, GeneralSettings, GradingPolicy,  # noqa: E402
                    SchoolClass, Student, Subject, Teacher, TeachingAssignment, Term, db)

FULL_SCALE = [
    {'grade': 'A', 'minScore': 80, 'maxScore': 100},
    {'grade': 'B', 'minScore': 70, 'maxScore': 79.99},
    {'grade': 'C', 'minScore': 60, 'maxScore': 69.99},
    {'grade': 'D', 'minScore': 50, 'maxScore': 59.99},
    {'grade': 'E', 'minScore': 0, 'maxScore': 49.99},
]

TEACHER_HEADERS = {'X-Teacher-ID': 't1'}
DOS_HEADERS = {'X-Teacher-ID': 'dos1', 'X-User-Role': 'dos'}


def populate_school() -> None:
    """A small school with two classes, two subject teachers and a D.O.S.

    * ``t1`` teaches Mathematics in ``c1`` and ``c2``.
    * ``t2`` teaches English in ``c1`` and is class teacher of ``c1``.
    * ``mid`` is a general summative exam and ``quiz`` a formative
      Mathematics exam, both in the current term ``term1``; ``old`` belongs
      to the previous term.
    """

    db.session.add_all([
        Term(id='term0', name='Term 3', year=2023, start_date=date(2023, 9, 1),
             end_date=date(2023, 12, 1)),
        Term(id='term1', name='Term 1', year=2024, start_date=date(2024, 2, 1),
             end_date=date(2024, 5, 1)),
        Teacher(id='t1', name='John Kato', email='kato@example.org', role=Role.TEACHER),
        Teacher(id='t2', name='Mary Auma', email='auma@example.org'),
        Teacher(id='dos1', name='Grace Atim', email='atim@example.org', role=Role.DOS),
        Subject(id='math', name='Mathematics', code='MTC'),
        Subject(id='eng', name='English', code='ENG'),
    ])
    db.session.flush()
    db.session.add_all([
        SchoolClass(id='c1', name='Senior 1', level='O Level', streams=['East', 'West'],
                    class_teacher_id='t2'),
        SchoolClass(id='c2', name='Senior 2', level='O Level', streams=[]),
        TeachingAssignment(teacher_id='t1', subject_id='math', class_id='c1'),
        TeachingAssignment(teacher_id='t1', subject_id='math', class_id='c2'),
        TeachingAssignment(teacher_id='t2', subject_id='eng', class_id='c1'),
        Exam(id='mid', name='Mid Term', term_id='term1', max_marks=100, category='Summative'),
        Exam(id='quiz', name='Quiz', term_id='term1', max_marks=20, subject_id='math',
             category='Formative'),
        Exam(id='old', name='Old Exam', term_id='term0', max_marks=100),
        GradingPolicy(id='standard', name='Standard', scale=FULL_SCALE, is_default=True),
        GeneralSettings(id=GENERAL_SETTINGS_ID, current_term_id='term1',
                        default_grading_scale=FULL_SCALE, is_default_template=False),
    ])
    db.session.flush()
    for index in range(1, 7):
        db.session.add(Student(id=f's{index}', student_id_number=f'S{index}',
                               first_name=f'Pupil{index}', last_name='Okello', class_id='c1',
                               stream='East' if index % 2 else 'West'))
    db.session.add(Student(id='s7', student_id_number='S7', first_name='Other',
                           last_name='Pupil', class_id='c2'))
    db.session.commit()


@pytest.fixture
def app() -> Generator:
    application = create_app({'TESTING': True, 'SQLALCHEMY_DATABASE_URI': 'sqlite://'})
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app) -> Generator:
    """Push an application context for calling services directly."""
    with app.app_context():
        yield app
        db.session.remove()


@pytest.fixture
def school(ctx):
    populate_school()
    return ctx


def marks_for(scores, prefix='S'):
    return [{'studentId': f'{prefix}{index}', 'score': score}
            for index, score in enumerate(scores, start=1)]
