"""Seed the database with a small sample school.

This script populates the database with a term, classes, subjects, staff,
students, two exams and a default grading policy, and marks the term as
current so teachers see obligations straight away. It can be run locally
before the first launch of the app.

Usage:
    python seed.py

"""

from datetime import date, timedelta
from typing import Dict, List

from flask import Flask

from app_logging import get_logger
from config import Config
from domain import Role
from models import (GENERAL_SETTINGS_ID, Exam, GeneralSettings, GradingPolicy, SchoolClass,
                    Student, Subject, Teacher, TeachingAssignment, Term, db)

_logger = get_logger("gradecentral.seed")

SCALE = [
    {'grade': 'A', 'minScore': 80, 'maxScore': 100},
    {'grade': 'B', 'minScore': 70, 'maxScore': 79.99},
    {'grade': 'C', 'minScore': 60, 'maxScore': 69.99},
    {'grade': 'D', 'minScore': 50, 'maxScore': 59.99},
    {'grade': 'E', 'minScore': 0, 'maxScore': 49.99},
]

FIRST_NAMES = ['Aisha', 'Brian', 'Carol', 'Daniel', 'Esther', 'Felix']
LAST_NAMES = ['Nakato', 'Okello', 'Mugisha', 'Achieng', 'Ssempala', 'Namutebi']


def create_app() -> Flask:
    """Create a standalone Flask application for seeding.

    We avoid importing the main app here to keep the seeding process
    independent of the API routes.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    db.init_app(app)
    return app


def seed_data() -> None:
    """Insert the sample school and point the general settings at its term."""

    # Drop and recreate tables. In production you might prefer Alembic
    # migrations instead of dropping the entire database.
    db.drop_all()
    db.create_all()

    today = date.today()
    term = Term(id='term1', name='Term 1', year=today.year,
                start_date=today - timedelta(days=30), end_date=today + timedelta(days=60))
    db.session.add(term)

    classes: Dict[str, SchoolClass] = {}
    for class_id, name in (('s1', 'Senior 1'), ('s2', 'Senior 2')):
        classes[class_id] = SchoolClass(id=class_id, name=name, level='O Level',
                                        streams=['East', 'West'])
        db.session.add(classes[class_id])

    subjects: List[Subject] = [
        Subject(id='math', name='Mathematics', code='MTC'),
        Subject(id='eng', name='English', code='ENG'),
        Subject(id='bio', name='Biology', code='BIO'),
    ]
    db.session.add_all(subjects)

    dos = Teacher(id='dos1', name='Grace Atim', email='dos@example.org', role=Role.DOS)
    math_teacher = Teacher(id='t1', name='John Kato', email='kato@example.org', role=Role.TEACHER)
    eng_teacher = Teacher(id='t2', name='Mary Auma', email='auma@example.org', role=Role.TEACHER)
    db.session.add_all([dos, math_teacher, eng_teacher])
    db.session.flush()

    for class_id in classes:
        db.session.add(TeachingAssignment(teacher_id='t1', subject_id='math', class_id=class_id))
        db.session.add(TeachingAssignment(teacher_id='t2', subject_id='eng', class_id=class_id))
    db.session.add(TeachingAssignment(teacher_id='t2', subject_id='bio', class_id='s1'))
    classes['s1'].class_teacher_id = 't1'
    classes['s2'].class_teacher_id = 't2'

    number = 1000
    for class_id in classes:
        for index, (first, last) in enumerate(zip(FIRST_NAMES, LAST_NAMES)):
            number += 1
            db.session.add(Student(
                student_id_number=f"S{number}", first_name=first, last_name=last,
                class_id=class_id, stream='East' if index % 2 == 0 else 'West',
                gender='Female' if index % 2 == 0 else 'Male',
            ))

    db.session.add(GradingPolicy(id='standard', name='Standard', scale=SCALE, is_default=True))
    db.session.add_all([
        Exam(id='bot', name='Beginning of Term', term_id='term1', max_marks=20,
             category='Formative', marks_submission_deadline=today + timedelta(days=2)),
        Exam(id='eot', name='End of Term', term_id='term1', max_marks=100,
             category='Summative', marks_submission_deadline=today + timedelta(days=45)),
    ])

    db.session.add(GeneralSettings(
        id=GENERAL_SETTINGS_ID,
        current_term_id='term1',
        default_grading_scale=SCALE,
        global_marks_submission_deadline=today + timedelta(days=50),
        dos_global_announcement_text='Welcome to the new term.',
        dos_global_announcement_type='info',
        is_default_template=False,
    ))
    db.session.commit()

    _logger.info("database seeded", extra={"classes": len(classes), "subjects": len(subjects)})


def main() -> None:
    app = create_app()
    with app.app_context():
        seed_data()


if __name__ == '__main__':
    main()
