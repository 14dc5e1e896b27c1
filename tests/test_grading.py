from types import SimpleNamespace

from grading import (NOT_AVAILABLE, UNGRADED, UNKNOWN_DESCRIPTOR, GradingScaleItem,
                     grade_descriptor, resolve_grade, scale_for_exam, scale_from_json,
                     validate_scale)

SCALE = [GradingScaleItem('A', 80, 100), GradingScaleItem('B', 70, 79)]


def test_resolve_grade_picks_matching_tier():
    assert resolve_grade(85, 100, SCALE) == 'A'
    assert resolve_grade(70, 100, SCALE) == 'B'
    assert resolve_grade(16, 20, SCALE) == 'A'


def test_resolve_grade_sentinels():
    assert resolve_grade(None, 100, SCALE) == NOT_AVAILABLE
    assert resolve_grade(50, 0, SCALE) == NOT_AVAILABLE
    assert resolve_grade(50, 100, []) == NOT_AVAILABLE
    assert resolve_grade(65, 100, SCALE) == UNGRADED
    # 79.5% falls in the gap between B (max 79) and A (min 80)
    assert resolve_grade(79.5, 100, SCALE) == UNGRADED


def test_resolve_grade_first_match_wins_on_overlap():
    overlapping = [GradingScaleItem('X', 50, 100), GradingScaleItem('Y', 60, 100)]
    assert resolve_grade(75, 100, overlapping) == 'X'
    assert resolve_grade(75, 100, list(reversed(overlapping))) == 'Y'


def test_scale_from_json_drops_malformed_tiers():
    items = scale_from_json([
        {'grade': 'A', 'minScore': 80, 'maxScore': 100},
        {'grade': 'B'},
        {'grade': 'C', 'minScore': 'abc', 'maxScore': 50},
    ])
    assert items == [GradingScaleItem('A', 80.0, 100.0)]


def test_grade_descriptor():
    assert grade_descriptor('A').startswith('Achieved extraordinary')
    assert grade_descriptor('Ungraded') == UNKNOWN_DESCRIPTOR


def test_validate_scale_reports_field_errors():
    assert validate_scale([{'grade': 'A', 'minScore': 80, 'maxScore': 100}]) == {}
    assert 'scale' in validate_scale([])

    errors = validate_scale([
        {'grade': '', 'minScore': 10, 'maxScore': 20},
        {'grade': 'B', 'minScore': 90, 'maxScore': 80},
        {'grade': 'C', 'minScore': -5, 'maxScore': 120},
    ])
    assert 'scale[0].grade' in errors
    assert errors['scale[1].minScore'].startswith('Minimum score cannot be greater')
    assert 'scale[2].minScore' in errors
    assert 'scale[2].maxScore' in errors


def test_scale_for_exam_precedence():
    exam_policy = SimpleNamespace(id='p1', is_default=False,
                                  scale_items=[GradingScaleItem('P', 0, 100)])
    default_policy = SimpleNamespace(id='p2', is_default=True,
                                     scale_items=[GradingScaleItem('D', 0, 100)])
    settings_scale = [GradingScaleItem('S', 0, 100)]
    policies = [exam_policy, default_policy]

    exam = SimpleNamespace(grading_policy_id='p1')
    assert scale_for_exam(exam, policies, settings_scale)[0].grade == 'P'

    exam = SimpleNamespace(grading_policy_id=None)
    assert scale_for_exam(exam, policies, settings_scale)[0].grade == 'D'

    assert scale_for_exam(exam, [exam_policy], settings_scale)[0].grade == 'S'
