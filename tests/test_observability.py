import json
import logging
import sys

import pytest
from sqlalchemy.exc import OperationalError

import db_utils
from app_logging import (JSONFormatter, RECORD_FIELDS, clear_request_context,
                         merge_request_context, redact_sensitive_data, set_request_id)
from db_utils import retry_with_backoff, store_action
from results import ActionResult


def _operational_error():
    return OperationalError('SELECT 1', {}, Exception('could not connect'))


def _record(msg='marks submitted', exc_info=None, **extra):
    record = logging.LogRecord('gradecentral.test', logging.INFO, __file__, 1, msg, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def fresh_context():
    clear_request_context()
    yield
    clear_request_context()


def test_formatter_emits_every_field_in_order():
    line = JSONFormatter().format(_record())
    payload = json.loads(line)
    assert tuple(payload) == RECORD_FIELDS
    assert payload['msg'] == 'marks submitted'
    assert payload['request_id'] is None


def test_formatter_merges_request_context_and_lifts_ids():
    set_request_id('req-1')
    merge_request_context(teacher_id='t1', role='teacher')
    payload = json.loads(JSONFormatter().format(
        _record(submission_id='sub1', studentCount=6, email='kato@example.org')))
    assert payload['request_id'] == 'req-1'
    assert payload['teacher_id'] == 't1'
    assert payload['submission_id'] == 'sub1'
    assert payload['context'] == {'studentCount': 6, 'email': '[REDACTED]'}


def test_formatter_includes_exception_details():
    try:
        raise ValueError('bad score')
    except ValueError:
        payload = json.loads(JSONFormatter().format(_record(exc_info=sys.exc_info())))
    assert payload['error_type'] == 'ValueError'
    assert payload['error'] == 'bad score'
    assert 'Traceback' in payload['stack']


def test_redaction_is_recursive_and_case_insensitive():
    data = {'teacher': {'Email': 'a@b.c', 'name': 'Ann'},
            'students': [{'dateOfBirth': '2010-01-01', 'id': 's1'}]}
    assert redact_sensitive_data(data) == {
        'teacher': {'Email': '[REDACTED]', 'name': 'Ann'},
        'students': [{'dateOfBirth': '[REDACTED]', 'id': 's1'}],
    }


def test_retry_with_backoff_recovers(monkeypatch):
    pauses = []
    monkeypatch.setattr(db_utils.time, 'sleep', pauses.append)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _operational_error()
        return 'ready'

    assert retry_with_backoff(flaky) == 'ready'
    assert pauses == [0.1, 0.2]


def test_retry_with_backoff_gives_up(monkeypatch):
    monkeypatch.setattr(db_utils.time, 'sleep', lambda _: None)

    def down():
        raise _operational_error()

    with pytest.raises(OperationalError):
        retry_with_backoff(down, attempts=2)


def test_store_action_turns_store_errors_into_results(ctx):
    @store_action('save widget')
    def failing():
        raise _operational_error()

    result = failing()
    assert isinstance(result, ActionResult)
    assert result.kind == 'store_unavailable'
    assert result.message.startswith('Failed to save widget')


def test_request_logging_records_status(client, caplog):
    with caplog.at_level(logging.INFO, logger='gradecentral.request'):
        client.get('/api/teacher/assessments', headers={'X-Teacher-ID': 't1'})
    events = [r.event for r in caplog.records if getattr(r, 'event', None)]
    assert events == ['request_start', 'request_end']


def test_health_checks_are_not_logged(client, caplog):
    with caplog.at_level(logging.INFO, logger='gradecentral.request'):
        client.get('/health')
    assert not [r for r in caplog.records if r.name == 'gradecentral.request']
