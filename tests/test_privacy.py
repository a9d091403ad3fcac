"""
Tests for the privacy filter.
"""
from task_reconciler.models import Origin
from task_reconciler.privacy import SENSITIVE_FIELDS, filter_payload, filter_task

from conftest import make_task


def test_filter_task_strips_sensitive_fields():
    task = make_task(
        '1',
        description='call the bank about account 1234',
        attachments=('statement.pdf',),
        comments=('private note',),
        metadata={'raw': {'secret': True}},
        labels=('finance',),
    )

    filtered = filter_task(task)

    assert filtered.description is None
    assert filtered.attachments == ()
    assert filtered.comments == ()
    assert filtered.metadata == {}
    assert filtered.title == task.title
    assert filtered.labels == ('finance',)
    assert 'description' not in filtered.to_dict()


def test_filter_task_is_idempotent():
    task = make_task('1', origin=Origin.VIKUNJA, description='secret', comments=('x',))

    once = filter_task(task)
    twice = filter_task(once)

    assert once == twice
    assert twice is once


def test_filter_task_returns_clean_task_unchanged():
    task = make_task('1')
    assert filter_task(task) is task


def test_filter_payload_drops_sensitive_and_internal_keys():
    payload = {
        'title': 'New title',
        'priority': 3,
        'description': 'secret',
        'notes': 'secret',
        '_raw': {'x': 1},
    }

    cleaned = filter_payload(payload)

    assert cleaned == {'title': 'New title', 'priority': 3}
    assert not SENSITIVE_FIELDS & cleaned.keys()
    assert filter_payload(cleaned) == cleaned


def test_filter_payload_keeps_comment_content():
    assert filter_payload({'content': 'Done via CLI'}) == {'content': 'Done via CLI'}
