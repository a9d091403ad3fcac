"""
Privacy filter.

Applied to every task record crossing a system boundary, in both
directions: on import before a snapshot is final, and on export before
a payload is built for a sink.
"""

import dataclasses
import logging

from .models import Task

logger = logging.getLogger(__name__)

# Payload keys that never leave the canonical store
SENSITIVE_FIELDS = frozenset({
    'description',
    'attachments',
    'comments',
    'notes',
    'metadata',
})


def filter_task(task: Task) -> Task:
    """Return a copy of the task without description, attachments, comments or internal metadata."""
    if not (task.description or task.attachments or task.comments or task.metadata):
        return task
    return dataclasses.replace(
        task,
        description=None,
        attachments=(),
        comments=(),
        metadata={},
    )


def filter_payload(payload: dict) -> dict:
    """
    Strip sensitive keys from an outgoing export payload.

    Keys starting with an underscore are internal-only and dropped as well.
    """
    cleaned = {}
    for key, value in payload.items():
        if key in SENSITIVE_FIELDS or key.startswith('_'):
            logger.debug(f"Dropping '{key}' from export payload")
            continue
        cleaned[key] = value
    return cleaned
