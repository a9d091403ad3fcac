"""
pytest configuration and fixtures for task reconciler tests.
"""
import json
import logging
import threading
from datetime import datetime, timezone

import pytest

from task_reconciler.config import Config
from task_reconciler.exceptions import SourceError
from task_reconciler.models import Origin, Project, Task
from task_reconciler.state import SyncStateStore
from task_reconciler.systems import ApplyOutcome, FetchResult

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers a CLI test attached to the package logger."""
    yield
    logger = logging.getLogger('task_reconciler')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for name in ('task_reconciler', 'httpx', 'httpcore'):
        logging.getLogger(name).setLevel(logging.NOTSET)


@pytest.fixture
def state_dir(tmp_path):
    """Return an empty state directory."""
    path = tmp_path / 'sync-state'
    path.mkdir()
    return path


@pytest.fixture
def config(state_dir):
    """Configuration with Todoist and Vikunja credentials and no environment lookups."""
    return Config.load(environ={
        'STATE_DIR': str(state_dir),
        'TODOIST_API_TOKEN': 'todoist-token',
        'VIKUNJA_API_URL': 'http://vikunja.test/api/v1',
        'VIKUNJA_API_TOKEN': 'vikunja-token',
        'SYNC_SOURCE_TIMEOUT': '2',
        'SYNC_RATE_LIMIT_BACKOFF': '900',
    })


@pytest.fixture
def store(config):
    store = SyncStateStore(config)
    store.ensure()
    return store


@pytest.fixture
def now():
    return NOW


def make_task(source_id, origin=Origin.TODOIST, **kwargs) -> Task:
    kwargs.setdefault('title', f"Task {source_id}")
    return Task(source_id=str(source_id), origin=origin, **kwargs)


def make_project(source_id, origin=Origin.TODOIST, **kwargs) -> Project:
    kwargs.setdefault('name', f"Project {source_id}")
    return Project(source_id=str(source_id), origin=origin, **kwargs)


def read_json(path):
    with open(path) as f:
        return json.load(f)


class FakeImporter:
    """Importer returning canned data, raising, or blocking until released."""

    def __init__(self, origin, projects=(), tasks=(), error=None, partial=None, block=None):
        self.origin = origin
        self.name = origin.value
        self.projects = list(projects)
        self.tasks = list(tasks)
        self.error = error
        self.partial = partial
        self.block = block
        self.calls = []
        self.cancelled = threading.Event()

    def fetch(self, mode, since):
        self.calls.append((mode, since))
        if self.block is not None:
            self.block.wait()
        if self.error is not None:
            raise SourceError(self.name, self.error, partial=self.partial)
        return FetchResult(list(self.projects), list(self.tasks))

    def check_connection(self):
        return 'fake'

    def cancel(self):
        self.cancelled.set()


class FakeExporter:
    """Exporter that replays scripted outcomes per task id and records calls."""

    def __init__(self, origin, script=None):
        self.origin = origin
        self.name = origin.value
        self.script = dict(script or {})
        self.calls = []

    def apply(self, task_id, operation, payload):
        self.calls.append((task_id, operation, payload))
        outcomes = self.script.get(task_id)
        if outcomes:
            outcome = outcomes.pop(0) if isinstance(outcomes, list) else outcomes
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ApplyOutcome.APPLIED


@pytest.fixture
def fake_importer():
    return FakeImporter


@pytest.fixture
def fake_exporter():
    return FakeExporter
