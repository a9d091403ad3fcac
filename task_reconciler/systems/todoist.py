"""
Todoist integration.

Supports the REST API v2 (plain JSON arrays) and the cursor-paginated
unified API v1 (`results` + `next_cursor`) with the same code path.
"""

import logging
import re
import threading
from datetime import datetime
from typing import Iterator, Optional

import httpx

from ..config import Config, SystemConfig
from ..exceptions import ApiError, PermanentApiError, SourceError
from ..models import Due, ImportMode, Operation, Origin, Priority, Project, Section, Task, parse_timestamp
from .base import (
    ApplyOutcome,
    FetchResult,
    SinkExporter,
    SourceImporter,
    changed_since,
    coerce_priority,
    normalize_records,
)
from .http import ApiClient

logger = logging.getLogger(__name__)

# Todoist priority 1 is "no priority", 4 is the most urgent
PRIORITY_FROM_TODOIST = {
    1: Priority.NONE,
    2: Priority.MEDIUM,
    3: Priority.HIGH,
    4: Priority.URGENT,
}

PRIORITY_TO_TODOIST = {
    Priority.NONE: 1,
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}

_ISO_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class TodoistClient:
    """Todoist API client."""

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None,
                 cancelled: Optional[threading.Event] = None):
        self.page_size = config.page_size
        self.api = ApiClient(
            system.base_url,
            headers={'Authorization': f'Bearer {system.token}'},
            timeout=config.request_timeout,
            transport=transport,
            cancelled=cancelled,
        )

    def iter_pages(self, endpoint: str, params: Optional[dict] = None) -> Iterator[list[dict]]:
        """Yield pages of a collection until the cursor is exhausted."""
        params = dict(params or {})
        params.setdefault('limit', self.page_size)

        while True:
            data = self.api.request('GET', endpoint, params=params)
            if isinstance(data, list):
                yield data
                return

            yield data.get('results', [])

            cursor = data.get('next_cursor')
            if not cursor:
                return
            params['cursor'] = cursor

    # ==========================================================================
    # Tasks
    # ==========================================================================

    def close_task(self, task_id: str):
        """Mark a task as completed. Closing a closed task succeeds."""
        self.api.send('POST', f'tasks/{task_id}/close')
        logger.info(f"Closed Todoist task {task_id}")

    def update_task(self, task_id: str, fields: dict) -> dict:
        data = self.api.request('POST', f'tasks/{task_id}', json_data=fields)
        logger.info(f"Updated Todoist task {task_id}: {sorted(fields)}")
        return data

    def add_comment(self, task_id: str, content: str) -> dict:
        data = self.api.request('POST', 'comments', json_data={'task_id': task_id, 'content': content})
        logger.info(f"Commented on Todoist task {task_id}")
        return data


# ==========================================================================
# Normalization
# ==========================================================================

def _optional_id(value) -> Optional[str]:
    return str(value) if value else None


def normalize_project(data: dict, sections: list[Section]) -> Project:
    return Project(
        source_id=str(data['id']),
        name=data['name'],
        origin=Origin.TODOIST,
        parent_id=_optional_id(data.get('parent_id')),
        sections=tuple(sections),
    )


def normalize_section(data: dict) -> tuple[str, Section]:
    section = Section(
        source_id=str(data['id']),
        name=data['name'],
        order=int(data.get('order', data.get('section_order', 0)) or 0),
    )
    return str(data['project_id']), section


def normalize_task(data: dict) -> Task:
    """Create a canonical task from a Todoist API record."""
    due = data.get('due') or {}
    return Task(
        source_id=str(data['id']),
        title=data['content'],
        origin=Origin.TODOIST,
        project_id=_optional_id(data.get('project_id')),
        section_id=_optional_id(data.get('section_id')),
        parent_id=_optional_id(data.get('parent_id')),
        priority=PRIORITY_FROM_TODOIST.get(data.get('priority'), Priority.NONE),
        labels=tuple(data.get('labels') or ()),
        due=Due(date=due['date'][:10], string=due.get('string') or '', datetime=due.get('datetime')) if due.get('date') else None,
        completed=bool(data.get('is_completed', data.get('checked', False))),
        created_at=parse_timestamp(data.get('created_at') or data.get('added_at')),
        updated_at=parse_timestamp(data.get('updated_at')),
        description=data.get('description') or None,
    )


# ==========================================================================
# Importer / Exporter
# ==========================================================================

class TodoistImporter(SourceImporter):
    """Imports Todoist projects, sections and active tasks."""

    origin = Origin.TODOIST

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(system, config, transport)
        self.client = TodoistClient(system, config, transport, cancelled=self.cancelled)

    def fetch(self, mode: ImportMode, since: Optional[datetime]) -> FetchResult:
        projects: list[Project] = []
        tasks: list[Task] = []

        try:
            logger.info("Fetching Todoist projects...")
            sections_by_project: dict[str, list[Section]] = {}
            for page in self.client.iter_pages('sections'):
                for project_id, section in normalize_records(page, normalize_section, 'section', self.name):
                    sections_by_project.setdefault(project_id, []).append(section)

            for page in self.client.iter_pages('projects'):
                projects.extend(normalize_records(
                    page,
                    lambda p: normalize_project(p, sections_by_project.get(str(p['id']), [])),
                    'project',
                    self.name,
                ))
            logger.info(f"Found {len(projects)} Todoist projects")

            logger.info("Fetching Todoist tasks...")
            for page in self.client.iter_pages('tasks'):
                tasks.extend(normalize_records(page, normalize_task, 'task', self.name))
        except ApiError as e:
            raise SourceError(self.name, str(e), partial=FetchResult(projects, self._since(tasks, mode, since))) from e

        tasks = self._since(tasks, mode, since)
        logger.info(f"Found {len(tasks)} Todoist tasks")
        return FetchResult(projects, tasks)

    @staticmethod
    def _since(tasks: list[Task], mode: ImportMode, since: Optional[datetime]) -> list[Task]:
        # The tasks endpoint has no modified-since filter
        if mode == ImportMode.INCREMENTAL:
            return changed_since(tasks, since)
        return tasks

    def check_connection(self) -> str:
        count = sum(len(page) for page in self.client.iter_pages('projects'))
        return f"{count} projects"


class TodoistExporter(SinkExporter):
    """Pushes completions, field updates and comments to Todoist."""

    origin = Origin.TODOIST

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(system, config, transport)
        self.client = TodoistClient(system, config, transport)

    def apply(self, task_id: str, operation: Operation, payload: dict) -> ApplyOutcome:
        if operation == Operation.COMPLETE:
            self.client.close_task(task_id)
        elif operation == Operation.UPDATE:
            self.client.update_task(task_id, self.update_fields(payload))
        elif operation == Operation.COMMENT:
            content = payload.get('content')
            if not content:
                raise PermanentApiError(f"comment for Todoist task {task_id} has no content")
            self.client.add_comment(task_id, content)
        else:
            raise PermanentApiError(f"unsupported operation {operation!r}")
        return ApplyOutcome.APPLIED

    @staticmethod
    def update_fields(payload: dict) -> dict:
        """Map a canonical update payload to Todoist task fields."""
        fields = {}
        if payload.get('title'):
            fields['content'] = payload['title']
        if payload.get('priority') is not None:
            fields['priority'] = PRIORITY_TO_TODOIST[coerce_priority(payload['priority'])]
        if payload.get('labels') is not None:
            fields['labels'] = list(payload['labels'])
        if payload.get('due'):
            due = str(payload['due'])
            if _ISO_DATE.match(due):
                fields['due_date'] = due
            else:
                fields['due_string'] = due

        if not fields:
            raise PermanentApiError("update has no fields Todoist accepts")
        return fields
