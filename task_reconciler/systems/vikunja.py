"""
Vikunja integration.

HTTP client for the Vikunja REST API plus the importer/exporter pair.
"""

import logging
import re
import threading
from datetime import datetime
from typing import Iterator, Optional

import httpx

from ..config import Config, SystemConfig
from ..exceptions import ApiError, PermanentApiError, SourceError
from ..models import Due, ImportMode, Operation, Origin, Priority, Project, Task, format_timestamp, parse_timestamp
from .base import (
    ApplyOutcome,
    FetchResult,
    SinkExporter,
    SourceImporter,
    changed_since,
    coerce_priority,
    normalize_records,
)
from .http import ApiClient, decode_json

logger = logging.getLogger(__name__)

# Vikunja: 0 unset, 1 low, 2 medium, 3 high, 4 urgent, 5 do now
PRIORITY_FROM_VIKUNJA = {
    0: Priority.NONE,
    1: Priority.LOW,
    2: Priority.MEDIUM,
    3: Priority.HIGH,
    4: Priority.URGENT,
    5: Priority.URGENT,
}

# Vikunja reports "no due date" as the zero time
ZERO_DATE_PREFIX = '0001-01-01'

_ISO_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class VikunjaClient:
    """Vikunja API client."""

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
        """
        Yield pages until exhausted.

        Uses the x-pagination-total-pages header when present, otherwise
        stops at the first short page.
        """
        params = dict(params or {})
        params['per_page'] = self.page_size
        page = 1

        while True:
            params['page'] = page
            response = self.api.send('GET', endpoint, params=params)
            items = decode_json(response, f"GET {endpoint}") or []
            yield items

            total_pages = response.headers.get('x-pagination-total-pages')
            if total_pages is not None:
                if page >= int(total_pages):
                    return
            elif len(items) < self.page_size:
                return
            page += 1

    # ==========================================================================
    # Tasks
    # ==========================================================================

    def get_task(self, task_id: str) -> dict:
        return self.api.request('GET', f'tasks/{task_id}')

    def update_task(self, task_id: str, updates: dict) -> dict:
        """
        Update an existing task.

        Vikunja replaces every field on update, so the stored task is read
        first and the updates are merged into it.
        """
        current = self.get_task(task_id)
        data = self.api.request('POST', f'tasks/{task_id}', json_data={**current, **updates})
        logger.info(f"Updated Vikunja task {task_id}: {sorted(updates)}")
        return data

    def add_comment(self, task_id: str, comment: str) -> dict:
        data = self.api.request('PUT', f'tasks/{task_id}/comments', json_data={'comment': comment})
        logger.info(f"Commented on Vikunja task {task_id}")
        return data

    def info(self) -> dict:
        return self.api.request('GET', 'info')


# ==========================================================================
# Normalization
# ==========================================================================

def _optional_id(value) -> Optional[str]:
    return str(value) if value else None


def is_pseudo_project(data) -> bool:
    """Negative ids are pseudo projects such as Favorites."""
    try:
        return int(data['id']) < 0
    except (KeyError, TypeError, ValueError):
        return False


def normalize_project(data: dict) -> Project:
    return Project(
        source_id=str(data['id']),
        name=data['title'],
        origin=Origin.VIKUNJA,
        parent_id=_optional_id(data.get('parent_project_id')),
    )


def normalize_due(value: Optional[str]) -> Optional[Due]:
    if not value or value.startswith(ZERO_DATE_PREFIX):
        return None
    due_at = parse_timestamp(value)
    return Due(date=due_at.date().isoformat(), string=value, datetime=format_timestamp(due_at))


def normalize_task(data: dict) -> Task:
    """Create a canonical task from a Vikunja API record."""
    related = data.get('related_tasks') or {}
    parents = related.get('parenttask') or []
    return Task(
        source_id=str(data['id']),
        title=data['title'],
        origin=Origin.VIKUNJA,
        project_id=_optional_id(data.get('project_id')),
        section_id=_optional_id(data.get('bucket_id')),
        parent_id=_optional_id(parents[0].get('id')) if parents else None,
        priority=PRIORITY_FROM_VIKUNJA.get(data.get('priority'), Priority.NONE),
        labels=tuple(label['title'] for label in (data.get('labels') or [])),
        due=normalize_due(data.get('due_date')),
        completed=bool(data.get('done', False)),
        created_at=parse_timestamp(data.get('created')),
        updated_at=parse_timestamp(data.get('updated')),
        description=data.get('description') or None,
        attachments=tuple((a.get('file') or {}).get('name', '') for a in (data.get('attachments') or [])),
    )


# ==========================================================================
# Importer / Exporter
# ==========================================================================

class VikunjaImporter(SourceImporter):
    """Imports Vikunja projects and tasks."""

    origin = Origin.VIKUNJA

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(system, config, transport)
        self.client = VikunjaClient(system, config, transport, cancelled=self.cancelled)

    def fetch(self, mode: ImportMode, since: Optional[datetime]) -> FetchResult:
        projects: list[Project] = []
        tasks: list[Task] = []

        params = {}
        incremental = mode == ImportMode.INCREMENTAL and since is not None
        if incremental:
            params['filter'] = f"updated > {format_timestamp(since)}"

        try:
            logger.info("Fetching Vikunja projects...")
            for page in self.client.iter_pages('projects'):
                real = [p for p in page if not is_pseudo_project(p)]
                projects.extend(normalize_records(real, normalize_project, 'project', self.name))
            logger.info(f"Found {len(projects)} Vikunja projects")

            logger.info("Fetching Vikunja tasks...")
            for page in self.client.iter_pages('tasks/all', params=params):
                tasks.extend(normalize_records(page, normalize_task, 'task', self.name))
        except ApiError as e:
            raise SourceError(self.name, str(e), partial=FetchResult(projects, tasks)) from e

        if incremental:
            # Older servers ignore the filter parameter
            tasks = changed_since(tasks, since)

        logger.info(f"Found {len(tasks)} Vikunja tasks")
        return FetchResult(projects, tasks)

    def check_connection(self) -> str:
        info = self.client.info()
        return f"version {info.get('version', 'unknown')}"


class VikunjaExporter(SinkExporter):
    """Pushes completions, field updates and comments to Vikunja."""

    origin = Origin.VIKUNJA

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(system, config, transport)
        self.client = VikunjaClient(system, config, transport)

    def apply(self, task_id: str, operation: Operation, payload: dict) -> ApplyOutcome:
        if operation == Operation.COMPLETE:
            return self.complete(task_id)
        elif operation == Operation.UPDATE:
            self.client.update_task(task_id, self.update_fields(payload))
        elif operation == Operation.COMMENT:
            content = payload.get('content')
            if not content:
                raise PermanentApiError(f"comment for Vikunja task {task_id} has no content")
            self.client.add_comment(task_id, content)
        else:
            raise PermanentApiError(f"unsupported operation {operation!r}")
        return ApplyOutcome.APPLIED

    def complete(self, task_id: str) -> ApplyOutcome:
        current = self.client.get_task(task_id)
        if current.get('done'):
            logger.info(f"Vikunja task {task_id} already done")
            return ApplyOutcome.ALREADY_APPLIED

        self.client.api.request('POST', f'tasks/{task_id}', json_data={**current, 'done': True})
        logger.info(f"Completed task {task_id} in Vikunja")
        return ApplyOutcome.APPLIED

    @staticmethod
    def update_fields(payload: dict) -> dict:
        """Map a canonical update payload to Vikunja task fields."""
        fields = {}
        if payload.get('title'):
            fields['title'] = payload['title']
        if payload.get('priority') is not None:
            fields['priority'] = int(coerce_priority(payload['priority']))
        if payload.get('due'):
            due = str(payload['due'])
            if not _ISO_DATE.match(due):
                raise PermanentApiError(f"Vikunja needs an ISO due date, got {due!r}")
            fields['due_date'] = f"{due}T00:00:00Z"
        if payload.get('labels') is not None:
            logger.warning("Vikunja label changes are not exported; ignoring 'labels'")

        if not fields:
            raise PermanentApiError("update has no fields Vikunja accepts")
        return fields
