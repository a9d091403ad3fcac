"""
YouTrack integration (import only).

Issues become canonical tasks keyed by their readable id (e.g. `PRJ-12`);
projects are taken from the issues themselves so no admin scope is needed.
"""

import logging
import threading
from datetime import datetime
from typing import Iterator, Optional

import httpx

from ..config import Config, SystemConfig
from ..exceptions import ApiError, SourceError
from ..models import ImportMode, Origin, Project, Task, parse_timestamp
from .base import FetchResult, SourceImporter, changed_since, normalize_records, priority_from_name
from .http import ApiClient

logger = logging.getLogger(__name__)

ISSUE_FIELDS = (
    'idReadable,summary,description,resolved,created,updated,'
    'project(id,shortName,name),parent(issues(idReadable)),'
    'tags(name),customFields(name,value(name))'
)


class YouTrackClient:
    """YouTrack REST API client."""

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None,
                 cancelled: Optional[threading.Event] = None):
        self.page_size = config.page_size
        self.api = ApiClient(
            f"{system.base_url}/api",
            headers={'Authorization': f'Bearer {system.token}'},
            timeout=config.request_timeout,
            transport=transport,
            cancelled=cancelled,
        )

    def iter_issues(self) -> Iterator[list[dict]]:
        """Yield pages of issues using $skip/$top until a short page."""
        skip = 0
        while True:
            page = self.api.request('GET', 'issues', params={
                'fields': ISSUE_FIELDS,
                '$top': self.page_size,
                '$skip': skip,
            }) or []
            yield page
            if len(page) < self.page_size:
                return
            skip += len(page)

    def me(self) -> dict:
        return self.api.request('GET', 'users/me', params={'fields': 'login,name'})


def _custom_field(data: dict, name: str) -> Optional[str]:
    for cf in data.get('customFields') or []:
        if cf.get('name') == name:
            value = cf.get('value')
            if isinstance(value, dict):
                return value.get('name')
            return value
    return None


def normalize_project(data: dict) -> Project:
    project = data['project']
    return Project(
        source_id=str(project.get('shortName') or project['id']),
        name=project.get('name') or project.get('shortName'),
        origin=Origin.YOUTRACK,
    )


def normalize_task(data: dict) -> Task:
    """Create a canonical task from a YouTrack issue."""
    project = data.get('project') or {}
    parent_issues = (data.get('parent') or {}).get('issues') or []
    return Task(
        source_id=data['idReadable'],
        title=data['summary'],
        origin=Origin.YOUTRACK,
        project_id=project.get('shortName') or project.get('id'),
        parent_id=parent_issues[0].get('idReadable') if parent_issues else None,
        priority=priority_from_name(_custom_field(data, 'Priority')),
        labels=tuple(tag['name'] for tag in (data.get('tags') or [])),
        completed=data.get('resolved') is not None,
        created_at=parse_timestamp(data.get('created')),
        updated_at=parse_timestamp(data.get('updated')),
        description=data.get('description') or None,
    )


class YouTrackImporter(SourceImporter):
    """Imports YouTrack issues visible to the token's user."""

    origin = Origin.YOUTRACK

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(system, config, transport)
        self.client = YouTrackClient(system, config, transport, cancelled=self.cancelled)

    def fetch(self, mode: ImportMode, since: Optional[datetime]) -> FetchResult:
        projects: dict[str, Project] = {}
        tasks: list[Task] = []

        logger.info("Fetching YouTrack issues...")
        try:
            for page in self.client.iter_issues():
                tasks.extend(normalize_records(page, normalize_task, 'issue', self.name))
                for project in normalize_records(
                    [i for i in page if isinstance(i, dict) and i.get('project')],
                    normalize_project, 'project', self.name,
                ):
                    projects.setdefault(project.source_id, project)
        except ApiError as e:
            raise SourceError(self.name, str(e), partial=FetchResult(list(projects.values()), tasks)) from e

        if mode == ImportMode.INCREMENTAL:
            tasks = changed_since(tasks, since)

        logger.info(f"YouTrack: {len(tasks)} issues in {len(projects)} projects")
        return FetchResult(list(projects.values()), tasks)

    def check_connection(self) -> str:
        me = self.client.me()
        return f"user {me.get('login', 'unknown')}"
