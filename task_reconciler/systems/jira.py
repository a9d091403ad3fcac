"""
Jira Cloud integration (import only).

Imports unresolved issues assigned to the authenticated user. Incremental
runs narrow the JQL with `updated >= since` (widened by a day) so filtering
happens server-side.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

import httpx

from ..config import Config, SystemConfig
from ..exceptions import ApiError, SourceError
from ..models import Due, ImportMode, Origin, Project, Task, parse_timestamp
from .base import FetchResult, SourceImporter, normalize_records, priority_from_name
from .http import ApiClient

logger = logging.getLogger(__name__)

BASE_JQL = 'assignee=currentUser() AND resolution=Unresolved'
ISSUE_FIELDS = 'summary,description,project,priority,labels,duedate,status,created,updated,parent'

# JQL dates are read in the user's profile timezone, up to a day away from UTC.
# Issues in the overlap are fetched again and merged by key.
JQL_SINCE_MARGIN = timedelta(hours=24)


def build_jql(since: Optional[datetime]) -> str:
    jql = BASE_JQL
    if since is not None:
        start = (since - JQL_SINCE_MARGIN).astimezone(timezone.utc)
        jql += f' AND updated >= "{start.strftime("%Y-%m-%d %H:%M")}"'
    return f"{jql} ORDER BY updated ASC"


class JiraClient:
    """Jira REST API v3 client (basic auth with e-mail and API token)."""

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None,
                 cancelled: Optional[threading.Event] = None):
        self.page_size = config.page_size
        self.api = ApiClient(
            f"{system.base_url}/rest/api/3",
            auth=(system.user, system.token),
            timeout=config.request_timeout,
            transport=transport,
            cancelled=cancelled,
        )

    def iter_issues(self, jql: str) -> Iterator[list[dict]]:
        """Yield pages of issues following nextPageToken."""
        params = {'jql': jql, 'fields': ISSUE_FIELDS, 'maxResults': self.page_size}
        while True:
            data = self.api.request('GET', 'search/jql', params=params)
            yield data.get('issues', [])

            token = data.get('nextPageToken')
            if data.get('isLast', True) or not token:
                return
            params['nextPageToken'] = token

    def myself(self) -> dict:
        return self.api.request('GET', 'myself')


def adf_text(node) -> str:
    """Flatten an Atlassian Document Format tree to plain text."""
    if not node:
        return ''
    if isinstance(node, str):
        return node
    parts = [node.get('text', '')]
    parts.extend(adf_text(child) for child in node.get('content') or [])
    return ' '.join(p for p in parts if p).strip()


def normalize_project(issue: dict) -> Project:
    project = issue['fields']['project']
    return Project(
        source_id=project['key'],
        name=project.get('name') or project['key'],
        origin=Origin.JIRA,
    )


def normalize_task(issue: dict) -> Task:
    """Create a canonical task from a Jira issue."""
    fields = issue['fields']
    status = fields.get('status') or {}
    category = (status.get('statusCategory') or {}).get('key')
    duedate = fields.get('duedate')
    return Task(
        source_id=issue['key'],
        title=fields['summary'],
        origin=Origin.JIRA,
        project_id=(fields.get('project') or {}).get('key'),
        parent_id=(fields.get('parent') or {}).get('key'),
        priority=priority_from_name((fields.get('priority') or {}).get('name')),
        labels=tuple(fields.get('labels') or ()),
        due=Due(date=duedate, string=duedate) if duedate else None,
        completed=category == 'done',
        created_at=parse_timestamp(fields.get('created')),
        updated_at=parse_timestamp(fields.get('updated')),
        description=adf_text(fields.get('description')) or None,
    )


class JiraImporter(SourceImporter):
    """Imports the user's open Jira issues."""

    origin = Origin.JIRA

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(system, config, transport)
        self.client = JiraClient(system, config, transport, cancelled=self.cancelled)

    def fetch(self, mode: ImportMode, since: Optional[datetime]) -> FetchResult:
        projects: dict[str, Project] = {}
        tasks: list[Task] = []
        jql = build_jql(since if mode == ImportMode.INCREMENTAL else None)

        logger.info("Fetching Jira issues...")
        logger.debug(f"JQL: {jql}")
        try:
            for page in self.client.iter_issues(jql):
                tasks.extend(normalize_records(page, normalize_task, 'issue', self.name))
                for project in normalize_records(page, normalize_project, 'project', self.name):
                    projects.setdefault(project.source_id, project)
        except ApiError as e:
            raise SourceError(self.name, str(e), partial=FetchResult(list(projects.values()), tasks)) from e

        logger.info(f"Jira: {len(tasks)} issues in {len(projects)} projects")
        return FetchResult(list(projects.values()), tasks)

    def check_connection(self) -> str:
        me = self.client.myself()
        return f"user {me.get('emailAddress') or me.get('displayName', 'unknown')}"
