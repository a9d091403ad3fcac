"""
Data models for the task reconciler.

Canonical project/task representation shared by every external system,
plus the export queue and watermark records.
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional


class Origin(str, Enum):
    """External system a record came from."""
    TODOIST = 'todoist'
    VIKUNJA = 'vikunja'
    YOUTRACK = 'youtrack'
    JIRA = 'jira'


class ImportMode(str, Enum):
    FULL = 'full'
    INCREMENTAL = 'incremental'
    AUTO = 'auto'


class Operation(str, Enum):
    """Kinds of state change pushed back to an external system."""
    COMPLETE = 'complete'
    UPDATE = 'update'
    COMMENT = 'comment'


class ExportState(str, Enum):
    PENDING = 'pending'
    FAILED = 'failed'


class Priority(IntEnum):
    """Canonical ordinal priority scale."""
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    URGENT = 4


# ==========================================================================
# Timestamps
# ==========================================================================

_TZ_NO_COLON = re.compile(r'([+-]\d{2})(\d{2})$')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an API timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (with `Z`, `+00:00` or `+0000` offsets) and
    epoch milliseconds. Returns None for empty values.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        text = _TZ_NO_COLON.sub(r'\1:\2', text)
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


# ==========================================================================
# Canonical records
# ==========================================================================

@dataclass(frozen=True)
class Section:
    source_id: str
    name: str
    order: int = 0


@dataclass(frozen=True)
class Project:
    """Project as seen in one external system."""
    source_id: str
    name: str
    origin: Origin
    parent_id: Optional[str] = None
    sections: tuple = ()

    @property
    def key(self) -> tuple:
        return (self.origin.value, self.source_id)

    def to_dict(self) -> dict:
        return {
            'id': self.source_id,
            'name': self.name,
            'origin': self.origin.value,
            'parent_id': self.parent_id,
            'sections': [asdict(s) for s in self.sections],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Project':
        return cls(
            source_id=str(data['id']),
            name=data['name'],
            origin=Origin(data['origin']),
            parent_id=data.get('parent_id'),
            sections=tuple(Section(**s) for s in data.get('sections', [])),
        )


@dataclass(frozen=True)
class Due:
    """Nominal due date plus the free-text string the user typed."""
    date: str
    string: str = ''
    datetime: Optional[str] = None


@dataclass(frozen=True)
class Task:
    """
    Canonical task.

    `(origin, source_id)` is the join key. `description`, `attachments`,
    `comments` and `metadata` only exist before the privacy filter runs.
    """
    source_id: str
    title: str
    origin: Origin
    project_id: Optional[str] = None
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    priority: Priority = Priority.NONE
    labels: tuple = ()
    due: Optional[Due] = None
    completed: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    description: Optional[str] = None
    attachments: tuple = ()
    comments: tuple = ()
    metadata: dict = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple:
        return (self.origin.value, self.source_id)

    def to_dict(self) -> dict:
        data = {
            'id': self.source_id,
            'title': self.title,
            'origin': self.origin.value,
            'project_id': self.project_id,
            'section_id': self.section_id,
            'parent_id': self.parent_id,
            'priority': int(self.priority),
            'labels': list(self.labels),
            'due': asdict(self.due) if self.due else None,
            'completed': self.completed,
            'created_at': format_timestamp(self.created_at),
            'updated_at': format_timestamp(self.updated_at),
        }
        # Only present on unfiltered records
        if self.description:
            data['description'] = self.description
        if self.attachments:
            data['attachments'] = list(self.attachments)
        if self.comments:
            data['comments'] = list(self.comments)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Task':
        due = data.get('due')
        return cls(
            source_id=str(data['id']),
            title=data['title'],
            origin=Origin(data['origin']),
            project_id=data.get('project_id'),
            section_id=data.get('section_id'),
            parent_id=data.get('parent_id'),
            priority=Priority(data.get('priority', 0)),
            labels=tuple(data.get('labels', [])),
            due=Due(**due) if due else None,
            completed=bool(data.get('completed', False)),
            created_at=parse_timestamp(data.get('created_at')),
            updated_at=parse_timestamp(data.get('updated_at')),
            description=data.get('description'),
            attachments=tuple(data.get('attachments', [])),
            comments=tuple(data.get('comments', [])),
        )


@dataclass
class CanonicalSnapshot:
    """Merged result of one import cycle."""
    produced_at: datetime
    mode: ImportMode
    sources: list[str] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'timestamp': format_timestamp(self.produced_at),
            'mode': self.mode.value,
            'sources': list(self.sources),
            'projects': [p.to_dict() for p in self.projects],
            'tasks': [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CanonicalSnapshot':
        return cls(
            produced_at=parse_timestamp(data['timestamp']),
            mode=ImportMode(data.get('mode', ImportMode.FULL.value)),
            sources=list(data.get('sources', [])),
            projects=[Project.from_dict(p) for p in data.get('projects', [])],
            tasks=[Task.from_dict(t) for t in data.get('tasks', [])],
        )


# ==========================================================================
# Export queue and watermark
# ==========================================================================

@dataclass
class ExportItem:
    """A single state-change operation destined for one external system."""
    task_id: str
    target: Origin
    operation: Operation
    payload: dict = field(default_factory=dict)
    retry_count: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    state: ExportState = ExportState.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    not_before: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.task_id, self.target.value, self.operation.value)

    def to_dict(self) -> dict:
        return {
            'task_id': self.task_id,
            'target': self.target.value,
            'operation': self.operation.value,
            'payload': dict(self.payload),
            'retry_count': self.retry_count,
            'last_error': self.last_error,
            'error_kind': self.error_kind,
            'state': self.state.value,
            'created_at': format_timestamp(self.created_at),
            'updated_at': format_timestamp(self.updated_at),
            'not_before': format_timestamp(self.not_before),
        }

    @classmethod
    def from_dict(cls, data: dict, state: ExportState) -> 'ExportItem':
        """Create from a queue document record. Older records use `source` for the target."""
        target = data.get('target') or data.get('source') or Origin.VIKUNJA.value
        retry_count = int(data.get('retry_count') or 0)
        if retry_count < 0:
            raise ValueError(f"negative retry_count {retry_count}")
        return cls(
            task_id=str(data['task_id']),
            target=Origin(target),
            operation=Operation(data['operation']),
            payload=dict(data.get('payload') or {}),
            retry_count=retry_count,
            last_error=data.get('last_error'),
            error_kind=data.get('error_kind'),
            state=state,
            created_at=parse_timestamp(data.get('created_at')),
            updated_at=parse_timestamp(data.get('updated_at')),
            not_before=parse_timestamp(data.get('not_before')),
        )


@dataclass
class SyncWatermark:
    """Persisted record of what has already been synchronized."""
    last_import: Optional[datetime] = None
    last_export: Optional[datetime] = None
    task_count: int = 0
    project_count: int = 0

    def to_dict(self) -> dict:
        return {
            'last_import': format_timestamp(self.last_import),
            'last_export': format_timestamp(self.last_export),
            'task_count': self.task_count,
            'project_count': self.project_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SyncWatermark':
        if not isinstance(data, dict):
            raise ValueError("watermark document must be an object")
        task_count = data.get('task_count', 0)
        project_count = data.get('project_count', 0)
        if not isinstance(task_count, int) or not isinstance(project_count, int):
            raise ValueError("counts must be integers")
        return cls(
            last_import=parse_timestamp(data.get('last_import')),
            last_export=parse_timestamp(data.get('last_export')),
            task_count=task_count,
            project_count=project_count,
        )
