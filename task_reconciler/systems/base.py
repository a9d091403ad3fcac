"""
Source Importer and Sink Exporter interfaces.

Every external system provides an importer (fetch projects and tasks and
normalize them into the canonical shape) and, when it accepts writes, an
exporter (apply one queued operation). Implementations are selected by
origin in systems/__init__.py.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, NamedTuple, Optional

import httpx

from ..config import Config, SystemConfig
from ..exceptions import PermanentApiError
from ..models import ImportMode, Operation, Origin, Priority, Project, Task

logger = logging.getLogger(__name__)


class FetchResult(NamedTuple):
    projects: list[Project]
    tasks: list[Task]


class ApplyOutcome(str, Enum):
    """Successful results of an export operation."""
    APPLIED = 'applied'
    ALREADY_APPLIED = 'already_applied'


class SourceImporter(ABC):
    """Fetches projects and tasks from one external system."""

    origin: Origin

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        self.system = system
        self.config = config
        self.transport = transport
        self.cancelled = threading.Event()

    @property
    def name(self) -> str:
        return self.origin.value

    @abstractmethod
    def fetch(self, mode: ImportMode, since: Optional[datetime]) -> FetchResult:
        """
        Fetch projects and tasks.

        In incremental mode only tasks changed after `since` are returned.
        Pages are read until exhausted. Raises SourceError; when some pages
        were read before the failure they are attached as `partial`.
        """

    @abstractmethod
    def check_connection(self) -> str:
        """Make one cheap authenticated call and describe the result."""

    def cancel(self):
        """Stop issuing requests; an in-flight fetch fails at its next page."""
        self.cancelled.set()


class SinkExporter(ABC):
    """Applies queued operations to one external system."""

    origin: Origin
    operations = frozenset(Operation)

    def __init__(self, system: SystemConfig, config: Config, transport: Optional[httpx.BaseTransport] = None):
        self.system = system
        self.config = config
        self.transport = transport

    @property
    def name(self) -> str:
        return self.origin.value

    @abstractmethod
    def apply(self, task_id: str, operation: Operation, payload: dict) -> ApplyOutcome:
        """
        Apply one operation.

        Raises ApiError (transient, permanent or rate limit) on failure.
        Completing an already-completed task returns ALREADY_APPLIED.
        """


# ==========================================================================
# Helpers shared by implementations
# ==========================================================================

def normalize_records(records: Iterable[dict], normalize: Callable[[dict], Any], kind: str, source: str) -> list:
    """Normalize raw API records, skipping and logging malformed ones."""
    results = []
    for record in records:
        try:
            results.append(normalize(record))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            record_id = record.get('id') if isinstance(record, dict) else None
            logger.warning(f"{source}: skipping malformed {kind} {record_id!r}: {e}")
    return results


# Issue trackers name their priorities instead of numbering them
PRIORITY_BY_NAME = {
    'show-stopper': Priority.URGENT,
    'blocker': Priority.URGENT,
    'highest': Priority.URGENT,
    'critical': Priority.HIGH,
    'high': Priority.HIGH,
    'major': Priority.MEDIUM,
    'medium': Priority.MEDIUM,
    'normal': Priority.LOW,
    'minor': Priority.LOW,
    'low': Priority.LOW,
    'lowest': Priority.NONE,
    'trivial': Priority.NONE,
}


def priority_from_name(name: Optional[str]) -> Priority:
    if not name:
        return Priority.NONE
    return PRIORITY_BY_NAME.get(name.strip().lower(), Priority.NONE)


def coerce_priority(value) -> Priority:
    """Canonical priority from an export payload value."""
    try:
        return Priority(int(value))
    except (TypeError, ValueError):
        raise PermanentApiError(f"invalid priority {value!r}")


def changed_since(tasks: list[Task], since: Optional[datetime]) -> list[Task]:
    """
    Client-side incremental filter for APIs without a server-side one.

    Records without a modification time are kept: their creation time says
    nothing about later edits.
    """
    if since is None:
        return tasks
    return [t for t in tasks if t.updated_at is None or t.updated_at > since]
