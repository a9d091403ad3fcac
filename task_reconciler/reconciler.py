"""
Import Reconciler.

Pulls projects and tasks from every configured source, merges them into
one canonical snapshot, and advances the import watermark.

Handles:
- Full vs. incremental mode selection from the watermark
- Concurrent per-source fetches with a total timeout per source
- Partial-failure isolation between sources
- Privacy filtering before the snapshot is final
"""

import dataclasses
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import Config
from .exceptions import SourceError
from .models import CanonicalSnapshot, ImportMode, Origin, Project, Task, utcnow
from .privacy import filter_task
from .state import SyncStateStore
from .systems import FetchResult, SourceImporter

logger = logging.getLogger(__name__)


class SourceStatus(str, Enum):
    OK = 'ok'
    PARTIAL = 'partial'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass
class SourceOutcome:
    """What happened to one source during an import run."""
    origin: Origin
    status: SourceStatus
    projects: int = 0
    tasks: int = 0
    error: Optional[str] = None

    @property
    def contributed(self) -> bool:
        return self.status in (SourceStatus.OK, SourceStatus.PARTIAL)


@dataclass
class ImportResult:
    mode: ImportMode
    outcomes: dict[Origin, SourceOutcome] = field(default_factory=dict)
    snapshot: Optional[CanonicalSnapshot] = None
    snapshot_path: Optional[Path] = None

    @property
    def noop(self) -> bool:
        """True when no source produced data and the watermark was left alone."""
        return self.snapshot is None

    @property
    def failed_sources(self) -> list[Origin]:
        return [o for o, r in self.outcomes.items() if r.status in (SourceStatus.FAILED, SourceStatus.PARTIAL)]


def resolve_mode(requested: ImportMode, last_import: Optional[datetime]) -> ImportMode:
    """First import is always full; otherwise incremental unless overridden."""
    if last_import is None:
        return ImportMode.FULL
    if requested == ImportMode.AUTO:
        return ImportMode.INCREMENTAL
    return requested


def break_cycles(projects: list[Project]) -> list[Project]:
    """Clear the parent of any project whose ancestry loops back to itself."""
    by_key = {p.key: p for p in projects}
    result = []

    for project in projects:
        project = by_key[project.key]
        seen = set()
        parent_id = project.parent_id
        cyclic = False

        while parent_id:
            key = (project.origin.value, parent_id)
            if key == project.key:
                cyclic = True
                break
            if key in seen or key not in by_key:
                break
            seen.add(key)
            parent_id = by_key[key].parent_id

        if cyclic:
            logger.warning(f"Project {project.key} is part of a parent cycle; detaching it from {project.parent_id}")
            project = dataclasses.replace(project, parent_id=None)
            by_key[project.key] = project
        result.append(project)

    return result


def merge(results: list[tuple[Origin, FetchResult]], produced_at: datetime, mode: ImportMode) -> CanonicalSnapshot:
    """
    Concatenate source results into one snapshot.

    No identity resolution across sources: `(origin, source_id)` is the only
    key. A key repeated within one source keeps its first position and its
    last content.
    """
    projects: dict[tuple, Project] = {}
    tasks: dict[tuple, Task] = {}
    duplicates = 0

    for origin, result in results:
        for project in result.projects:
            if project.origin != origin:
                logger.warning(f"{origin.value}: dropping project {project.key} tagged with another origin")
                continue
            duplicates += project.key in projects
            projects[project.key] = project

        for task in result.tasks:
            if task.origin != origin:
                logger.warning(f"{origin.value}: dropping task {task.key} tagged with another origin")
                continue
            duplicates += task.key in tasks
            tasks[task.key] = filter_task(task)

    if duplicates:
        logger.debug(f"Collapsed {duplicates} repeated records")

    return CanonicalSnapshot(
        produced_at=produced_at,
        mode=mode,
        sources=[origin.value for origin, _ in results],
        projects=break_cycles(list(projects.values())),
        tasks=list(tasks.values()),
    )


class ImportReconciler:
    """Orchestrates source importers and commits the import watermark."""

    def __init__(self, config: Config, store: SyncStateStore, importers: dict[Origin, Optional[SourceImporter]]):
        self.config = config
        self.store = store
        self.importers = importers

    def run(self, mode: ImportMode = ImportMode.AUTO, now: Optional[datetime] = None) -> ImportResult:
        """
        Run one import cycle.

        Raises StateCorruptionError if the watermark cannot be read; every
        other failure is confined to the source that caused it.
        """
        started_at = now or utcnow()
        watermark = self.store.load_watermark()

        mode = resolve_mode(mode, watermark.last_import)
        since = watermark.last_import if mode == ImportMode.INCREMENTAL else None
        if mode == ImportMode.FULL and watermark.last_import is None:
            logger.info("First import detected, using FULL mode")
        elif since is not None:
            logger.info(f"Using INCREMENTAL mode since {since.isoformat()}")
        else:
            logger.info(f"Using {mode.value.upper()} mode")

        result = ImportResult(mode=mode)
        active: dict[Origin, SourceImporter] = {}
        for origin, importer in self.importers.items():
            if importer is None:
                logger.warning(f"{origin.value} not configured, skipping")
                result.outcomes[origin] = SourceOutcome(origin, SourceStatus.SKIPPED)
            else:
                active[origin] = importer

        fetched = self._fetch_all(active, mode, since, result)

        contributing = [(o, fetched[o]) for o in active if o in fetched]
        if not contributing:
            logger.warning("No data imported from any source; watermark left unchanged")
            return result

        snapshot = merge(contributing, started_at, mode)
        result.snapshot = snapshot
        result.snapshot_path = self.store.write_snapshot(snapshot)
        self.store.record_import(started_at, len(snapshot.tasks), len(snapshot.projects))
        self.store.cleanup_snapshots(started_at)

        logger.info(
            f"Import complete: {len(snapshot.tasks)} tasks, {len(snapshot.projects)} projects "
            f"from {', '.join(snapshot.sources)}"
        )
        return result

    def _fetch_all(
        self,
        importers: dict[Origin, SourceImporter],
        mode: ImportMode,
        since: Optional[datetime],
        result: ImportResult,
    ) -> dict[Origin, FetchResult]:
        """Fetch every source concurrently; a stalled source does not hold up its siblings."""
        fetched: dict[Origin, FetchResult] = {}
        if not importers:
            return fetched

        executor = ThreadPoolExecutor(max_workers=len(importers), thread_name_prefix='import')
        try:
            futures = {executor.submit(importer.fetch, mode, since): origin for origin, importer in importers.items()}
            done, _ = wait(futures, timeout=self.config.source_timeout)

            for future, origin in futures.items():
                if future not in done:
                    message = f"timed out after {self.config.source_timeout:g}s"
                    importers[origin].cancel()
                    logger.error(f"{origin.value}: {message}")
                    result.outcomes[origin] = SourceOutcome(origin, SourceStatus.FAILED, error=message)
                    continue

                try:
                    data = future.result()
                    status = SourceStatus.OK
                    error = None
                except SourceError as e:
                    logger.error(f"Failed to fetch from {origin.value}: {e}")
                    data, status, error = e.partial, SourceStatus.PARTIAL, str(e)
                    if data is None or not (data.projects or data.tasks):
                        data, status = None, SourceStatus.FAILED
                except Exception as e:
                    logger.error(f"Failed to fetch from {origin.value}: {e}")
                    data, status, error = None, SourceStatus.FAILED, str(e)

                outcome = SourceOutcome(origin, status, error=error)
                if data is not None:
                    fetched[origin] = data
                    outcome.projects = len(data.projects)
                    outcome.tasks = len(data.tasks)
                result.outcomes[origin] = outcome
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return fetched
