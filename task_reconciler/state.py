"""
Sync State Store.

Durable JSON documents in the state directory:
    sync-state.json            watermark and aggregate counts
    pending-exports.json       export queue (see export_queue.py)
    failed-exports.json        exhausted export items
    import-YYYYMMDD-HHMMSS.json  one canonical snapshot per import run

Every write goes to a temporary file that is renamed over the target,
so a crash leaves either the old or the new document on disk.
"""

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from .config import Config
from .exceptions import JobLockedError, StateCorruptionError
from .models import CanonicalSnapshot, SyncWatermark, utcnow

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = 'import-'
SNAPSHOT_TIME_FORMAT = '%Y%m%d-%H%M%S'
LOCK_FILE = '.sync.lock'


def read_document(path: Path, default: Any) -> Any:
    """Read a JSON document, returning `default` if it does not exist."""
    if not path.exists():
        return default
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StateCorruptionError(path, f"unreadable document: {e}") from e


def write_document(path: Path, data: Any):
    """Atomically replace a JSON document."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    with open(tmp_path, 'w') as f:
        json.dump(data, f, indent=2)
        f.write('\n')
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


class SyncStateStore:
    """Watermark and snapshot persistence."""

    def __init__(self, config: Config):
        self.config = config
        self.state_dir = config.state_dir
        self.state_file = config.state_file

    def ensure(self):
        """Create the state directory and empty watermark and queue documents if missing."""
        if not self.state_dir.exists():
            self.state_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created state directory: {self.state_dir}")

        if not self.state_file.exists():
            write_document(self.state_file, SyncWatermark().to_dict())
            logger.info(f"Initialized state file: {self.state_file}")

        for path in (self.config.pending_file, self.config.failed_file):
            if not path.exists():
                write_document(path, [])

    @contextmanager
    def lock(self):
        """
        Hold the advisory lock on the state directory.

        Import and export jobs share the watermark document and must not
        run at the same time against the same directory.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.state_dir / LOCK_FILE
        with open(lock_path, 'a') as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise JobLockedError(f"Another sync job holds {lock_path}")
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    # ==========================================================================
    # Watermark
    # ==========================================================================

    def load_watermark(self) -> SyncWatermark:
        data = read_document(self.state_file, None)
        if data is None:
            return SyncWatermark()
        try:
            return SyncWatermark.from_dict(data)
        except (TypeError, ValueError) as e:
            raise StateCorruptionError(self.state_file, f"invalid watermark: {e}") from e

    def save_watermark(self, watermark: SyncWatermark):
        write_document(self.state_file, watermark.to_dict())

    def record_import(self, completed_at: datetime, task_count: int, project_count: int) -> SyncWatermark:
        """Advance `last_import` and the aggregate counts; `last_export` is preserved."""
        watermark = self.load_watermark()
        watermark.last_import = completed_at
        watermark.task_count = task_count
        watermark.project_count = project_count
        self.save_watermark(watermark)
        logger.info(f"State updated: {task_count} tasks, {project_count} projects")
        return watermark

    def record_export(self, completed_at: datetime) -> SyncWatermark:
        """Advance `last_export`; import fields are preserved."""
        watermark = self.load_watermark()
        watermark.last_export = completed_at
        self.save_watermark(watermark)
        logger.info("Updated export timestamp in state file")
        return watermark

    # ==========================================================================
    # Snapshots
    # ==========================================================================

    def snapshot_path(self, produced_at: datetime) -> Path:
        stamp = produced_at.astimezone(timezone.utc).strftime(SNAPSHOT_TIME_FORMAT)
        return self.state_dir / f"{SNAPSHOT_PREFIX}{stamp}.json"

    def write_snapshot(self, snapshot: CanonicalSnapshot) -> Path:
        path = self.snapshot_path(snapshot.produced_at)
        write_document(path, snapshot.to_dict())
        logger.info(f"Merged imports saved to: {path}")
        return path

    def list_snapshots(self) -> list[Path]:
        """Snapshot documents, oldest first."""
        if not self.state_dir.exists():
            return []
        return sorted(self.state_dir.glob(f"{SNAPSHOT_PREFIX}*.json"))

    def latest_snapshot(self) -> Optional[Path]:
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    def load_snapshot(self, path: Path) -> CanonicalSnapshot:
        data = read_document(path, None)
        if data is None:
            raise FileNotFoundError(path)
        try:
            return CanonicalSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateCorruptionError(path, f"invalid snapshot: {e}") from e

    def cleanup_snapshots(self, now: Optional[datetime] = None) -> int:
        """Delete snapshot documents older than the retention period."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.snapshot_retention_days)
        removed = 0

        for path in self.list_snapshots():
            stamp = path.stem[len(SNAPSHOT_PREFIX):]
            try:
                produced_at = datetime.strptime(stamp, SNAPSHOT_TIME_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                produced_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

            if produced_at < cutoff:
                path.unlink()
                removed += 1

        if removed:
            logger.info(f"Removed {removed} snapshot(s) older than {self.config.snapshot_retention_days} days")
        return removed
