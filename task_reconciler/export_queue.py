"""
Export Queue Manager.

Owns the pending and failed export documents. Each pass loads both into
memory, works through the pending items once in insertion order, and
writes both back at the end; the on-disk copy from the start of the pass
is the recovery point if the process dies part way.

Item lifecycle:
    pending --(success)--> removed
    pending --(failure, retries left)--> pending, retry_count + 1
    pending --(failure, last retry)--> failed
    failed --(manual requeue)--> pending
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from .config import Config
from .exceptions import ApiError, ConfigurationError, PermanentApiError, RateLimitError, StateCorruptionError
from .models import ExportItem, ExportState, Operation, Origin, Priority, utcnow
from .privacy import filter_payload
from .state import SyncStateStore, read_document, write_document
from .systems import EXPORTERS, ApplyOutcome, SinkExporter

logger = logging.getLogger(__name__)


def _load_items(path: Path, state: ExportState) -> list[ExportItem]:
    records = read_document(path, [])
    if not isinstance(records, list):
        raise StateCorruptionError(path, "queue document must be a list")
    try:
        return [ExportItem.from_dict(r, state) for r in records]
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise StateCorruptionError(path, f"invalid export record: {e}") from e


class ExportQueue:
    """In-memory copy of the pending and failed documents for one pass."""

    def __init__(self, pending_file: Path, failed_file: Path, pending: list[ExportItem], failed: list[ExportItem]):
        self.pending_file = pending_file
        self.failed_file = failed_file
        self.pending = pending
        self.failed = failed

    @classmethod
    def load(cls, config: Config) -> 'ExportQueue':
        return cls(
            config.pending_file,
            config.failed_file,
            _load_items(config.pending_file, ExportState.PENDING),
            _load_items(config.failed_file, ExportState.FAILED),
        )

    def save(self):
        write_document(self.pending_file, [i.to_dict() for i in self.pending])
        write_document(self.failed_file, [i.to_dict() for i in self.failed])

    def find(self, key: tuple) -> Optional[ExportItem]:
        for item in self.pending + self.failed:
            if item.key == key:
                return item
        return None


@dataclass
class DrainReport:
    """Summary of one drain pass."""
    dry_run: bool
    failed_file: Path
    completed: list[ExportItem] = field(default_factory=list)
    retried: list[ExportItem] = field(default_factory=list)
    failed: list[ExportItem] = field(default_factory=list)
    skipped: list[ExportItem] = field(default_factory=list)
    planned: list[ExportItem] = field(default_factory=list)
    remaining: int = 0
    total_failed: int = 0

    def summary(self) -> str:
        if self.dry_run:
            return f"[DRY RUN] Would process: {len(self.planned)}, Skipped: {len(self.skipped)}"
        return (
            f"Completed: {len(self.completed)}, Failed: {len(self.failed)}, "
            f"Remaining: {self.remaining}"
        )


class ExportQueueManager:
    """Accepts export requests and drains them against their targets."""

    def __init__(self, config: Config, store: SyncStateStore, exporters: dict[Origin, SinkExporter]):
        self.config = config
        self.store = store
        self.exporters = exporters
        self._stop = threading.Event()

    def request_stop(self):
        """Finish the in-flight operation and start no further ones."""
        self._stop.set()

    # ==========================================================================
    # Enqueue / requeue
    # ==========================================================================

    def enqueue(
        self,
        task_id: str,
        target: Origin,
        operation: Operation,
        payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> ExportItem:
        """
        Add a pending export.

        An item with the same (task_id, target, operation) in either queue is
        updated in place: its payload is replaced, its position and retry
        count are kept.
        """
        if target not in EXPORTERS:
            raise ConfigurationError(f"{target.value} does not accept exports")
        payload = dict(payload or {})
        if payload.get('priority') is not None:
            # Raises ValueError outside 0..4
            payload['priority'] = int(Priority(int(payload['priority'])))

        now = now or utcnow()
        task_id = str(task_id)
        queue = ExportQueue.load(self.config)

        item = queue.find((task_id, target.value, operation.value))
        if item is not None:
            item.payload = payload
            item.updated_at = now
            logger.info(f"Export {operation.value} for task {task_id} ({target.value}) already queued as {item.state.value}; payload updated")
        else:
            item = ExportItem(
                task_id=task_id,
                target=target,
                operation=operation,
                payload=payload,
                created_at=now,
                updated_at=now,
            )
            queue.pending.append(item)
            logger.info(f"Queued {operation.value} for task {task_id} ({target.value})")

        queue.save()
        return item

    def requeue(self, task_id: Optional[str] = None, now: Optional[datetime] = None) -> list[ExportItem]:
        """Move failed items (all, or those for one task) back to pending with a fresh retry budget."""
        now = now or utcnow()
        queue = ExportQueue.load(self.config)

        revived = [i for i in queue.failed if task_id is None or i.task_id == str(task_id)]
        if not revived:
            return []

        queue.failed = [i for i in queue.failed if i not in revived]
        for item in revived:
            item.state = ExportState.PENDING
            item.retry_count = 0
            item.last_error = None
            item.error_kind = None
            item.not_before = None
            item.updated_at = now
            queue.pending.append(item)
            logger.info(f"Requeued {item.operation.value} for task {item.task_id} ({item.target.value})")

        queue.save()
        return revived

    # ==========================================================================
    # Drain
    # ==========================================================================

    def drain(
        self,
        dry_run: bool = False,
        targets: Optional[Iterable[Origin]] = None,
        now: Optional[datetime] = None,
    ) -> DrainReport:
        """
        Attempt every eligible pending item once.

        A dry run validates and logs what would happen but makes no network
        calls and writes nothing.
        """
        now = now or utcnow()
        targets = set(targets) if targets else None
        self._stop.clear()

        queue = ExportQueue.load(self.config)
        report = DrainReport(dry_run=dry_run, failed_file=self.config.failed_file)

        if not queue.pending:
            logger.info("No pending exports")
        else:
            logger.info(f"Processing {len(queue.pending)} pending exports")

        plan: dict[Origin, list[ExportItem]] = {}
        outcomes: dict[int, object] = {}

        for item in queue.pending:
            if targets is not None and item.target not in targets:
                report.skipped.append(item)
            elif item.not_before is not None and item.not_before > now:
                logger.info(f"Task {item.task_id} ({item.target.value}) backing off until {item.not_before.isoformat()}")
                report.skipped.append(item)
            elif item.target not in EXPORTERS:
                outcomes[id(item)] = PermanentApiError(f"{item.target.value} does not accept exports")
                report.planned.append(item)
            elif item.target not in self.exporters:
                logger.warning(f"{item.target.value} not configured, leaving task {item.task_id} pending")
                report.skipped.append(item)
            else:
                plan.setdefault(item.target, []).append(item)
                report.planned.append(item)

        if dry_run:
            for item in report.planned:
                payload = filter_payload(item.payload)
                logger.info(
                    f"[DRY RUN] Would {item.operation.value} task {item.task_id} in {item.target.value}"
                    + (f" with {sorted(payload)}" if payload else "")
                )
            report.remaining = len(queue.pending)
            report.total_failed = len(queue.failed)
            return report

        for target_outcomes in self._run_plan(plan):
            outcomes.update(target_outcomes)

        # Single-threaded over the results, in queue order
        still_pending = []
        for item in queue.pending:
            outcome = outcomes.get(id(item))
            if outcome is None:
                still_pending.append(item)
            elif isinstance(outcome, ApplyOutcome):
                report.completed.append(item)
            elif self._record_failure(item, outcome, now):
                queue.failed.append(item)
                report.failed.append(item)
            else:
                still_pending.append(item)
                report.retried.append(item)

        queue.pending = still_pending
        queue.save()
        self.store.record_export(now)

        report.remaining = len(queue.pending)
        report.total_failed = len(queue.failed)
        logger.info(report.summary())
        if report.total_failed:
            logger.warning(f"Total accumulated failed exports: {report.total_failed}")
            logger.warning(f"Manual review required: {report.failed_file}")
        return report

    def _record_failure(self, item: ExportItem, error: ApiError, now: datetime) -> bool:
        """Update the item after a failed attempt. Returns True if it is exhausted."""
        item.retry_count += 1
        item.last_error = str(error)
        item.error_kind = error.kind
        item.updated_at = now

        if isinstance(error, RateLimitError):
            delay = max(error.retry_after or 0, self.config.rate_limit_backoff)
            item.not_before = now + timedelta(seconds=delay)

        max_retries = self.config.max_retries
        if item.retry_count >= max_retries:
            item.state = ExportState.FAILED
            logger.error(f"Task {item.task_id} failed after {max_retries} retries, moving to failed")
            return True

        if error.transient:
            logger.warning(f"Task {item.task_id} failed ({error.kind}), retry {item.retry_count} of {max_retries}: {error}")
        else:
            logger.error(f"Task {item.task_id} failed (permanent), retry {item.retry_count} of {max_retries}: {error}")
        return False

    def _run_plan(self, plan: dict[Origin, list[ExportItem]]) -> list[dict[int, object]]:
        """Run each target's items in order, one worker per target."""
        if not plan:
            return []
        with ThreadPoolExecutor(max_workers=len(plan), thread_name_prefix='export') as executor:
            futures = [
                executor.submit(self._apply_items, self.exporters[target], items)
                for target, items in plan.items()
            ]
            return [f.result() for f in futures]

    def _apply_items(self, exporter: SinkExporter, items: list[ExportItem]) -> dict[int, object]:
        outcomes: dict[int, object] = {}

        for item in items:
            if self._stop.is_set():
                logger.info(f"Stop requested; leaving {exporter.name} task {item.task_id} and later items pending")
                break

            logger.info(f"Processing: {item.task_id} ({item.operation.value}) for {exporter.name}")
            try:
                outcome = exporter.apply(item.task_id, item.operation, filter_payload(item.payload))
            except RateLimitError as e:
                outcomes[id(item)] = e
                logger.warning(f"{exporter.name} rate limited; no further calls this pass")
                break
            except ApiError as e:
                outcome = e
            except Exception as e:
                logger.error(f"Unexpected error exporting task {item.task_id} to {exporter.name}: {e}")
                outcome = PermanentApiError(str(e))
            else:
                if outcome == ApplyOutcome.ALREADY_APPLIED:
                    logger.info(f"Task {item.task_id} already in desired state in {exporter.name}")
                else:
                    logger.info(f"{item.operation.value} applied to task {item.task_id} in {exporter.name}")

            outcomes[id(item)] = outcome

        return outcomes
