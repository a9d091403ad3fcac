"""
Task Reconciler CLI entry point.

Usage:
    python -m task_reconciler import [--source S] [--mode M]   Pull all sources into a snapshot
    python -m task_reconciler export [--source S] [--dry-run]  Drain the export queue once
    python -m task_reconciler enqueue --task-id ID --target T --operation OP [...]
    python -m task_reconciler requeue [--task-id ID]           Revive failed exports
    python -m task_reconciler status                           Show sync status
    python -m task_reconciler test                             Test connections
"""

import argparse
import logging
import signal
import sys
from contextlib import contextmanager

from .config import Config
from .exceptions import ConfigurationError, JobLockedError, StateCorruptionError
from .export_queue import ExportQueue, ExportQueueManager
from .logging_config import setup_logging
from .models import ImportMode, Operation, Origin
from .reconciler import ImportReconciler, SourceStatus
from .state import SyncStateStore
from .systems import EXPORTERS, IMPORTERS, build_exporters, build_importers

logger = logging.getLogger('task_reconciler.cli')

SOURCE_CHOICES = [o.value for o in Origin] + ['all']


def _selected(source: str, registry) -> list[Origin]:
    if source == 'all':
        return list(registry)
    return [Origin(source)]


@contextmanager
def _stop_on_signal(manager: ExportQueueManager):
    """Route SIGINT/SIGTERM to the manager for the duration of a drain."""
    def shutdown_handler(signum, frame):
        logger.info(f"Received signal {signum}, stopping after the current item...")
        manager.request_stop()

    previous = {sig: signal.signal(sig, shutdown_handler) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def cmd_import(args, config: Config) -> int:
    """Run one import cycle."""
    store = SyncStateStore(config)
    origins = _selected(args.source, IMPORTERS)

    with store.lock():
        store.ensure()
        importers = build_importers(config, origins)
        result = ImportReconciler(config, store, importers).run(ImportMode(args.mode))

    print("=" * 60)
    print(f"Import ({result.mode.value})")
    print("=" * 60)
    for origin, outcome in result.outcomes.items():
        if outcome.status == SourceStatus.SKIPPED:
            print(f"  - {origin.value}: not configured")
        elif outcome.contributed:
            mark = "✓" if outcome.status == SourceStatus.OK else "!"
            print(f"  {mark} {origin.value}: {outcome.tasks} tasks, {outcome.projects} projects"
                  + (f" (partial: {outcome.error})" if outcome.error else ""))
        else:
            print(f"  ✗ {origin.value}: {outcome.error}")

    if result.noop:
        print("\nNo data imported; state unchanged")
        return 0

    snapshot = result.snapshot
    print(f"\nMerged: {len(snapshot.tasks)} tasks, {len(snapshot.projects)} projects")
    print(f"Snapshot: {result.snapshot_path}")
    return 0


def cmd_export(args, config: Config) -> int:
    """Drain the export queue once."""
    store = SyncStateStore(config)
    targets = _selected(args.source, EXPORTERS) if args.source != 'all' else None
    manager = ExportQueueManager(config, store, build_exporters(config))

    if args.dry_run:
        report = manager.drain(dry_run=True, targets=targets)
    else:
        with store.lock(), _stop_on_signal(manager):
            store.ensure()
            report = manager.drain(targets=targets)

    print("=" * 60)
    print("Export" + (" [DRY RUN]" if args.dry_run else ""))
    print("=" * 60)
    print(f"  {report.summary()}")
    if report.total_failed:
        print(f"  Failed exports ({report.total_failed}) need review: {report.failed_file}")
    return 0


def cmd_enqueue(args, config: Config) -> int:
    """Queue one export request."""
    payload = {}
    if args.title:
        payload['title'] = args.title
    if args.priority is not None:
        payload['priority'] = args.priority
    if args.due:
        payload['due'] = args.due
    if args.label:
        payload['labels'] = args.label
    if args.comment:
        payload['content'] = args.comment

    store = SyncStateStore(config)
    manager = ExportQueueManager(config, store, {})
    with store.lock():
        store.ensure()
        item = manager.enqueue(args.task_id, Origin(args.target), Operation(args.operation), payload)

    print(f"Queued {item.operation.value} for task {item.task_id} in {item.target.value} ({item.state.value})")
    return 0


def cmd_requeue(args, config: Config) -> int:
    """Move failed exports back to pending."""
    store = SyncStateStore(config)
    manager = ExportQueueManager(config, store, {})
    with store.lock():
        store.ensure()
        revived = manager.requeue(args.task_id)

    if not revived:
        print("No failed exports to requeue")
    for item in revived:
        print(f"  ↺ {item.task_id} ({item.operation.value}) -> {item.target.value}")
    return 0


def cmd_status(args, config: Config) -> int:
    """Show current sync status."""
    store = SyncStateStore(config)
    watermark = store.load_watermark()
    queue = ExportQueue.load(config)

    print("=" * 60)
    print("Task Reconciler Status")
    print("=" * 60)

    print("\n[Configuration]")
    print(f"  State directory: {config.state_dir}")
    for origin in Origin:
        configured = config.system(origin).is_configured
        print(f"  {origin.value}: {'configured' if configured else 'not configured'}")

    print("\n[Sync State]")
    print(f"  Last import: {watermark.last_import.isoformat() if watermark.last_import else 'Never'}")
    print(f"  Last export: {watermark.last_export.isoformat() if watermark.last_export else 'Never'}")
    print(f"  Tasks: {watermark.task_count}, Projects: {watermark.project_count}")
    print(f"  Latest snapshot: {store.latest_snapshot() or 'None'}")

    print("\n[Export Queue]")
    print(f"  Pending: {len(queue.pending)}")
    print(f"  Failed: {len(queue.failed)}")
    if queue.failed:
        print(f"  Review: {config.failed_file}")
        for item in queue.failed[:10]:
            print(f"    ✗ {item.task_id} ({item.operation.value} -> {item.target.value}): {item.last_error}")

    return 0


def cmd_test(args, config: Config) -> int:
    """Test connections to every configured system."""
    print("=" * 60)
    print("Task Reconciler Connection Test")
    print("=" * 60)

    errors = config.validate()
    if errors:
        print("\n[CONFIG ERRORS]")
        for err in errors:
            print(f"  - {err}")
        return 1

    failures = 0
    for origin, importer in build_importers(config).items():
        print(f"\n[{origin.value}]")
        if importer is None:
            print("  - Not configured")
            continue
        try:
            print(f"  ✓ Connected: {importer.check_connection()}")
        except Exception as e:
            print(f"  ✗ Connection failed: {e}")
            failures += 1

    print("\n" + "=" * 60)
    print("All connections successful!" if not failures else f"{failures} connection(s) failed")
    print("=" * 60)
    return 1 if failures else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='task-reconciler',
        description='Task Reconciler - Todoist, Vikunja, YouTrack, Jira',
    )
    parser.add_argument('--config', help='YAML configuration file (default: $SYNC_CONFIG)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('import', help='Import from sources into a merged snapshot')
    p.add_argument('--source', choices=SOURCE_CHOICES, default='all')
    p.add_argument('--mode', choices=[m.value for m in ImportMode], default=ImportMode.AUTO.value)

    p = sub.add_parser('export', help='Process the pending export queue once')
    p.add_argument('--source', choices=[o.value for o in EXPORTERS] + ['all'], default='all')
    p.add_argument('--dry-run', action='store_true', help='Show what would be exported without making changes')

    p = sub.add_parser('enqueue', help='Queue an export request')
    p.add_argument('--task-id', required=True)
    p.add_argument('--target', required=True, choices=[o.value for o in EXPORTERS])
    p.add_argument('--operation', required=True, choices=[o.value for o in Operation])
    p.add_argument('--title')
    p.add_argument('--priority', type=int, choices=range(5), help='0 (none) to 4 (urgent)')
    p.add_argument('--due', help='ISO date or natural-language due string')
    p.add_argument('--label', action='append', help='Label (repeatable)')
    p.add_argument('--comment', help='Comment text for the comment operation')

    p = sub.add_parser('requeue', help='Move failed exports back to pending')
    p.add_argument('--task-id', help='Only this task (default: all failed)')

    sub.add_parser('status', help='Show sync status')
    sub.add_parser('test', help='Test connections')

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = Config.load(args.config)
    except ConfigurationError as e:
        print(f"[CONFIG ERROR] {e}", file=sys.stderr)
        return 1

    setup_logging(args.command, config.log_level, config.log_dir, verbose=args.verbose)

    commands = {
        'import': cmd_import,
        'export': cmd_export,
        'enqueue': cmd_enqueue,
        'requeue': cmd_requeue,
        'status': cmd_status,
        'test': cmd_test,
    }

    try:
        return commands[args.command](args, config)
    except StateCorruptionError as e:
        logger.error(f"State corrupted, nothing written: {e}")
        return 1
    except JobLockedError as e:
        logger.error(str(e))
        return 1
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Invalid request: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
