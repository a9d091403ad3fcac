"""
Tests for the import reconciler.
"""
import threading
from datetime import timedelta

import pytest

from task_reconciler.exceptions import StateCorruptionError
from task_reconciler.models import ImportMode, Origin
from task_reconciler.reconciler import ImportReconciler, SourceStatus, break_cycles, merge, resolve_mode
from task_reconciler.systems import FetchResult

from conftest import FakeImporter, make_project, make_task, read_json


def run(config, store, importers, **kwargs):
    return ImportReconciler(config, store, {i.origin: i for i in importers}).run(**kwargs)


class TestModeSelection:

    def test_first_import_is_always_full(self):
        assert resolve_mode(ImportMode.AUTO, None) == ImportMode.FULL
        assert resolve_mode(ImportMode.INCREMENTAL, None) == ImportMode.FULL

    def test_auto_becomes_incremental_after_first_import(self, now):
        assert resolve_mode(ImportMode.AUTO, now) == ImportMode.INCREMENTAL

    def test_explicit_full_is_honoured(self, now):
        assert resolve_mode(ImportMode.FULL, now) == ImportMode.FULL

    def test_incremental_passes_watermark_to_sources(self, config, store, now):
        store.record_import(now - timedelta(hours=1), 0, 0)
        importer = FakeImporter(Origin.TODOIST, tasks=[make_task('1')])

        result = run(config, store, [importer], now=now)

        assert result.mode == ImportMode.INCREMENTAL
        assert importer.calls == [(ImportMode.INCREMENTAL, now - timedelta(hours=1))]

    def test_full_mode_passes_no_since(self, config, store, now):
        store.record_import(now - timedelta(hours=1), 0, 0)
        importer = FakeImporter(Origin.TODOIST)

        run(config, store, [importer], mode=ImportMode.FULL, now=now)

        assert importer.calls == [(ImportMode.FULL, None)]


class TestImportRun:

    def test_all_sources_merged_and_watermark_advanced(self, config, store, now):
        todoist = FakeImporter(Origin.TODOIST, projects=[make_project('p1')],
                               tasks=[make_task('1', project_id='p1'), make_task('2')])
        vikunja = FakeImporter(Origin.VIKUNJA, projects=[make_project('9', Origin.VIKUNJA)],
                               tasks=[make_task('1', Origin.VIKUNJA)])

        result = run(config, store, [todoist, vikunja], now=now)

        assert not result.noop
        assert len(result.snapshot.tasks) == 3
        assert len(result.snapshot.projects) == 2
        assert result.snapshot.sources == ['todoist', 'vikunja']

        watermark = store.load_watermark()
        assert watermark.last_import == now
        assert watermark.task_count == 3
        assert watermark.project_count == 2

        document = read_json(result.snapshot_path)
        assert document['mode'] == 'full'
        assert document['timestamp'] == '2024-05-01T12:00:00Z'

    def test_colliding_ids_across_sources_are_kept_apart(self, config, store, now):
        todoist = FakeImporter(Origin.TODOIST, tasks=[make_task('100', title='Buy milk')])
        vikunja = FakeImporter(Origin.VIKUNJA, tasks=[make_task('100', Origin.VIKUNJA, title='Buy milk')])

        result = run(config, store, [todoist, vikunja], now=now)

        assert {t.key for t in result.snapshot.tasks} == {('todoist', '100'), ('vikunja', '100')}

    def test_stalled_source_does_not_block_others(self, config, store, now):
        release = threading.Event()
        config.source_timeout = 0.2
        todoist = FakeImporter(Origin.TODOIST, tasks=[make_task(i) for i in range(3)])
        vikunja = FakeImporter(Origin.VIKUNJA, block=release, tasks=[make_task('x', Origin.VIKUNJA)])

        try:
            result = run(config, store, [todoist, vikunja], now=now)
        finally:
            release.set()

        assert len(result.snapshot.tasks) == 3
        assert result.outcomes[Origin.VIKUNJA].status == SourceStatus.FAILED
        assert 'timed out' in result.outcomes[Origin.VIKUNJA].error
        assert result.failed_sources == [Origin.VIKUNJA]
        assert store.load_watermark().last_import == now
        assert vikunja.cancelled.is_set()
        assert not todoist.cancelled.is_set()

    def test_failed_source_is_isolated(self, config, store, now):
        todoist = FakeImporter(Origin.TODOIST, error='HTTP 503')
        vikunja = FakeImporter(Origin.VIKUNJA, tasks=[make_task('1', Origin.VIKUNJA)])

        result = run(config, store, [todoist, vikunja], now=now)

        assert result.outcomes[Origin.TODOIST].status == SourceStatus.FAILED
        assert result.snapshot.sources == ['vikunja']
        assert len(result.snapshot.tasks) == 1

    def test_partial_source_data_is_kept(self, config, store, now):
        partial = FetchResult([make_project('p1')], [make_task('1')])
        todoist = FakeImporter(Origin.TODOIST, error='page 2 failed', partial=partial)

        result = run(config, store, [todoist], now=now)

        outcome = result.outcomes[Origin.TODOIST]
        assert outcome.status == SourceStatus.PARTIAL
        assert outcome.tasks == 1
        assert result.failed_sources == [Origin.TODOIST]
        assert len(result.snapshot.tasks) == 1

    def test_all_sources_failing_is_a_noop(self, config, store, now, state_dir):
        store.record_import(now - timedelta(days=1), 5, 1)
        before = config.state_file.read_bytes()
        todoist = FakeImporter(Origin.TODOIST, error='HTTP 500')
        vikunja = FakeImporter(Origin.VIKUNJA, error='HTTP 500')

        result = run(config, store, [todoist, vikunja], now=now)

        assert result.noop
        assert config.state_file.read_bytes() == before
        assert store.list_snapshots() == []

    def test_empty_successful_source_still_advances_watermark(self, config, store, now):
        result = run(config, store, [FakeImporter(Origin.TODOIST)], now=now)

        assert not result.noop
        assert store.load_watermark().last_import == now
        assert store.load_watermark().task_count == 0

    def test_unconfigured_sources_are_skipped(self, config, store, now):
        importers = {Origin.TODOIST: FakeImporter(Origin.TODOIST, tasks=[make_task('1')]), Origin.JIRA: None}

        result = ImportReconciler(config, store, importers).run(now=now)

        assert result.outcomes[Origin.JIRA].status == SourceStatus.SKIPPED
        assert result.snapshot.sources == ['todoist']

    def test_repeat_run_with_same_data_is_stable(self, config, store, now):
        tasks = [make_task('1'), make_task('2')]

        first = run(config, store, [FakeImporter(Origin.TODOIST, tasks=tasks)], mode=ImportMode.FULL, now=now)
        second = run(config, store, [FakeImporter(Origin.TODOIST, tasks=tasks)], mode=ImportMode.FULL,
                     now=now + timedelta(minutes=5))

        assert first.snapshot.tasks == second.snapshot.tasks
        assert store.load_watermark().task_count == 2

    def test_snapshot_tasks_are_privacy_filtered(self, config, store, now):
        importer = FakeImporter(Origin.TODOIST, tasks=[make_task('1', description='secret', comments=('c',))])

        result = run(config, store, [importer], now=now)

        task = read_json(result.snapshot_path)['tasks'][0]
        assert 'description' not in task
        assert 'comments' not in task

    def test_corrupt_watermark_aborts_before_fetch(self, config, store, now):
        config.state_file.write_text('not json')
        importer = FakeImporter(Origin.TODOIST, tasks=[make_task('1')])

        with pytest.raises(StateCorruptionError):
            run(config, store, [importer], now=now)

        assert importer.calls == []
        assert store.list_snapshots() == []

    def test_old_snapshots_are_cleaned_up(self, config, store, now):
        run(config, store, [FakeImporter(Origin.TODOIST)], now=now - timedelta(days=10))
        run(config, store, [FakeImporter(Origin.TODOIST)], now=now)

        assert [p.name for p in store.list_snapshots()] == ['import-20240501-120000.json']


class TestMerge:

    def test_repeated_key_keeps_first_position_last_content(self, now):
        result = FetchResult([], [make_task('1', title='old'), make_task('2'), make_task('1', title='new')])

        snapshot = merge([(Origin.TODOIST, result)], now, ImportMode.FULL)

        assert [t.source_id for t in snapshot.tasks] == ['1', '2']
        assert snapshot.tasks[0].title == 'new'

    def test_records_tagged_with_wrong_origin_are_dropped(self, now):
        result = FetchResult([], [make_task('1'), make_task('2', Origin.VIKUNJA)])

        snapshot = merge([(Origin.TODOIST, result)], now, ImportMode.FULL)

        assert [t.key for t in snapshot.tasks] == [('todoist', '1')]

    def test_parent_cycles_are_broken(self):
        projects = [
            make_project('a', parent_id='b'),
            make_project('b', parent_id='a'),
            make_project('c', parent_id='a'),
        ]

        fixed = {p.source_id: p.parent_id for p in break_cycles(projects)}

        assert fixed['a'] is None
        assert fixed['b'] == 'a'
        assert fixed['c'] == 'a'

    def test_missing_parent_is_not_a_cycle(self):
        projects = [make_project('a', parent_id='gone')]
        assert break_cycles(projects)[0].parent_id == 'gone'
