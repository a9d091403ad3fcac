"""
Tests for the command-line entry point.
"""
import pytest

from task_reconciler.__main__ import main
from task_reconciler.models import ExportItem, ExportState, Operation, Origin
from task_reconciler.state import SyncStateStore, write_document

from conftest import read_json

SYSTEM_VARS = [
    'TODOIST_API_TOKEN', 'TODOIST_API_URL', 'VIKUNJA_API_URL', 'VIKUNJA_API_TOKEN',
    'YOUTRACK_URL', 'YOUTRACK_TOKEN', 'JIRA_URL', 'JIRA_EMAIL', 'JIRA_TOKEN',
    'SYNC_CONFIG', 'LOG_DIR',
]


@pytest.fixture
def cli_env(monkeypatch, state_dir):
    for var in SYSTEM_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('STATE_DIR', str(state_dir))
    return state_dir


def test_status_on_fresh_state(cli_env, capsys):
    assert main(['status']) == 0

    out = capsys.readouterr().out
    assert 'Last import: Never' in out
    assert 'Pending: 0' in out


def test_enqueue_then_status(cli_env, capsys):
    assert main(['enqueue', '--task-id', '42', '--target', 'todoist', '--operation', 'update',
                 '--title', 'Renamed', '--priority', '3', '--label', 'a', '--label', 'b']) == 0

    records = read_json(cli_env / 'pending-exports.json')
    assert records[0]['payload'] == {'title': 'Renamed', 'priority': 3, 'labels': ['a', 'b']}

    main(['status'])
    assert 'Pending: 1' in capsys.readouterr().out


def test_enqueue_rejects_import_only_target(cli_env):
    with pytest.raises(SystemExit) as exc_info:
        main(['enqueue', '--task-id', 'OPS-1', '--target', 'jira', '--operation', 'complete'])
    assert exc_info.value.code == 2


def test_export_dry_run_leaves_files_alone(cli_env, capsys):
    main(['enqueue', '--task-id', '1', '--target', 'vikunja', '--operation', 'complete'])
    before = (cli_env / 'pending-exports.json').read_bytes()

    assert main(['export', '--dry-run']) == 0

    assert (cli_env / 'pending-exports.json').read_bytes() == before
    assert '[DRY RUN]' in capsys.readouterr().out


def test_export_with_nothing_configured_keeps_items(cli_env):
    main(['enqueue', '--task-id', '1', '--target', 'todoist', '--operation', 'complete'])

    assert main(['export']) == 0

    records = read_json(cli_env / 'pending-exports.json')
    assert records[0]['retry_count'] == 0


def test_import_with_nothing_configured_is_noop(cli_env, capsys):
    assert main(['import']) == 0
    assert 'state unchanged' in capsys.readouterr().out
    assert read_json(cli_env / 'sync-state.json')['last_import'] is None


def test_corrupt_state_exits_non_zero(cli_env):
    (cli_env / 'sync-state.json').write_text('{broken')

    assert main(['import']) == 1
    assert main(['status']) == 1
    assert (cli_env / 'sync-state.json').read_text() == '{broken'


def test_requeue(cli_env, capsys):
    item = ExportItem(task_id='9', target=Origin.VIKUNJA, operation=Operation.COMPLETE,
                      retry_count=3, state=ExportState.FAILED, last_error='HTTP 500')
    write_document(cli_env / 'failed-exports.json', [item.to_dict()])

    assert main(['requeue', '--task-id', '9']) == 0

    assert read_json(cli_env / 'failed-exports.json') == []
    assert read_json(cli_env / 'pending-exports.json')[0]['retry_count'] == 0


def test_held_lock_exits_non_zero(cli_env, config):
    with SyncStateStore(config).lock():
        assert main(['export']) == 1


def test_connection_test_with_invalid_config(cli_env, monkeypatch, capsys):
    monkeypatch.setenv('YOUTRACK_URL', 'https://yt.example.com')

    assert main(['test']) == 1
    assert 'YOUTRACK_TOKEN missing' in capsys.readouterr().out
