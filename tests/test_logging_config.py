"""
Tests for per-command logging setup.
"""
import logging

from task_reconciler.logging_config import job_log_file, setup_logging


def test_job_log_file_only_for_scheduled_jobs(tmp_path):
    assert job_log_file(tmp_path, 'import') == tmp_path / 'import.log'
    assert job_log_file(tmp_path, 'export') == tmp_path / 'export.log'
    assert job_log_file(tmp_path, 'status') is None
    assert job_log_file(None, 'import') is None


def test_export_job_writes_its_own_file(tmp_path):
    log_dir = tmp_path / 'logs'
    logger = setup_logging('export', 'INFO', log_dir)

    logging.getLogger('task_reconciler.export_queue').info('Completed: 1')
    for handler in logger.handlers:
        handler.flush()

    text = (log_dir / 'export.log').read_text()
    assert ' - export - task_reconciler.export_queue - INFO - Completed: 1' in text
    assert not (log_dir / 'import.log').exists()


def test_repeated_setup_does_not_stack_handlers(tmp_path):
    setup_logging('import', 'INFO', tmp_path)
    logger = setup_logging('import', 'INFO', tmp_path)

    assert len(logger.handlers) == 2


def test_verbose_forces_debug_and_http_logs(tmp_path):
    logger = setup_logging('test', 'WARNING', verbose=True)
    assert logger.level == logging.DEBUG
    assert logging.getLogger('httpx').level == logging.DEBUG

    logger = setup_logging('test', 'WARNING')
    assert logger.level == logging.WARNING
    assert logging.getLogger('httpx').level == logging.WARNING
