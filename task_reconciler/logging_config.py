"""
Logging Configuration

Each command logs to stdout. The two scheduled jobs also append to their own
rotating file in LOG_DIR:
- import -> import.log
- export -> export.log
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler

PACKAGE_LOGGER = 'task_reconciler'

# Commands run from cron that keep a log file of their own
JOB_LOGS = ('import', 'export')

# Chatty per-request loggers from the HTTP stack
QUIET_LOGGERS = ('httpx', 'httpcore')

LOG_FORMAT = "%(asctime)s - %(job)s - %(name)s - %(levelname)s - %(message)s"


def job_log_file(log_dir: Optional[Path], command: str) -> Optional[Path]:
    """Log file for a command, or None when it only logs to stdout."""
    if not log_dir or command not in JOB_LOGS:
        return None
    return Path(log_dir).expanduser() / f"{command}.log"


class JobFilter(logging.Filter):
    """Stamps every record with the running command."""

    def __init__(self, job: str):
        super().__init__()
        self.job = job

    def filter(self, record: logging.LogRecord) -> bool:
        record.job = self.job
        return True


def setup_logging(
    command: str,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    verbose: bool = False,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for one CLI command.

    Args:
        command: CLI command being run (import, export, status, ...)
        level: Logging level from configuration
        log_dir: Directory for job log files (optional)
        verbose: Force DEBUG and let HTTP request logs through
        max_size_mb: Max log file size before rotation
        backup_count: Number of backup files to keep

    Returns:
        Configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO))

    # Clear handlers left over from a previous setup in the same process
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    job_filter = JobFilter(command)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(job_filter)
    logger.addHandler(console_handler)

    log_file = job_log_file(log_dir, command)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(job_filter)
        logger.addHandler(file_handler)

    return logger
