"""
Task Reconciler

Imports tasks from Todoist, Vikunja, YouTrack and Jira into one canonical
snapshot, and pushes queued state changes back to Todoist and Vikunja.
"""

from .config import Config, SystemConfig
from .export_queue import DrainReport, ExportQueueManager
from .models import CanonicalSnapshot, ExportItem, ImportMode, Operation, Origin, Priority, Project, Task
from .reconciler import ImportReconciler, ImportResult
from .state import SyncStateStore

__version__ = '1.0.0'

__all__ = [
    'CanonicalSnapshot',
    'Config',
    'DrainReport',
    'ExportItem',
    'ExportQueueManager',
    'ImportMode',
    'ImportReconciler',
    'ImportResult',
    'Operation',
    'Origin',
    'Priority',
    'Project',
    'SyncStateStore',
    'SystemConfig',
    'Task',
]
