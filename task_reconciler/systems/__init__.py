"""
External system registry.

Maps each origin to its importer and (optional) exporter implementation.
Only systems with complete credentials in the configuration are built.
"""

import logging
from typing import Iterable, Optional

import httpx

from ..config import Config
from ..exceptions import ConfigurationError
from ..models import Origin
from .base import ApplyOutcome, FetchResult, SinkExporter, SourceImporter
from .jira import JiraImporter
from .todoist import TodoistExporter, TodoistImporter
from .vikunja import VikunjaExporter, VikunjaImporter
from .youtrack import YouTrackImporter

logger = logging.getLogger(__name__)

IMPORTERS: dict[Origin, type[SourceImporter]] = {
    Origin.TODOIST: TodoistImporter,
    Origin.VIKUNJA: VikunjaImporter,
    Origin.YOUTRACK: YouTrackImporter,
    Origin.JIRA: JiraImporter,
}

EXPORTERS: dict[Origin, type[SinkExporter]] = {
    Origin.TODOIST: TodoistExporter,
    Origin.VIKUNJA: VikunjaExporter,
}


def build_importers(
    config: Config,
    origins: Optional[Iterable[Origin]] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> dict[Origin, Optional[SourceImporter]]:
    """
    Build importers for the selected origins.

    Unconfigured systems map to None so callers can report them as skipped.
    """
    importers = {}
    for origin in origins or IMPORTERS:
        system = config.system(origin)
        importers[origin] = IMPORTERS[origin](system, config, transport) if system.is_configured else None
    return importers


def build_exporter(
    config: Config,
    origin: Origin,
    transport: Optional[httpx.BaseTransport] = None,
) -> SinkExporter:
    """Build the exporter for one target, raising ConfigurationError if unusable."""
    if origin not in EXPORTERS:
        raise ConfigurationError(f"{origin.value} does not accept exports")
    system = config.system(origin)
    if not system.is_configured:
        raise ConfigurationError(f"{origin.value} is not configured")
    return EXPORTERS[origin](system, config, transport)


def build_exporters(
    config: Config,
    origins: Optional[Iterable[Origin]] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> dict[Origin, SinkExporter]:
    """Build exporters for every configured sink; unconfigured ones are left out."""
    exporters = {}
    for origin in origins or EXPORTERS:
        if origin in EXPORTERS and config.system(origin).is_configured:
            exporters[origin] = build_exporter(config, origin, transport)
        else:
            logger.debug(f"No exporter for {origin.value}")
    return exporters


__all__ = [
    'ApplyOutcome',
    'EXPORTERS',
    'FetchResult',
    'IMPORTERS',
    'SinkExporter',
    'SourceImporter',
    'build_exporter',
    'build_exporters',
    'build_importers',
]
