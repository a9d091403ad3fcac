"""
Configuration management for the task reconciler.

Loads defaults, an optional YAML file and environment variables into an
explicit Config object that is handed to every component at construction.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .models import Origin

DEFAULT_STATE_DIR = Path.home() / 'sync-state'

DEFAULT_URLS = {
    Origin.TODOIST: 'https://api.todoist.com/rest/v2',
    Origin.VIKUNJA: 'http://localhost:3456/api/v1',
    Origin.YOUTRACK: '',
    Origin.JIRA: '',
}

# Environment variable names per system: (url, token, user)
SYSTEM_ENV = {
    Origin.TODOIST: ('TODOIST_API_URL', 'TODOIST_API_TOKEN', None),
    Origin.VIKUNJA: ('VIKUNJA_API_URL', 'VIKUNJA_API_TOKEN', None),
    Origin.YOUTRACK: ('YOUTRACK_URL', 'YOUTRACK_TOKEN', None),
    Origin.JIRA: ('JIRA_URL', 'JIRA_TOKEN', 'JIRA_EMAIL'),
}

# Engine knobs: attribute -> (environment variable, default)
KNOBS = {
    'max_retries': ('SYNC_MAX_RETRIES', 3),
    'request_timeout': ('SYNC_REQUEST_TIMEOUT', 30.0),
    'source_timeout': ('SYNC_SOURCE_TIMEOUT', 120.0),
    'rate_limit_backoff': ('SYNC_RATE_LIMIT_BACKOFF', 900.0),
    'page_size': ('SYNC_PAGE_SIZE', 50),
    'snapshot_retention_days': ('SYNC_SNAPSHOT_RETENTION_DAYS', 7),
}


@dataclass
class SystemConfig:
    """Connection settings for one external system."""
    origin: Origin
    base_url: str = ''
    token: str = ''
    user: str = ''

    @property
    def is_configured(self) -> bool:
        if not self.base_url or not self.token:
            return False
        if self.origin == Origin.JIRA and not self.user:
            return False
        return True


@dataclass
class Config:
    """Reconciler configuration."""
    state_dir: Path = DEFAULT_STATE_DIR
    log_dir: Optional[Path] = None
    log_level: str = 'INFO'
    max_retries: int = 3
    request_timeout: float = 30.0
    source_timeout: float = 120.0
    rate_limit_backoff: float = 900.0
    page_size: int = 50
    snapshot_retention_days: int = 7
    systems: Dict[Origin, SystemConfig] = field(default_factory=dict)

    def __post_init__(self):
        self.state_dir = Path(self.state_dir).expanduser()
        if self.log_dir is not None:
            self.log_dir = Path(self.log_dir).expanduser()
        for origin in Origin:
            self.systems.setdefault(origin, SystemConfig(origin, base_url=DEFAULT_URLS[origin]))

    def system(self, origin: Origin) -> SystemConfig:
        return self.systems[origin]

    def configured_systems(self) -> list[Origin]:
        return [o for o in Origin if self.systems[o].is_configured]

    @property
    def state_file(self) -> Path:
        return self.state_dir / 'sync-state.json'

    @property
    def pending_file(self) -> Path:
        return self.state_dir / 'pending-exports.json'

    @property
    def failed_file(self) -> Path:
        return self.state_dir / 'failed-exports.json'

    def validate(self) -> list[str]:
        """Validate configuration. Returns list of problems."""
        errors = []

        if self.max_retries < 1:
            errors.append("SYNC_MAX_RETRIES must be at least 1")
        if self.request_timeout <= 0:
            errors.append("SYNC_REQUEST_TIMEOUT must be positive")
        if self.source_timeout <= 0:
            errors.append("SYNC_SOURCE_TIMEOUT must be positive")
        if self.page_size < 1:
            errors.append("SYNC_PAGE_SIZE must be at least 1")

        for origin, system in self.systems.items():
            url_var, token_var, user_var = SYSTEM_ENV[origin]
            explicit_url = system.base_url and system.base_url != DEFAULT_URLS[origin]
            if explicit_url and not system.token:
                errors.append(f"{url_var} set but {token_var} missing")
            if user_var and system.token and not system.user:
                errors.append(f"{token_var} set but {user_var} missing")

        return errors

    @classmethod
    def load(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        env_path: Optional[Union[str, Path]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> 'Config':
        """
        Build configuration from YAML file and environment variables.

        Environment variables override YAML values. When `environ` is given it
        is used instead of the process environment and no .env file is read.
        """
        if environ is None:
            if env_path is not None:
                load_dotenv(env_path)
            else:
                load_dotenv()
            environ = dict(os.environ)

        if config_path is None and environ.get('SYNC_CONFIG'):
            config_path = environ['SYNC_CONFIG']

        data: Dict[str, Any] = {}
        if config_path is not None:
            config_path = Path(config_path).expanduser()
            if config_path.exists():
                try:
                    with open(config_path, 'r') as f:
                        data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e
                if not isinstance(data, dict):
                    raise ConfigurationError(f"Config file {config_path} must contain a mapping")
                data = _expand_env_vars(data, environ)

        return cls._from_mapping(data, environ)

    @classmethod
    def _from_mapping(cls, data: Dict[str, Any], environ: Dict[str, str]) -> 'Config':
        kwargs: Dict[str, Any] = {}

        state_dir = environ.get('STATE_DIR') or data.get('state_dir')
        if state_dir:
            kwargs['state_dir'] = Path(state_dir)

        log_dir = environ.get('LOG_DIR') or data.get('log_dir')
        if log_dir:
            kwargs['log_dir'] = Path(log_dir)

        kwargs['log_level'] = (environ.get('SYNC_LOG_LEVEL') or data.get('log_level') or 'INFO').upper()

        for attr, (var, default) in KNOBS.items():
            raw = environ.get(var, data.get(attr, default))
            kwargs[attr] = _coerce(raw, type(default), var)

        systems_data = data.get('systems') or {}
        systems = {}
        for origin in Origin:
            url_var, token_var, user_var = SYSTEM_ENV[origin]
            section = systems_data.get(origin.value) or {}
            base_url = environ.get(url_var) or section.get('base_url') or DEFAULT_URLS[origin]
            systems[origin] = SystemConfig(
                origin=origin,
                base_url=str(base_url).rstrip('/'),
                token=environ.get(token_var) or section.get('token') or '',
                user=(environ.get(user_var) if user_var else None) or section.get('user') or '',
            )
        kwargs['systems'] = systems

        return cls(**kwargs)


def _coerce(value: Any, kind: type, name: str):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be {kind.__name__}, got {value!r}")


def _expand_env_vars(obj: Any, environ: Dict[str, str]) -> Any:
    """Recursively expand ${VAR} references in config values."""
    if isinstance(obj, dict):
        return {k: _expand_env_vars(v, environ) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item, environ) for item in obj]
    elif isinstance(obj, str) and obj.startswith('${') and obj.endswith('}'):
        var_name = obj[2:-1]
        return environ.get(var_name, '')
    return obj
