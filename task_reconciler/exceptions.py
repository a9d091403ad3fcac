# =========================================================================
# CUSTOM EXCEPTIONS
# =========================================================================

from pathlib import Path
from typing import Optional


class SyncError(Exception):
    """Base exception for reconciler errors"""
    pass


class ConfigurationError(SyncError):
    """External system is not configured or not known"""
    pass


class SourceError(SyncError):
    """Fetching from a source system failed, possibly after a partial read"""

    def __init__(self, source: str, message: str, partial=None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.partial = partial


class ApiError(SyncError):
    """External API request failed"""
    transient = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def kind(self) -> str:
        return 'transient' if self.transient else 'permanent'


class TransientApiError(ApiError):
    """Timeout, transport failure or 5xx; worth retrying"""
    transient = True


class PermanentApiError(ApiError):
    """Not found, validation failure or malformed response"""
    transient = False


class RateLimitError(TransientApiError):
    """Rate limit exceeded (HTTP 429)"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after

    @property
    def kind(self) -> str:
        return 'rate_limit'


class StateCorruptionError(SyncError):
    """Watermark or queue document exists but cannot be read"""

    def __init__(self, path: Path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class JobLockedError(SyncError):
    """Another job holds the state directory lock"""
    pass
