"""
Error taxonomy for the index and query layers.

Parse- and walk-level problems are recovered locally (skip and log) and are
not exceptions.  Everything below is raised to the caller and carries a
machine-readable ``code`` plus the HTTP status the API layer should use.
"""

from datetime import datetime
from typing import Optional


class GalarieError(Exception):
    """Base class. ``code`` mirrors the ``error.code`` field of the API envelope."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(GalarieError):
    code = "CONFIGURATION_INVALID"


class RootUnreadable(GalarieError):
    """Media root missing or not traversable. Fatal to one rebuild attempt only."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class RebuildCancelled(GalarieError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class AlreadyInProgress(GalarieError):
    """A rebuild request arrived while another one is running."""

    code = "ALREADY_IN_PROGRESS"
    status_code = 409

    def __init__(self, started_at: Optional[datetime] = None) -> None:
        message = "index rebuild already in progress"
        if started_at is not None:
            message += f" (started at {started_at.isoformat()})"
        super().__init__(message)
        self.started_at = started_at


class InvalidQuery(GalarieError):
    code = "VALIDATION_FAILED"
    status_code = 400


class MediaNotFound(GalarieError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404


# ---------------------------------------------------------------------------
# Durable cache
# ---------------------------------------------------------------------------

class SnapshotUnavailable(GalarieError):
    """Cache file unusable. Callers treat every subclass as a cache miss."""


class SnapshotNotFound(SnapshotUnavailable):
    pass


class SchemaMismatch(SnapshotUnavailable):
    def __init__(self, found: str, expected: str) -> None:
        super().__init__(f"cache schema mismatch (found {found}, expected {expected})")
        self.found = found
        self.expected = expected


class CorruptSnapshot(SnapshotUnavailable):
    pass
