"""Error taxonomy shared by the matcher, the reconciler and the admission mutator."""

from __future__ import annotations

from typing import Optional


class TimeSyncError(Exception):
    """Base exception for timesync operator errors."""


class SelectorParseError(TimeSyncError):
    """A label selector could not be compiled (bad operator, value set, key or value)."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ClusterError(TimeSyncError):
    """Failure talking to the Kubernetes API."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterError):
    """The object was deleted (or never existed)."""


class ReadError(ClusterError):
    """Transient failure reading or listing objects."""


class WriteError(ClusterError):
    """Failure persisting an object (status subresource)."""


class ConflictError(WriteError):
    """Optimistic-concurrency rejection: the object changed since it was read."""


class NotAPodError(TimeSyncError):
    """The admission mutator was handed something other than a Pod."""
