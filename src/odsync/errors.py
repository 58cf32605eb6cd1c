"""Exceptions raised by the sync engine and its collaborators."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class RemoteError(SyncError):
    """Base class for failures reported by the remote file store.

    Args:
        message: Human-readable description
        status_code: HTTP status code, if the failure came from a response
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class Unauthorized(RemoteError):
    """The remote rejected the bearer credential."""
    pass


class RateLimited(RemoteError):
    """The remote asked us to slow down.

    ``retry_after`` is the server's backoff hint in seconds (may be None).
    """

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class TransientError(RemoteError):
    """Network failure or server-side hiccup worth retrying."""
    pass


class NotFoundError(RemoteError):
    """Remote item or upload session does not exist."""
    pass


class ConflictError(RemoteError):
    """Remote item changed underneath us (eTag mismatch)."""

    def __init__(self, message: str, etag: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.etag = etag


class FatalRemoteError(RemoteError):
    """Non-retryable remote failure (quota exceeded, bad request, ...)."""
    pass


class AuthRequired(SyncError):
    """No valid access token can be supplied; user must re-authenticate."""
    pass


class StorageError(SyncError):
    """Sync state database I/O failure."""
    pass


class StorageCorruption(StorageError):
    """Sync state database failed its integrity check."""
    pass


class SchemaVersionError(StorageError):
    """Sync state database was written by an unknown schema version."""
    pass


class CycleInProgress(SyncError):
    """A sync cycle is already running."""
    pass


class CycleCancelled(SyncError):
    """The running cycle was cancelled at a task boundary."""
    pass


class LocalFileChanged(SyncError):
    """A local file changed after it was classified; re-classify next cycle."""
    pass
