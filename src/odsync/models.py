"""Data model shared by the sync engine components."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SyncState(str, Enum):
    """Persisted state of a single path.

    The reconciler records pending work as PENDING_UPLOAD / PENDING_DOWNLOAD
    for new and modified paths alike. LOCAL_MODIFIED and REMOTE_MODIFIED are
    reserved: never written by this version, but accepted when read so a
    database written by a later release still loads.
    """

    SYNCED = "synced"
    LOCAL_MODIFIED = "local_modified"
    REMOTE_MODIFIED = "remote_modified"
    CONFLICTED = "conflicted"
    PENDING_UPLOAD = "pending_upload"
    PENDING_DOWNLOAD = "pending_download"
    DELETED = "deleted"


class Direction(str, Enum):
    """Transfer direction."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


class TaskState(str, Enum):
    """Lifecycle of a transfer task."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChangeKind(str, Enum):
    """Kind of live filesystem notification."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


class ActionKind(str, Enum):
    """Work the transfer executor has to carry out for a path."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE_REMOTE = "delete_remote"
    DELETE_LOCAL = "delete_local"
    CONFLICT = "conflict"


@dataclass
class SyncItem:
    """Last known synchronized state of one relative path."""

    relative_path: str
    local_hash: Optional[str] = None
    remote_hash: Optional[str] = None
    local_mtime: Optional[float] = None
    remote_mtime: Optional[float] = None
    size: Optional[int] = None
    sync_state: SyncState = SyncState.PENDING_UPLOAD
    last_synced_at: Optional[float] = None
    remote_etag: Optional[str] = None

    @property
    def existed_before(self) -> bool:
        """True once the path has completed at least one sync."""
        return self.last_synced_at is not None


@dataclass
class ChunkedUploadSession:
    """Resumable upload in flight for one path.

    ``next_offset`` is the number of bytes the remote store has
    acknowledged. ``local_hash`` is the fingerprint of the file when the
    session began; a different file must not resume someone else's bytes.
    """

    relative_path: str
    upload_url: str
    total_size: int
    chunk_size: int
    next_offset: int = 0
    expires_at: Optional[float] = None
    local_hash: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass
class TransferTask:
    """Ephemeral progress record for one transfer."""

    relative_path: str
    direction: Direction
    total_size: int = 0
    bytes_transferred: int = 0
    attempt_count: int = 0
    state: TaskState = TaskState.QUEUED


@dataclass(frozen=True)
class LocalEntry:
    """A file found by a full scan of the sync root."""

    path: str
    size: int
    mtime: float


@dataclass(frozen=True)
class RemoteEntry:
    """A file found in the remote listing.

    ``hash`` uses the configured algorithm. ``quick_xor_hash`` is OneDrive's
    own hash, the only one every drive type reports, kept as a fallback
    for telling identical content apart when ``hash`` is missing.
    """

    path: str
    hash: Optional[str]
    mtime: Optional[float]
    size: int
    etag: Optional[str] = None
    item_id: Optional[str] = None
    quick_xor_hash: Optional[str] = None


@dataclass(frozen=True)
class WatchEvent:
    """Live filesystem notification, relative to the sync root."""

    path: str
    kind: ChangeKind


@dataclass
class SyncAction:
    """Classification result handed to the transfer executor.

    ``local_hash`` is the local fingerprint observed during classification
    (None when the file is absent locally). The executor re-checks it
    before it overwrites or deletes anything on disk.
    """

    kind: ActionKind
    relative_path: str
    reason: str = ""
    local: Optional[LocalEntry] = None
    remote: Optional[RemoteEntry] = None
    local_hash: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification sent to the presentation layer."""

    phase: str
    path: Optional[str] = None
    bytes_done: int = 0
    bytes_total: int = 0


@dataclass(frozen=True)
class PathFailure:
    """Per-path failure that did not abort the cycle."""

    path: str
    kind: str
    message: str


@dataclass
class CycleSummary:
    """Outcome of one reconciliation cycle."""

    uploaded: int = 0
    downloaded: int = 0
    conflicts: int = 0
    deleted: int = 0
    converged: int = 0
    errors: List[PathFailure] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    conflict_copies: List[str] = field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def transfers(self) -> int:
        return self.uploaded + self.downloaded

    @property
    def has_errors(self) -> bool:
        return bool(self.errors) or self.aborted

    def describe(self) -> str:
        """One-line summary suitable for logs."""
        text = (f"{self.uploaded} uploaded, {self.downloaded} downloaded, "
                f"{self.deleted} deleted, {self.conflicts} conflicts, "
                f"{len(self.errors)} errors")
        if self.aborted:
            text += f" (aborted: {self.abort_reason})"
        elif self.cancelled:
            text += " (cancelled)"
        return text


@dataclass(frozen=True)
class SyncLogEntry:
    """One row of the persisted sync history."""

    timestamp: float
    action: str
    path: str
    status: str
    error: Optional[str] = None
