#!/usr/bin/env python3
"""Transfer executor.

Carries out the actions produced by the reconciler: uploads (single
request or resumable chunked session), downloads, deletes on either
side and conflict resolution. Independent paths run in parallel on a
bounded thread pool; the chunks of one file are always sent in order.
Every completed task ends with one atomic state store update.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from send2trash import send2trash

from .errors import (
    AuthRequired,
    ConflictError,
    CycleCancelled,
    FatalRemoteError,
    LocalFileChanged,
    NotFoundError,
    RateLimited,
    RemoteError,
    StorageError,
    TransientError,
    Unauthorized,
)
from .fingerprint import Fingerprinter, new_hasher
from .models import (
    ActionKind,
    ChunkedUploadSession,
    Direction,
    PathFailure,
    ProgressEvent,
    RemoteEntry,
    SyncAction,
    TaskState,
    TransferTask,
)
from .path_utils import (
    TEMP_SUFFIX,
    SecurityError,
    cleanup_empty_parent_dirs,
    conflict_copy_name,
    validate_sync_path,
)
from .reconciler import classify_os_error
from .remote import ChunkResult, RemoteStore
from .state_store import SyncStateStore

logger = logging.getLogger(__name__)

# Files above this size go through a resumable upload session
CHUNK_THRESHOLD = 4 * 1024 * 1024
# Graph requires chunk sizes that are multiples of 320 KiB
CHUNK_SIZE = 10 * 320 * 1024

_DIRECTIONS = {
    ActionKind.UPLOAD: Direction.UPLOAD,
    ActionKind.DELETE_REMOTE: Direction.UPLOAD,
    ActionKind.DOWNLOAD: Direction.DOWNLOAD,
    ActionKind.DELETE_LOCAL: Direction.DOWNLOAD,
    ActionKind.CONFLICT: Direction.DOWNLOAD,
}

ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient remote failures.

    ``sleep`` is injectable so tests can retry without real delays.
    A RateLimited ``retry_after`` hint is used as a floor for the delay.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    def backoff(self, attempt: int, error: Exception) -> None:
        delay = self.delay_for(attempt, getattr(error, 'retry_after', None))
        logger.warning(f"Attempt {attempt} failed, retrying in {delay:.1f}s: {error}")
        self.sleep(delay)

    def call(self, func: Callable, *args, task: Optional[TransferTask] = None, **kwargs):
        """Call func, retrying TransientError and RateLimited.

        Raises:
            The last error once max_attempts is reached
        """
        attempt = 0
        while True:
            attempt += 1
            if task is not None:
                task.attempt_count += 1
            try:
                return func(*args, **kwargs)
            except (TransientError, RateLimited) as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{getattr(func, '__name__', 'call')} failed after "
                                 f"{attempt} attempts: {e}")
                    raise
                self.backoff(attempt, e)


@dataclass
class ActionOutcome:
    """What happened to one action."""

    action: SyncAction
    task: TransferTask
    failure: Optional[PathFailure] = None
    deferred: bool = False
    converged: bool = False
    conflict_copy: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.task.state == TaskState.COMPLETED


@dataclass
class ExecutionReport:
    """Outcomes of one executor run."""

    outcomes: List[ActionOutcome] = field(default_factory=list)
    auth_failure: Optional[str] = None
    cancelled: bool = False


class TransferExecutor:
    """Applies sync actions with retry and resumability."""

    def __init__(self, store: SyncStateStore, remote: RemoteStore,
                 fingerprinter: Fingerprinter, sync_root: Path,
                 max_workers: int = 4, retry_policy: Optional[RetryPolicy] = None,
                 chunk_size: int = CHUNK_SIZE, chunk_threshold: int = CHUNK_THRESHOLD,
                 progress: Optional[ProgressCallback] = None):
        """Initialize executor.

        Args:
            store: Sync state store (only shared mutable resource)
            remote: Remote file store
            fingerprinter: Local content hasher
            sync_root: Local sync directory
            max_workers: Parallel transfers
            retry_policy: Backoff policy for transient failures
            chunk_size: Bytes per chunk of a resumable upload
            chunk_threshold: Files larger than this use a resumable upload
            progress: Optional progress callback
        """
        self.store = store
        self.remote = remote
        self.fingerprinter = fingerprinter
        self.sync_root = sync_root
        self.max_workers = max(1, max_workers)
        self.retry = retry_policy or RetryPolicy()
        self.chunk_size = chunk_size
        self.chunk_threshold = chunk_threshold
        self.progress = progress
        self._names_lock = threading.Lock()
        self._reserved_names = set()

    def run(self, actions: List[SyncAction],
            cancel_event: Optional[threading.Event] = None) -> ExecutionReport:
        """Execute actions in parallel.

        Per-path failures are collected in the report. An auth failure
        stops new tasks from starting and is reported; a storage failure
        stops new tasks and is re-raised once in-flight tasks finish.

        Args:
            actions: Actions from the reconciler
            cancel_event: Set to stop at the next task or chunk boundary

        Returns:
            ExecutionReport
        """
        report = ExecutionReport()
        if not actions:
            return report

        cancel = cancel_event or threading.Event()
        halt = threading.Event()
        storage_failure: Optional[StorageError] = None
        self._reserved_names = set()

        logger.debug(f"Executing {len(actions)} actions with {self.max_workers} workers")
        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix='odsync-transfer') as pool:
            futures = {
                pool.submit(self._run_task, action, cancel, halt): action
                for action in actions
            }
            for future in as_completed(futures):
                action = futures[future]
                try:
                    report.outcomes.append(future.result())
                except (Unauthorized, AuthRequired) as e:
                    logger.error(f"Authentication failed during {action.relative_path}: {e}")
                    halt.set()
                    report.auth_failure = str(e)
                except StorageError as e:
                    halt.set()
                    storage_failure = storage_failure or e
                self._emit('task_done', action.relative_path)

        if storage_failure is not None:
            raise storage_failure
        report.cancelled = cancel.is_set()
        return report

    def _emit(self, phase: str, path: Optional[str] = None,
              bytes_done: int = 0, bytes_total: int = 0) -> None:
        if self.progress is not None:
            self.progress(ProgressEvent(phase, path, bytes_done, bytes_total))

    # ------------------------------------------------------------------
    # Task state machine
    # ------------------------------------------------------------------

    def _run_task(self, action: SyncAction, cancel: threading.Event,
                  halt: threading.Event) -> ActionOutcome:
        path = action.relative_path
        size = (action.local.size if action.local else
                action.remote.size if action.remote else 0)
        task = TransferTask(path, _DIRECTIONS[action.kind], total_size=size)
        outcome = ActionOutcome(action, task)

        if cancel.is_set() or halt.is_set():
            task.state = TaskState.CANCELLED
            return outcome

        handlers = {
            ActionKind.UPLOAD: self._upload,
            ActionKind.DOWNLOAD: self._download,
            ActionKind.DELETE_REMOTE: self._delete_remote,
            ActionKind.DELETE_LOCAL: self._delete_local,
            ActionKind.CONFLICT: self._resolve_conflict,
        }
        task.state = TaskState.IN_PROGRESS
        try:
            handlers[action.kind](action, task, cancel, outcome)
        except (Unauthorized, AuthRequired, StorageError):
            task.state = TaskState.FAILED
            raise
        except CycleCancelled:
            task.state = TaskState.CANCELLED
            logger.info(f"Cancelled {action.kind.value} of {path}")
            return outcome
        except (ConflictError, LocalFileChanged) as e:
            task.state = TaskState.CANCELLED
            outcome.deferred = True
            logger.warning(f"Deferring {path} to next cycle: {e}")
            self.store.log_event(action.kind.value, path, 'deferred', str(e))
            return outcome
        except SecurityError as e:
            outcome.failure = PathFailure(path, 'security', str(e))
        except RemoteError as e:
            outcome.failure = PathFailure(path, 'remote_error', str(e))
        except OSError as e:
            outcome.failure = PathFailure(path, classify_os_error(e), str(e))
        except Exception as e:
            # A malformed response or similar bug only costs this path
            logger.exception(f"Unexpected error during {action.kind.value} of {path}")
            outcome.failure = PathFailure(path, 'unexpected', f"{type(e).__name__}: {e}")
        else:
            task.state = TaskState.COMPLETED
            self.store.log_event(action.kind.value, path, 'success')
            return outcome

        task.state = TaskState.FAILED
        logger.error(f"Failed to {action.kind.value} {path}: {outcome.failure.message}")
        self.store.log_event(action.kind.value, path, 'error', outcome.failure.message)
        return outcome

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def _upload(self, action: SyncAction, task: TransferTask,
                cancel: threading.Event, outcome: ActionOutcome) -> None:
        # Unlisted remote: only create, never replace a file that appeared since
        if action.remote is None:
            self._upload_path(action.relative_path, task, cancel, create_only=True)
        else:
            self._upload_path(action.relative_path, task, cancel, if_match=action.remote.etag)

    def _upload_path(self, path: str, task: TransferTask, cancel: threading.Event,
                     if_match: Optional[str] = None, create_only: bool = False) -> None:
        local_path = validate_sync_path(path, self.sync_root)
        try:
            size = local_path.stat().st_size
        except FileNotFoundError:
            raise LocalFileChanged(f"{path} was removed locally")
        task.total_size = size
        if size > self.chunk_threshold:
            self._upload_chunked(path, local_path, task, cancel, if_match, create_only)
        else:
            self._upload_small(path, local_path, task, if_match, create_only)

    def _upload_small(self, path: str, local_path: Path, task: TransferTask,
                      if_match: Optional[str], create_only: bool) -> None:
        with open(local_path, 'rb') as f:
            stat_info = os.fstat(f.fileno())
            data = f.read()
        content_hash = self.fingerprinter.hash_bytes(data)

        entry = self.retry.call(self.remote.upload_small, path, data,
                                if_match=if_match, create_only=create_only, task=task)
        self._verify_remote_hash(path, content_hash, entry.hash)

        task.bytes_transferred = len(data)
        self._emit('upload', path, len(data), len(data))
        self.store.mark_synced(path, content_hash, len(data),
                               local_mtime=stat_info.st_mtime,
                               remote_mtime=entry.mtime, remote_etag=entry.etag)

    def _upload_chunked(self, path: str, local_path: Path, task: TransferTask,
                        cancel: threading.Event, if_match: Optional[str],
                        create_only: bool) -> None:
        fingerprint = self.fingerprinter.fingerprint(local_path)
        session = self._open_session(path, fingerprint.size, fingerprint.hash, task,
                                     if_match, create_only)

        try:
            result = self._send_chunks(session, local_path, task, cancel)
        except (NotFoundError, ConflictError):
            # Session gone or target changed; the next attempt starts fresh
            self.store.delete_session(path)
            raise

        self._verify_remote_hash(path, fingerprint.hash, result.final_hash)
        current = os.stat(local_path)
        if (current.st_size, current.st_mtime) != (fingerprint.size, fingerprint.mtime):
            self.store.delete_session(path)
            raise LocalFileChanged(f"{path} changed during upload")

        remote = result.remote or RemoteEntry(path, result.final_hash, None, fingerprint.size)
        self.store.mark_synced(path, fingerprint.hash, fingerprint.size,
                               local_mtime=fingerprint.mtime,
                               remote_mtime=remote.mtime, remote_etag=remote.etag)
        logger.info(f"Uploaded {path} in chunks ({fingerprint.size} bytes)")

    def _open_session(self, path: str, total_size: int, content_hash: str,
                      task: TransferTask, if_match: Optional[str],
                      create_only: bool = False) -> ChunkedUploadSession:
        """Resume a persisted session if still usable, otherwise begin a new one.

        A resumed session always adopts the offset the remote reports.
        """
        session = self.store.get_session(path)
        if session is not None:
            reason = None
            if session.is_expired():
                reason = "expired"
            elif session.total_size != total_size:
                reason = f"size changed ({session.total_size} -> {total_size})"
            elif session.local_hash and session.local_hash != content_hash:
                reason = "content changed"

            if reason is None:
                try:
                    offset = self.retry.call(self.remote.query_upload_session_status,
                                             session.upload_url, task=task)
                except NotFoundError:
                    reason = "no longer known to remote"
                else:
                    self.store.reconcile_session_offset(path, offset)
                    session.next_offset = offset
                    logger.info(f"Resuming upload of {path} at byte {offset}/{total_size}")
                    return session

            logger.info(f"Discarding upload session for {path}: {reason}")
            self._discard_session(session)

        info = self.retry.call(self.remote.begin_chunked_upload, path, total_size,
                               if_match=if_match, create_only=create_only, task=task)
        session = ChunkedUploadSession(
            relative_path=path,
            upload_url=info.upload_url,
            total_size=total_size,
            chunk_size=self.chunk_size,
            next_offset=0,
            expires_at=info.expires_at,
            local_hash=content_hash,
        )
        self.store.put_session(session)
        return session

    def _discard_session(self, session: ChunkedUploadSession) -> None:
        try:
            self.remote.cancel_upload_session(session.upload_url)
        except RemoteError as e:
            logger.debug(f"Could not cancel upload session for {session.relative_path}: {e}")
        self.store.delete_session(session.relative_path)

    def _send_chunks(self, session: ChunkedUploadSession, local_path: Path,
                     task: TransferTask, cancel: threading.Event) -> ChunkResult:
        """Upload the remaining chunks strictly in offset order."""
        path = session.relative_path
        total = session.total_size
        offset = session.next_offset
        failures = 0

        with open(local_path, 'rb') as f:
            while True:
                f.seek(offset)
                data = f.read(min(session.chunk_size, total - offset))
                task.attempt_count += 1
                try:
                    result = self.remote.upload_chunk(session.upload_url, offset, data, total)
                except (TransientError, RateLimited) as e:
                    failures += 1
                    if failures >= self.retry.max_attempts:
                        raise
                    self.retry.backoff(failures, e)
                    # The chunk may have landed before the error surfaced
                    offset = self._authoritative_offset(session, offset)
                    continue

                failures = 0
                if result.done:
                    task.bytes_transferred = total
                    self._emit('upload', path, total, total)
                    return result

                self.store.advance_session(path, result.accepted_offset)
                offset = result.accepted_offset
                task.bytes_transferred = offset
                self._emit('upload', path, offset, total)

                if cancel.is_set():
                    logger.info(f"Upload of {path} paused at byte {offset}/{total}")
                    raise CycleCancelled(f"Upload of {path} cancelled")

    def _authoritative_offset(self, session: ChunkedUploadSession, fallback: int) -> int:
        try:
            offset = self.remote.query_upload_session_status(session.upload_url)
        except (TransientError, RateLimited):
            return fallback
        self.store.reconcile_session_offset(session.relative_path, offset)
        return offset

    @staticmethod
    def _verify_remote_hash(path: str, expected: str, reported: Optional[str]) -> None:
        if reported is not None and reported != expected:
            raise FatalRemoteError(
                f"Remote hash mismatch for {path}: expected {expected}, got {reported}"
            )

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def _download(self, action: SyncAction, task: TransferTask,
                  cancel: threading.Event, outcome: ActionOutcome) -> None:
        self._download_path(action.relative_path, action.remote, action.local_hash, task)

    def _download_path(self, path: str, remote: RemoteEntry,
                       expected_local: Optional[str], task: TransferTask) -> None:
        target = validate_sync_path(path, self.sync_root)
        target.parent.mkdir(parents=True, exist_ok=True)

        temp_path, content_hash, size = self.retry.call(
            self._fetch, path, target, remote, task, task=task)
        try:
            self._ensure_unchanged(path, target, expected_local)
            os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        stat_info = target.stat()
        self.store.mark_synced(path, content_hash, size,
                               local_mtime=stat_info.st_mtime,
                               remote_mtime=remote.mtime, remote_etag=remote.etag)
        logger.info(f"Downloaded: {path} ({size} bytes)")

    def _fetch(self, path: str, target: Path, remote: RemoteEntry, task: TransferTask):
        """Stream the remote file into a temp file beside the target.

        Returns:
            Tuple of (temp path, content hash, size)
        """
        temp_path = target.with_name(f"{target.name}.{threading.get_ident()}{TEMP_SUFFIX}")
        temp_path.unlink(missing_ok=True)
        hasher = new_hasher(self.fingerprinter.algorithm)
        size = 0
        try:
            # O_CREAT|O_EXCL so a planted symlink is never followed
            fd = os.open(temp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            with os.fdopen(fd, 'wb') as f:
                for block in self.remote.download(path):
                    f.write(block)
                    hasher.update(block)
                    size += len(block)
                    task.bytes_transferred = size
                    self._emit('download', path, size, remote.size)
                f.flush()
                os.fsync(f.fileno())

            content_hash = hasher.hexdigest()
            if remote.hash is not None and content_hash != remote.hash:
                raise TransientError(f"Checksum mismatch downloading {path}")
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        return temp_path, content_hash, size

    def _ensure_unchanged(self, path: str, target: Path, expected: Optional[str]) -> None:
        """Refuse to touch a local file that changed since classification."""
        if expected is None:
            if os.path.lexists(target):
                raise LocalFileChanged(f"{path} appeared locally")
            return
        try:
            current = self.fingerprinter.fingerprint(target)
        except FileNotFoundError:
            raise LocalFileChanged(f"{path} was removed locally")
        if current.hash != expected:
            raise LocalFileChanged(f"{path} was modified locally")

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def _delete_remote(self, action: SyncAction, task: TransferTask,
                       cancel: threading.Event, outcome: ActionOutcome) -> None:
        path = action.relative_path
        if_match = action.remote.etag if action.remote else None
        try:
            # A remote edit since the listing fails the eTag check and is deferred
            self.retry.call(self.remote.delete, path, if_match=if_match, task=task)
        except NotFoundError:
            logger.debug(f"Remote file already gone: {path}")
        self.store.delete_item(path)

    def _delete_local(self, action: SyncAction, task: TransferTask,
                      cancel: threading.Event, outcome: ActionOutcome) -> None:
        path = action.relative_path
        target = validate_sync_path(path, self.sync_root)
        if os.path.lexists(target):
            self._ensure_unchanged(path, target, action.local_hash)
            self._move_to_trash(target, path)
            cleanup_empty_parent_dirs(target, self.sync_root)
        self.store.delete_item(path)

    @staticmethod
    def _move_to_trash(target: Path, path: str) -> None:
        try:
            send2trash(str(target))
            logger.info(f"Moved file to trash: {path}")
        except OSError as e:
            logger.warning(f"Trash unavailable for {path} ({e}), deleting permanently")
            target.unlink()

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def _resolve_conflict(self, action: SyncAction, task: TransferTask,
                          cancel: threading.Event, outcome: ActionOutcome) -> None:
        """Keep both versions.

        The local file is renamed to a conflict copy which is uploaded as a
        new remote item; the original path then receives the remote
        version.
        """
        path = action.relative_path
        source = validate_sync_path(path, self.sync_root)
        mtime = source.stat().st_mtime

        if self._same_as_remote(action, source, task):
            outcome.converged = True
            return

        copy_path = self._reserve_conflict_name(path, mtime)
        copy_target = validate_sync_path(copy_path, self.sync_root)
        os.rename(source, copy_target)
        outcome.conflict_copy = copy_path
        logger.warning(f"Conflict on {path}: local version preserved as {copy_path}")
        self.store.log_event('conflict_copy', copy_path, 'success')

        self._upload_path(copy_path, TransferTask(copy_path, Direction.UPLOAD), cancel,
                          create_only=True)
        self._download_path(path, action.remote, None, task)

    def _same_as_remote(self, action: SyncAction, source: Path, task: TransferTask) -> bool:
        """Settle a conflict the listing could not rule out.

        When the remote reported no hash for a file of the same size, its
        content is fetched and compared; identical content is recorded as
        Synced without touching either side.
        """
        remote = action.remote
        if remote.hash is not None or action.local is None or remote.size != action.local.size:
            return False

        temp_path, content_hash, size = self.retry.call(
            self._fetch, action.relative_path, source, remote, task, task=task)
        temp_path.unlink(missing_ok=True)
        if content_hash != action.local_hash:
            return False

        self._ensure_unchanged(action.relative_path, source, action.local_hash)
        stat_info = source.stat()
        self.store.mark_synced(action.relative_path, content_hash, size,
                               local_mtime=stat_info.st_mtime,
                               remote_mtime=remote.mtime, remote_etag=remote.etag)
        logger.info(f"Both sides hold identical content: {action.relative_path}")
        return True

    def _reserve_conflict_name(self, path: str, mtime: float) -> str:
        def taken(candidate: str) -> bool:
            return (candidate in self._reserved_names
                    or os.path.lexists(self.sync_root / candidate))

        with self._names_lock:
            name = conflict_copy_name(path, mtime, taken)
            self._reserved_names.add(name)
        return name
