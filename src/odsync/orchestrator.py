#!/usr/bin/env python3
"""Sync cycle orchestration.

One SyncOrchestrator owns the components of a cycle and guarantees that
at most one cycle runs at a time. A cycle is:

    scan -> list remote -> classify -> transfer -> finalize

Per-path problems end up in the CycleSummary; state store and auth
failures abort the cycle.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from .config import SyncSettings
from .errors import AuthRequired, CycleInProgress, RemoteError, StorageError, Unauthorized
from .executor import ExecutionReport, RetryPolicy, TransferExecutor
from .fingerprint import Fingerprinter
from .models import ActionKind, CycleSummary, ProgressEvent, RemoteEntry, TaskState
from .path_utils import is_ignored
from .reconciler import Classification, ChangeReconciler
from .remote import RemoteStore
from .state_store import SyncStateStore
from .watcher import LocalWatcher, full_scan

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = 'last_sync'


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of what the orchestrator is doing right now."""

    is_syncing: bool = False
    last_sync: Optional[float] = None
    current_operation: str = 'Idle'
    progress: float = 0.0
    last_summary: Optional[CycleSummary] = None


class SyncOrchestrator:
    """Drives sync cycles over one sync root and one remote root."""

    def __init__(self, settings: SyncSettings, store: SyncStateStore, remote: RemoteStore,
                 watcher: Optional[LocalWatcher] = None, token_provider=None,
                 retry_policy: Optional[RetryPolicy] = None,
                 progress: Optional[Callable[[ProgressEvent], None]] = None):
        """Initialize orchestrator.

        Args:
            settings: Settings used from the next cycle on
            store: Sync state store
            remote: Remote file store
            watcher: Optional live watcher whose events hint the next cycle
            token_provider: Optional auth collaborator, invalidated on 401
            retry_policy: Backoff policy handed to the transfer executor
            progress: Optional presentation callback for progress events
        """
        self.settings = settings
        self.store = store
        self.remote = remote
        self.watcher = watcher
        self.token_provider = token_provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.progress = progress

        self._state = threading.Condition()
        self._running = False
        self._completed_cycles = 0
        self._cancel = threading.Event()
        self._wake = threading.Event()
        self._tasks_total = 0
        self._tasks_done = 0

        last_sync = store.get_metadata(LAST_SYNC_KEY)
        self._status = SyncStatus(last_sync=float(last_sync) if last_sync else None)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_cycle(self, wait: bool = True) -> CycleSummary:
        """Run one sync cycle.

        If a cycle is already running, the request is coalesced into it:
        the call blocks until that cycle completes and returns its summary.

        Args:
            wait: When False, raise CycleInProgress instead of waiting

        Returns:
            CycleSummary of the cycle that ran

        Raises:
            StorageError: If the state store failed (the cycle is aborted)
        """
        with self._state:
            if self._running:
                if not wait:
                    raise CycleInProgress("A sync cycle is already running")
                logger.info("Sync already in progress, waiting for it to finish")
                target = self._completed_cycles + 1
                while self._completed_cycles < target:
                    self._state.wait()
                return self._status.last_summary
            self._running = True
            self._cancel.clear()

        summary = CycleSummary()
        try:
            self._run_cycle(self.settings, summary)
        finally:
            summary.finished_at = time.time()
            with self._state:
                self._running = False
                self._completed_cycles += 1
                self._status = replace(
                    self._status,
                    is_syncing=False,
                    current_operation='Idle',
                    progress=1.0 if not summary.aborted else self._status.progress,
                    last_sync=(summary.finished_at if not summary.aborted
                               else self._status.last_sync),
                    last_summary=summary,
                )
                self._state.notify_all()
        return summary

    def cancel_cycle(self) -> None:
        """Stop the running cycle at the next task or chunk boundary."""
        logger.info("Sync cancellation requested")
        self._cancel.set()

    def pause_watching(self) -> None:
        if self.watcher is not None:
            self.watcher.pause()

    def resume_watching(self) -> None:
        if self.watcher is not None:
            self.watcher.resume()

    def request_sync(self) -> None:
        """Ask run_forever() to start a cycle now."""
        self._wake.set()

    def status(self) -> SyncStatus:
        with self._state:
            return self._status

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run a cycle every sync_interval seconds until stop_event is set.

        request_sync() starts the next cycle early. Storage errors stop
        the loop; any other error is logged and the next cycle runs on
        schedule.
        """
        logger.info(f"Automatic sync every {self.settings.sync_interval}s")
        while not stop_event.is_set():
            try:
                summary = self.start_cycle()
            except StorageError:
                raise
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)
            else:
                logger.info(f"Sync cycle finished: {summary.describe()}")
            self._wake.wait(timeout=self.settings.sync_interval)
            self._wake.clear()
        logger.info("Automatic sync stopped")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _set_operation(self, operation: str, progress: Optional[float] = None) -> None:
        with self._state:
            self._status = replace(
                self._status,
                is_syncing=True,
                current_operation=operation,
                progress=self._status.progress if progress is None else progress,
            )
        logger.debug(operation)

    def _emit(self, event: ProgressEvent) -> None:
        if self.progress is not None:
            self.progress(event)

    def _on_transfer_progress(self, event: ProgressEvent) -> None:
        if event.phase == 'task_done':
            self._tasks_done += 1
            if self._tasks_total:
                self._set_operation(f"Transferred {self._tasks_done}/{self._tasks_total}",
                                    self._tasks_done / self._tasks_total)
        self._emit(event)

    def _run_cycle(self, settings: SyncSettings, summary: CycleSummary) -> None:
        logger.info("Starting sync cycle...")
        try:
            self._set_operation("Scanning local files", 0.0)
            self._emit(ProgressEvent('scan'))
            local = full_scan(settings.sync_root)

            self._set_operation("Listing remote files")
            self._emit(ProgressEvent('list_remote'))
            remote = self._list_remote(summary)

            if remote is not None:
                # Hints stay queued for the next cycle when the listing fails
                hints = [event.path for event in self.watcher.events()] if self.watcher else []
                self._set_operation("Comparing changes")
                self._emit(ProgressEvent('classify'))
                self.store.purge_expired_sessions()
                fingerprinter = Fingerprinter(settings.hash_algorithm)
                reconciler = ChangeReconciler(self.store, fingerprinter, settings.sync_root)
                classification = reconciler.classify(local, remote, hints)
                summary.converged = len(classification.converged)
                summary.errors.extend(classification.failures)
                self._drop_stale_sessions(classification)

                if self._cancel.is_set():
                    summary.cancelled = True
                elif classification.actions:
                    self._transfer(settings, fingerprinter, classification, summary)

            self._set_operation("Finalizing")
            self._emit(ProgressEvent('finalize'))
            self.store.log_event('sync_cycle', '', 'error' if summary.has_errors else 'success',
                                 summary.describe())
            if not summary.aborted:
                self.store.set_metadata(LAST_SYNC_KEY, str(time.time()))
            logger.info(f"Sync cycle completed: {summary.describe()}")
        except StorageError as e:
            logger.critical(f"Sync cycle aborted, state store failure: {e}")
            summary.aborted = True
            summary.abort_reason = f"State store error: {e}"
            raise
        except Exception as e:
            summary.aborted = True
            summary.abort_reason = f"Unexpected error: {e}"
            raise

    def _list_remote(self, summary: CycleSummary) -> Optional[Dict[str, RemoteEntry]]:
        """Remote listing keyed by path, or None if the cycle has to abort."""
        try:
            listing = self.remote.list()
        except (Unauthorized, AuthRequired) as e:
            self._abort_for_auth(summary, e)
            return None
        except RemoteError as e:
            # Never treat a failed listing as "everything was deleted remotely"
            self._abort(summary, f"Remote listing failed: {e}")
            return None
        return {entry.path: entry for entry in listing if not is_ignored(entry.path)}

    def _transfer(self, settings: SyncSettings, fingerprinter: Fingerprinter,
                  classification: Classification, summary: CycleSummary) -> None:
        actions = classification.actions
        self._tasks_total = len(actions)
        self._tasks_done = 0
        self._set_operation(f"Transferring {len(actions)} files", 0.0)

        executor = TransferExecutor(
            self.store, self.remote, fingerprinter, settings.sync_root,
            max_workers=settings.max_workers,
            retry_policy=self.retry_policy,
            progress=self._on_transfer_progress,
        )
        report = executor.run(actions, self._cancel)
        self._tally(report, summary)

        if report.auth_failure:
            self._abort_for_auth(summary, report.auth_failure)

    @staticmethod
    def _tally(report: ExecutionReport, summary: CycleSummary) -> None:
        for outcome in report.outcomes:
            path = outcome.action.relative_path
            kind = outcome.action.kind
            if outcome.conflict_copy:
                summary.conflict_copies.append(outcome.conflict_copy)
            if outcome.failure is not None:
                summary.errors.append(outcome.failure)
            elif outcome.deferred:
                summary.deferred.append(path)
            elif outcome.task.state == TaskState.CANCELLED:
                summary.cancelled = True
            elif outcome.converged:
                summary.converged += 1
            elif outcome.completed:
                if kind == ActionKind.UPLOAD:
                    summary.uploaded += 1
                elif kind == ActionKind.DOWNLOAD:
                    summary.downloaded += 1
                elif kind in (ActionKind.DELETE_LOCAL, ActionKind.DELETE_REMOTE):
                    summary.deleted += 1
                elif kind == ActionKind.CONFLICT:
                    summary.conflicts += 1
        if report.cancelled:
            summary.cancelled = True

    def _drop_stale_sessions(self, classification: Classification) -> None:
        """Discard upload sessions for paths that no longer need uploading."""
        keep = set(classification.paths_for(ActionKind.UPLOAD))
        keep.update(failure.path for failure in classification.failures)
        for session in self.store.active_sessions():
            if session.relative_path in keep:
                continue
            logger.info(f"Discarding stale upload session for {session.relative_path}")
            try:
                self.remote.cancel_upload_session(session.upload_url)
            except RemoteError as e:
                logger.debug(f"Could not cancel upload session: {e}")
            self.store.delete_session(session.relative_path)

    def _abort(self, summary: CycleSummary, reason: str) -> None:
        logger.error(f"Sync cycle aborted: {reason}")
        summary.aborted = True
        summary.abort_reason = reason

    def _abort_for_auth(self, summary: CycleSummary, error) -> None:
        if self.token_provider is not None:
            self.token_provider.invalidate()
        self._abort(summary, f"Authentication required: {error}")
