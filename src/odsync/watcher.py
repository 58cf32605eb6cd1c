#!/usr/bin/env python3
"""Local filesystem change detection.

Two independent producers feed the reconciler:

- ``full_scan()`` walks the sync root and is the ground truth each cycle.
- ``LocalWatcher`` queues live watchdog notifications between cycles.
  They are only a hint (the backend may drop or coalesce events), used to
  force re-hashing of paths whose size and mtime look unchanged.
"""

import logging
import os
import stat
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models import ChangeKind, LocalEntry, WatchEvent
from .path_utils import is_ignored, relative_key

logger = logging.getLogger(__name__)


def full_scan(root: Path) -> Dict[str, LocalEntry]:
    """Scan the sync root for regular files.

    Hidden files, hidden directories and in-progress download temp files
    are skipped. Symlinks are not followed.

    Args:
        root: Sync root directory

    Returns:
        Mapping of relative path to LocalEntry
    """
    entries: Dict[str, LocalEntry] = {}
    if not root.exists():
        logger.info(f"Creating sync folder: {root}")
        root.mkdir(parents=True, exist_ok=True)
        return entries

    def on_error(error: OSError) -> None:
        logger.warning(f"Cannot access {error.filename}: {error}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames[:] = [d for d in dirnames if not d.startswith('.')]
        for name in filenames:
            path = Path(dirpath) / name
            rel_path = relative_key(path, root)
            if not rel_path or is_ignored(rel_path):
                continue
            try:
                # Cache stat result to avoid TOCTOU races
                stat_info = path.lstat()
            except OSError as e:
                logger.warning(f"Cannot access {path}: {e}")
                continue
            if not stat.S_ISREG(stat_info.st_mode):
                continue
            entries[rel_path] = LocalEntry(rel_path, stat_info.st_size, stat_info.st_mtime)

    logger.info(f"Found {len(entries)} local files")
    return entries


class SyncEventHandler(FileSystemEventHandler):
    """Turns watchdog callbacks into queued WatchEvents."""

    def __init__(self, watcher: 'LocalWatcher'):
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.record(Path(event.src_path), ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.record(Path(event.src_path), ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.record(Path(event.src_path), ChangeKind.REMOVED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.record(Path(event.src_path), ChangeKind.REMOVED)
            self.watcher.record(Path(event.dest_path), ChangeKind.CREATED)


class LocalWatcher:
    """Always-on listener queueing changes for the next cycle.

    Events for the same path are coalesced (latest kind wins). The queue
    survives stop()/start(), so the watcher can be restarted without
    losing hints gathered so far.
    """

    def __init__(self, root: Path, observer_factory=Observer):
        self.root = root
        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None
        self._pending: Dict[str, WatchEvent] = {}
        self._lock = threading.Lock()
        self._paused = False

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start watching the sync root recursively."""
        if self._observer is not None:
            return
        self.root.mkdir(parents=True, exist_ok=True)
        observer = self._observer_factory()
        observer.schedule(SyncEventHandler(self), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.root} for changes")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        logger.info("Filesystem watcher stopped")

    def pause(self) -> None:
        """Ignore notifications until resume(); the next full scan still runs."""
        self._paused = True
        logger.info("Filesystem watching paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Filesystem watching resumed")

    def record(self, path: Path, kind: ChangeKind) -> None:
        """Queue a change for an absolute path under the sync root."""
        if self._paused:
            return
        rel_path = relative_key(path, self.root)
        if not rel_path or is_ignored(rel_path):
            return
        with self._lock:
            self._pending[rel_path] = WatchEvent(rel_path, kind)
        logger.debug(f"Queued change: {kind.value} {rel_path}")

    def events(self) -> Iterator[WatchEvent]:
        """Lazily drain queued events, including ones that arrive mid-iteration."""
        while True:
            with self._lock:
                if not self._pending:
                    return
                path = next(iter(self._pending))
                event = self._pending.pop(path)
            yield event

    def drain(self) -> List[WatchEvent]:
        return list(self.events())
