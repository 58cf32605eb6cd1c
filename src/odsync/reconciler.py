#!/usr/bin/env python3
"""Change classification.

For every path known to the local scan, the remote listing or the state
store, decide what (if anything) the transfer executor has to do.
Nothing is transferred here; the reconciler only reads files to hash
them and records the resulting pending states.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .fingerprint import Fingerprint, Fingerprinter
from .models import (
    ActionKind,
    LocalEntry,
    PathFailure,
    RemoteEntry,
    SyncAction,
    SyncItem,
    SyncState,
)
from .path_utils import is_ignored
from .state_store import SyncStateStore

logger = logging.getLogger(__name__)

_PENDING_STATES = {
    ActionKind.UPLOAD: SyncState.PENDING_UPLOAD,
    ActionKind.DOWNLOAD: SyncState.PENDING_DOWNLOAD,
    ActionKind.CONFLICT: SyncState.CONFLICTED,
    ActionKind.DELETE_REMOTE: SyncState.DELETED,
    ActionKind.DELETE_LOCAL: SyncState.DELETED,
}


def classify_os_error(error: OSError) -> str:
    """Map a local OSError onto a PathFailure kind."""
    if isinstance(error, PermissionError):
        return 'permission_denied'
    return 'io_error'


@dataclass
class Classification:
    """Result of one classification pass."""

    actions: List[SyncAction] = field(default_factory=list)
    converged: List[str] = field(default_factory=list)
    forgotten: List[str] = field(default_factory=list)
    failures: List[PathFailure] = field(default_factory=list)

    def paths_for(self, kind: ActionKind) -> List[str]:
        return [action.relative_path for action in self.actions if action.kind == kind]


class ChangeReconciler:
    """Classifies each path into a sync action.

    Local change detection uses size as a pre-filter: a size difference
    is a change without hashing, matching size and mtime is no change,
    anything else (or a watcher hint for the path) is settled by hashing.
    Remote change detection compares the listed hash with the stored
    one, falling back to size and mtime when the remote reports no hash.
    """

    def __init__(self, store: SyncStateStore, fingerprinter: Fingerprinter, sync_root: Path):
        self.store = store
        self.fingerprinter = fingerprinter
        self.sync_root = sync_root
        self._quick_xor = Fingerprinter('quickxor', fingerprinter.block_size)

    def classify(self, local_scan: Dict[str, LocalEntry],
                 remote_listing: Dict[str, RemoteEntry],
                 hints: Iterable[str] = ()) -> Classification:
        """Classify every known path.

        Args:
            local_scan: Full scan of the sync root, keyed by relative path
            remote_listing: Remote listing keyed by relative path
            hints: Paths reported by the live watcher since the last cycle

        Returns:
            Classification with the actions to execute, sorted by path
        """
        result = Classification()
        hinted: Set[str] = set(hints)
        items = self.store.all_items()
        paths = set(local_scan) | set(remote_listing) | set(items)

        for path in sorted(paths):
            if is_ignored(path):
                continue
            try:
                self._classify_path(
                    path,
                    local_scan.get(path),
                    remote_listing.get(path),
                    items.get(path),
                    path in hinted,
                    result,
                )
            except OSError as e:
                logger.warning(f"Skipping {path} this cycle: {e}")
                result.failures.append(PathFailure(path, classify_os_error(e), str(e)))

        # Record pending states together so a status reader never sees half a pass
        with self.store.transaction():
            for action in result.actions:
                self.store.set_state(action.relative_path, _PENDING_STATES[action.kind])

        logger.info(
            f"Classified {len(paths)} paths: {len(result.actions)} actions, "
            f"{len(result.converged)} converged, {len(result.failures)} skipped"
        )
        return result

    # ------------------------------------------------------------------
    # Per-path decision
    # ------------------------------------------------------------------

    def _classify_path(self, path: str, local: Optional[LocalEntry],
                       remote: Optional[RemoteEntry], item: Optional[SyncItem],
                       hinted: bool, result: Classification) -> None:
        if item is None or not item.existed_before:
            self._classify_new(path, local, remote, item, result)
            return

        fingerprint: Optional[Fingerprint] = None
        if local is None:
            local_deleted, local_changed = True, False
        else:
            local_deleted = False
            local_changed, fingerprint = self._local_changed(path, local, item, hinted)

        if remote is None:
            remote_deleted, remote_changed = True, False
        else:
            remote_deleted = False
            remote_changed = self._remote_changed(remote, item)

        if local_deleted and remote_deleted:
            logger.info(f"Deleted on both sides: {path}")
            self.store.delete_item(path)
            result.forgotten.append(path)
        elif local_deleted:
            if remote_changed:
                # Modified remotely beats deleted locally
                self._add(result, ActionKind.DOWNLOAD, path, "remote modified, local deleted",
                          remote=remote)
            else:
                self._add(result, ActionKind.DELETE_REMOTE, path, "deleted locally",
                          remote=remote)
        elif remote_deleted:
            if local_changed:
                self._add(result, ActionKind.UPLOAD, path, "local modified, remote deleted",
                          local=local)
            else:
                self._add(result, ActionKind.DELETE_LOCAL, path, "deleted remotely",
                          local=local, local_hash=item.local_hash)
        elif local_changed and remote_changed:
            fingerprint = fingerprint or self._hash(path)
            if self._same_content(path, fingerprint, remote):
                self._converge(path, fingerprint, remote, result)
            else:
                self._add(result, ActionKind.CONFLICT, path, "modified on both sides",
                          local=local, remote=remote, local_hash=fingerprint.hash)
        elif local_changed:
            self._add(result, ActionKind.UPLOAD, path, "local modified",
                      local=local, remote=remote)
        elif remote_changed:
            self._add(result, ActionKind.DOWNLOAD, path, "remote modified",
                      local=local, remote=remote, local_hash=item.local_hash)
        else:
            self._refresh(item, local, remote, fingerprint)

    def _classify_new(self, path: str, local: Optional[LocalEntry],
                      remote: Optional[RemoteEntry], item: Optional[SyncItem],
                      result: Classification) -> None:
        """Paths that never completed a sync."""
        if local is not None and remote is not None:
            fingerprint = self._hash(path)
            if self._same_content(path, fingerprint, remote):
                self._converge(path, fingerprint, remote, result)
            else:
                self._add(result, ActionKind.CONFLICT, path, "new on both sides",
                          local=local, remote=remote, local_hash=fingerprint.hash)
        elif local is not None:
            self._add(result, ActionKind.UPLOAD, path, "new local file", local=local)
        elif remote is not None:
            self._add(result, ActionKind.DOWNLOAD, path, "new remote file", remote=remote)
        elif item is not None:
            # Pending record for a path that vanished from both sides
            self.store.delete_item(path)
            result.forgotten.append(path)

    def _local_changed(self, path: str, local: LocalEntry, item: SyncItem,
                       hinted: bool):
        if item.size is not None and local.size != item.size:
            return True, None
        if not hinted and local.mtime == item.local_mtime:
            return False, None
        fingerprint = self._hash(path)
        return fingerprint.hash != item.local_hash, fingerprint

    @staticmethod
    def _remote_changed(remote: RemoteEntry, item: SyncItem) -> bool:
        if remote.hash is not None and item.remote_hash is not None:
            return remote.hash != item.remote_hash
        if item.size is not None and remote.size != item.size:
            return True
        return (remote.mtime is not None and item.remote_mtime is not None
                and remote.mtime != item.remote_mtime)

    def _hash(self, path: str) -> Fingerprint:
        return self.fingerprinter.fingerprint(self.sync_root / path)

    def _same_content(self, path: str, fingerprint: Fingerprint, remote: RemoteEntry) -> bool:
        """Compare local content with the remote entry.

        Without the configured hash, OneDrive's quickXorHash settles it.
        With neither, the answer is no and the executor compares content.
        """
        if remote.hash is not None:
            return fingerprint.hash == remote.hash
        if remote.quick_xor_hash is None or remote.size != fingerprint.size:
            return False
        if self.fingerprinter.algorithm == 'quickxor':
            local_xor = fingerprint.hash
        else:
            local_xor = self._quick_xor.fingerprint(self.sync_root / path).hash
        return local_xor == remote.quick_xor_hash

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    @staticmethod
    def _add(result: Classification, kind: ActionKind, path: str, reason: str,
             local: Optional[LocalEntry] = None, remote: Optional[RemoteEntry] = None,
             local_hash: Optional[str] = None) -> None:
        logger.debug(f"{kind.value}: {path} ({reason})")
        result.actions.append(SyncAction(kind, path, reason, local, remote, local_hash))

    def _converge(self, path: str, fingerprint: Fingerprint, remote: RemoteEntry,
                  result: Classification) -> None:
        logger.info(f"Both sides converged: {path}")
        self.store.mark_synced(path, fingerprint.hash, fingerprint.size,
                               local_mtime=fingerprint.mtime,
                               remote_mtime=remote.mtime, remote_etag=remote.etag)
        result.converged.append(path)

    def _refresh(self, item: SyncItem, local: LocalEntry, remote: RemoteEntry,
                 fingerprint: Optional[Fingerprint]) -> None:
        """Nothing changed; keep stored metadata current and the item Synced.

        A touched-but-identical file gets its new mtime recorded so it is
        not re-hashed on every cycle.
        """
        updated = replace(
            item,
            local_mtime=fingerprint.mtime if fingerprint else local.mtime,
            remote_mtime=remote.mtime if remote.mtime is not None else item.remote_mtime,
            remote_etag=remote.etag or item.remote_etag,
            sync_state=SyncState.SYNCED,
        )
        if updated != item:
            self.store.put_item(updated)

