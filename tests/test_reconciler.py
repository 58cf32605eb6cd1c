"""Tests for change classification."""

import os

import pytest

from conftest import write_file
from odsync.fingerprint import Fingerprinter, hash_bytes
from odsync.models import ActionKind, RemoteEntry, SyncState
from odsync.reconciler import ChangeReconciler, classify_os_error
from odsync.watcher import full_scan

SYNCED_AT = 1_700_000_000.0


class CountingFingerprinter(Fingerprinter):
    """Fingerprinter that records which files were hashed."""

    def __init__(self):
        super().__init__('sha256')
        self.hashed = []

    def fingerprint(self, path):
        self.hashed.append(os.path.basename(path))
        return super().fingerprint(path)


@pytest.fixture
def fingerprinter():
    return CountingFingerprinter()


@pytest.fixture
def reconciler(store, fingerprinter, sync_root):
    return ChangeReconciler(store, fingerprinter, sync_root)


def remote_entry(path, content, mtime=SYNCED_AT, etag='etag-1', with_hash=True):
    return RemoteEntry(path, hash_bytes(content) if with_hash else None, mtime,
                       len(content), etag=etag)


def synced(store, sync_root, path, content):
    """Create a local file and record it as synced with matching remote."""
    local_path = write_file(sync_root, path, content)
    mtime = local_path.stat().st_mtime
    store.mark_synced(path, hash_bytes(content), len(content), local_mtime=mtime,
                      remote_mtime=SYNCED_AT, remote_etag='etag-1')
    return local_path


def classify(reconciler, sync_root, remote_entries, hints=()):
    listing = {entry.path: entry for entry in remote_entries}
    return reconciler.classify(full_scan(sync_root), listing, hints)


def kinds(result):
    return {action.relative_path: action.kind for action in result.actions}


class TestNewPaths:

    def test_local_only_is_uploaded(self, reconciler, sync_root, store):
        write_file(sync_root, 'a.txt', b'local')

        result = classify(reconciler, sync_root, [])

        assert kinds(result) == {'a.txt': ActionKind.UPLOAD}
        assert store.get_item('a.txt').sync_state == SyncState.PENDING_UPLOAD

    def test_remote_only_is_downloaded(self, reconciler, sync_root, store):
        result = classify(reconciler, sync_root, [remote_entry('b.txt', b'remote')])

        assert kinds(result) == {'b.txt': ActionKind.DOWNLOAD}
        assert store.get_item('b.txt').sync_state == SyncState.PENDING_DOWNLOAD

    def test_both_sides_identical_converge(self, reconciler, sync_root, store):
        write_file(sync_root, 'c.txt', b'same')

        result = classify(reconciler, sync_root, [remote_entry('c.txt', b'same')])

        assert result.actions == []
        assert result.converged == ['c.txt']
        item = store.get_item('c.txt')
        assert item.sync_state == SyncState.SYNCED
        assert item.local_hash == item.remote_hash == hash_bytes(b'same')

    def test_both_sides_different_conflict(self, reconciler, sync_root, store):
        write_file(sync_root, 'd.txt', b'mine')

        result = classify(reconciler, sync_root, [remote_entry('d.txt', b'theirs')])

        assert kinds(result) == {'d.txt': ActionKind.CONFLICT}
        assert result.actions[0].local_hash == hash_bytes(b'mine')
        assert store.get_item('d.txt').sync_state == SyncState.CONFLICTED

    def test_pending_record_without_files_is_forgotten(self, reconciler, sync_root, store):
        store.set_state('ghost.txt', SyncState.PENDING_UPLOAD)

        result = classify(reconciler, sync_root, [])

        assert result.forgotten == ['ghost.txt']
        assert store.get_item('ghost.txt') is None


class TestKnownPaths:

    def test_unchanged_needs_nothing(self, reconciler, sync_root, store, fingerprinter):
        synced(store, sync_root, 'a.txt', b'content')

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'content')])

        assert result.actions == []
        assert fingerprinter.hashed == []
        assert store.get_item('a.txt').sync_state == SyncState.SYNCED

    def test_size_change_is_detected_without_hashing(self, reconciler, sync_root, store,
                                                     fingerprinter):
        synced(store, sync_root, 'a.txt', b'content')
        write_file(sync_root, 'a.txt', b'longer content')

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'content')])

        assert kinds(result) == {'a.txt': ActionKind.UPLOAD}
        assert fingerprinter.hashed == []
        assert result.actions[0].remote.etag == 'etag-1'

    def test_touched_file_with_same_content_is_not_uploaded(self, reconciler, sync_root,
                                                            store):
        local_path = synced(store, sync_root, 'a.txt', b'content')
        os.utime(local_path, (SYNCED_AT + 50, SYNCED_AT + 50))

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'content')])

        assert result.actions == []
        assert store.get_item('a.txt').local_mtime == SYNCED_AT + 50

    def test_same_size_edit_found_by_hash(self, reconciler, sync_root, store):
        local_path = synced(store, sync_root, 'a.txt', b'aaaa')
        write_file(sync_root, 'a.txt', b'bbbb')
        os.utime(local_path, (SYNCED_AT + 50, SYNCED_AT + 50))

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'aaaa')])

        assert kinds(result) == {'a.txt': ActionKind.UPLOAD}

    def test_hint_forces_hash_when_mtime_matches(self, reconciler, sync_root, store,
                                                 fingerprinter):
        local_path = synced(store, sync_root, 'a.txt', b'aaaa')
        mtime_ns = local_path.stat().st_mtime_ns
        write_file(sync_root, 'a.txt', b'bbbb')
        os.utime(local_path, ns=(mtime_ns, mtime_ns))

        assert classify(reconciler, sync_root, [remote_entry('a.txt', b'aaaa')]).actions == []
        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'aaaa')],
                          hints=['a.txt'])

        assert kinds(result) == {'a.txt': ActionKind.UPLOAD}
        assert fingerprinter.hashed == ['a.txt']

    def test_remote_edit_is_downloaded(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')

        result = classify(reconciler, sync_root,
                          [remote_entry('a.txt', b'new remote content', etag='etag-2')])

        assert kinds(result) == {'a.txt': ActionKind.DOWNLOAD}
        assert result.actions[0].local_hash == hash_bytes(b'content')

    def test_edits_on_both_sides_conflict(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')
        write_file(sync_root, 'a.txt', b'local edit')

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'remote edit!')])

        assert kinds(result) == {'a.txt': ActionKind.CONFLICT}

    def test_identical_edits_converge(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')
        write_file(sync_root, 'a.txt', b'same edit')

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'same edit')])

        assert result.actions == []
        assert result.converged == ['a.txt']
        assert store.get_item('a.txt').local_hash == hash_bytes(b'same edit')


class TestDeletions:

    def test_local_delete_propagates(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content').unlink()

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'content')])

        assert kinds(result) == {'a.txt': ActionKind.DELETE_REMOTE}
        assert store.get_item('a.txt').sync_state == SyncState.DELETED

    def test_remote_delete_propagates(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')

        result = classify(reconciler, sync_root, [])

        assert kinds(result) == {'a.txt': ActionKind.DELETE_LOCAL}
        assert result.actions[0].local_hash == hash_bytes(b'content')

    def test_remote_edit_wins_over_local_delete(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content').unlink()

        result = classify(reconciler, sync_root, [remote_entry('a.txt', b'edited remotely')])

        assert kinds(result) == {'a.txt': ActionKind.DOWNLOAD}

    def test_local_edit_wins_over_remote_delete(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')
        write_file(sync_root, 'a.txt', b'edited locally')

        result = classify(reconciler, sync_root, [])

        assert kinds(result) == {'a.txt': ActionKind.UPLOAD}

    def test_deleted_on_both_sides_is_forgotten(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content').unlink()

        result = classify(reconciler, sync_root, [])

        assert result.actions == []
        assert result.forgotten == ['a.txt']
        assert store.get_item('a.txt') is None


class TestRemoteWithoutHashes:

    def test_unchanged_size_and_mtime_is_not_a_change(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')

        result = classify(reconciler, sync_root,
                          [remote_entry('a.txt', b'content', with_hash=False)])

        assert result.actions == []

    def test_newer_mtime_is_a_change(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')

        result = classify(reconciler, sync_root,
                          [remote_entry('a.txt', b'CONTENT', mtime=SYNCED_AT + 60,
                                        with_hash=False)])

        assert kinds(result) == {'a.txt': ActionKind.DOWNLOAD}

    def test_new_on_both_sides_settled_by_quick_xor(self, reconciler, sync_root, store):
        write_file(sync_root, 'same.txt', b'identical')
        write_file(sync_root, 'diff.txt', b'mine!!')
        listing = [
            RemoteEntry('same.txt', None, SYNCED_AT, 9,
                        quick_xor_hash=hash_bytes(b'identical', 'quickxor')),
            RemoteEntry('diff.txt', None, SYNCED_AT, 6,
                        quick_xor_hash=hash_bytes(b'theirs', 'quickxor')),
        ]

        result = classify(reconciler, sync_root, listing)

        assert result.converged == ['same.txt']
        assert kinds(result) == {'diff.txt': ActionKind.CONFLICT}
        item = store.get_item('same.txt')
        assert item.sync_state == SyncState.SYNCED
        assert item.local_hash == hash_bytes(b'identical')

    def test_new_on_both_sides_without_any_hash_is_left_to_executor(self, reconciler,
                                                                    sync_root):
        write_file(sync_root, 'same.txt', b'identical')

        result = classify(reconciler, sync_root,
                          [remote_entry('same.txt', b'identical', with_hash=False)])

        assert kinds(result) == {'same.txt': ActionKind.CONFLICT}
        assert result.actions[0].local.size == 9

    def test_modified_known_path_is_pending_upload(self, reconciler, sync_root, store):
        synced(store, sync_root, 'a.txt', b'content')
        write_file(sync_root, 'a.txt', b'edited content')

        classify(reconciler, sync_root, [remote_entry('a.txt', b'content')])

        assert store.get_item('a.txt').sync_state == SyncState.PENDING_UPLOAD


class TestScanFiltering:

    def test_hidden_and_partial_files_are_ignored(self, reconciler, sync_root):
        write_file(sync_root, '.hidden', b'x')
        write_file(sync_root, 'dir/.cache/blob', b'x')
        write_file(sync_root, 'file.txt.1234.odsync-part', b'x')

        result = classify(reconciler, sync_root,
                          [remote_entry('.remote-hidden', b'x')])

        assert result.actions == []

    def test_unreadable_file_becomes_failure(self, reconciler, sync_root, store,
                                             monkeypatch):
        write_file(sync_root, 'locked.txt', b'secret')
        write_file(sync_root, 'fine.txt', b'fine')

        def deny(path):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr(reconciler, '_hash', deny)

        result = classify(reconciler, sync_root,
                          [remote_entry('locked.txt', b'other')])

        assert [failure.path for failure in result.failures] == ['locked.txt']
        assert result.failures[0].kind == 'permission_denied'
        assert kinds(result) == {'fine.txt': ActionKind.UPLOAD}


def test_classify_os_error():
    assert classify_os_error(PermissionError()) == 'permission_denied'
    assert classify_os_error(FileNotFoundError()) == 'io_error'
