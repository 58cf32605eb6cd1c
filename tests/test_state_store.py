"""Tests for the SQLite sync state store."""

import sqlite3
import threading

import pytest

from odsync.errors import SchemaVersionError, StorageCorruption, StorageError
from odsync.models import ChunkedUploadSession, SyncItem, SyncState
from odsync.state_store import SyncStateStore


def make_session(path='big.bin', offset=0, expires_at=None):
    return ChunkedUploadSession(path, f"https://upload.example.com/{path}", 4096, 1024,
                                next_offset=offset, expires_at=expires_at,
                                local_hash='abc')


class TestItems:

    def test_mark_synced_sets_both_hashes(self, store):
        item = store.mark_synced('a.txt', 'h1', 10, local_mtime=1.0, remote_mtime=2.0,
                                 remote_etag='e1', now=100.0)

        assert store.get_item('a.txt') == item
        assert item.local_hash == item.remote_hash == 'h1'
        assert item.existed_before

    def test_synced_with_mismatched_hashes_is_rejected(self, store):
        with pytest.raises(StorageError):
            store.put_item(SyncItem('a.txt', local_hash='h1', remote_hash='h2',
                                    sync_state=SyncState.SYNCED))
        assert store.get_item('a.txt') is None

    def test_set_state_creates_bare_item(self, store):
        store.set_state('new.txt', SyncState.PENDING_UPLOAD)

        item = store.get_item('new.txt')
        assert item.sync_state == SyncState.PENDING_UPLOAD
        assert not item.existed_before

    def test_set_state_keeps_metadata(self, store):
        store.mark_synced('a.txt', 'h1', 10, 1.0, 2.0)
        store.set_state('a.txt', SyncState.CONFLICTED)

        item = store.get_item('a.txt')
        assert item.sync_state == SyncState.CONFLICTED
        assert item.local_hash == 'h1'

    def test_items_not_synced_and_counts(self, store):
        store.mark_synced('a.txt', 'h1', 10, 1.0, 2.0)
        store.set_state('b.txt', SyncState.PENDING_DOWNLOAD)
        store.set_state('c.txt', SyncState.CONFLICTED)

        assert [item.relative_path for item in store.items_not_synced()] == ['b.txt', 'c.txt']
        assert store.count_by_state() == {'synced': 1, 'pending_download': 1, 'conflicted': 1}

    def test_delete_item_drops_session(self, store):
        store.set_state('big.bin', SyncState.PENDING_UPLOAD)
        store.put_session(make_session())

        store.delete_item('big.bin')

        assert store.get_item('big.bin') is None
        assert store.get_session('big.bin') is None

    def test_mark_synced_drops_session(self, store):
        store.put_session(make_session())

        store.mark_synced('big.bin', 'h', 4096, 1.0, 1.0)

        assert store.get_session('big.bin') is None


class TestTransactions:

    def test_rollback_discards_all_writes(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.set_state('a.txt', SyncState.PENDING_UPLOAD)
                store.set_state('b.txt', SyncState.PENDING_UPLOAD)
                raise RuntimeError("abort")

        assert store.all_items() == {}

    def test_nested_rollback_keeps_outer_writes(self, store):
        with store.transaction():
            store.set_state('outer.txt', SyncState.PENDING_UPLOAD)
            with pytest.raises(RuntimeError):
                with store.transaction():
                    store.set_state('inner.txt', SyncState.PENDING_UPLOAD)
                    raise RuntimeError("abort inner")

        assert set(store.all_items()) == {'outer.txt'}

    def test_other_threads_see_only_committed_state(self, store):
        seen = []
        store.begin_transaction()
        store.set_state('a.txt', SyncState.PENDING_UPLOAD)

        reader = threading.Thread(target=lambda: seen.append(store.get_item('a.txt')))
        reader.start()
        reader.join()
        store.commit()

        assert seen == [None]
        assert store.get_item('a.txt') is not None

    def test_reader_connections_of_exited_threads_are_closed(self, store):
        store.put_session(make_session())

        for _ in range(5):
            worker = threading.Thread(target=store.get_session, args=('big.bin',))
            worker.start()
            worker.join()

        assert store.open_reader_count == 1
        assert store.get_session('big.bin') is not None
        assert store.open_reader_count == 1


class TestSessions:

    def test_advance_never_moves_backwards(self, store):
        store.put_session(make_session(offset=2048))

        store.advance_session('big.bin', 1024)
        assert store.get_session('big.bin').next_offset == 2048

        store.advance_session('big.bin', 3072)
        assert store.get_session('big.bin').next_offset == 3072

    def test_reconcile_adopts_remote_offset(self, store):
        store.put_session(make_session(offset=2048))

        store.reconcile_session_offset('big.bin', 1024)

        assert store.get_session('big.bin').next_offset == 1024

    def test_expired_sessions(self, store):
        store.put_session(make_session('old.bin', expires_at=100.0))
        store.put_session(make_session('new.bin', expires_at=300.0))
        store.put_session(make_session('open.bin'))

        assert [s.relative_path for s in store.active_sessions(now=200.0)] == ['new.bin',
                                                                               'open.bin']
        assert store.purge_expired_sessions(now=200.0) == 1
        assert store.get_session('old.bin') is None
        assert store.get_session('new.bin') is not None


class TestHistoryAndMetadata:

    def test_history_is_newest_first(self, store):
        store.log_event('upload', 'a.txt', 'success')
        store.log_event('download', 'b.txt', 'error', 'boom')

        entries = store.history()
        assert [(e.action, e.path, e.status, e.error) for e in entries] == [
            ('download', 'b.txt', 'error', 'boom'),
            ('upload', 'a.txt', 'success', None),
        ]
        assert len(store.history(limit=1)) == 1

    def test_metadata(self, store):
        assert store.get_metadata('last_sync') is None
        store.set_metadata('last_sync', '123.5')
        assert store.get_metadata('last_sync') == '123.5'


class TestOpening:

    def test_state_survives_reopen(self, tmp_path):
        db_path = tmp_path / 'state.db'
        first = SyncStateStore(db_path)
        first.mark_synced('a.txt', 'h1', 10, 1.0, 2.0)
        first.put_session(make_session(offset=1024))
        first.close()

        second = SyncStateStore(db_path)
        try:
            assert second.get_item('a.txt').local_hash == 'h1'
            assert second.get_session('big.bin').next_offset == 1024
        finally:
            second.close()

    def test_garbage_file_is_reported_as_corruption(self, tmp_path):
        db_path = tmp_path / 'state.db'
        db_path.write_bytes(b'this is not a sqlite database' * 100)

        with pytest.raises(StorageCorruption):
            SyncStateStore(db_path)
        # Never rebuilt behind the user's back
        assert db_path.read_bytes().startswith(b'this is not a sqlite database')

    def test_unknown_schema_version_is_refused(self, tmp_path):
        db_path = tmp_path / 'state.db'
        SyncStateStore(db_path).close()
        conn = sqlite3.connect(str(db_path))
        conn.execute("UPDATE metadata SET value = '99' WHERE key = 'schema_version'")
        conn.commit()
        conn.close()

        with pytest.raises(SchemaVersionError):
            SyncStateStore(db_path)

    def test_foreign_database_is_refused(self, tmp_path):
        db_path = tmp_path / 'state.db'
        conn = sqlite3.connect(str(db_path))
        conn.execute("CREATE TABLE files (path TEXT)")
        conn.commit()
        conn.close()

        with pytest.raises(SchemaVersionError):
            SyncStateStore(db_path)
