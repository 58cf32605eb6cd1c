"""SQLite-backed sync state store.

Single file under the data directory holding:

- sync_items:      last known synced metadata per relative path
- upload_sessions: resumable chunked uploads in flight
- sync_log:        history of executed actions and cycles
- metadata:        schema version, last sync time

Writes are serialized through one connection guarded by a re-entrant
lock (one logical transaction at a time). Reads from other threads use
their own connections, which WAL mode lets run alongside the writer.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from .errors import SchemaVersionError, StorageCorruption, StorageError
from .models import ChunkedUploadSession, SyncItem, SyncLogEntry, SyncState

logger = logging.getLogger(__name__)

_CORRUPTION_MARKERS = ('malformed', 'not a database', 'corrupt')

_ITEM_COLUMNS = ('relative_path, local_hash, remote_hash, local_mtime, remote_mtime, '
                 'size, sync_state, last_synced_at, remote_etag')
_SESSION_COLUMNS = ('relative_path, upload_url, total_size, chunk_size, next_offset, '
                    'expires_at, local_hash')


def _storage_error(error: Exception) -> StorageError:
    message = str(error)
    if isinstance(error, sqlite3.DatabaseError) and any(
            marker in message.lower() for marker in _CORRUPTION_MARKERS):
        return StorageCorruption(f"Sync state database is corrupted: {message}")
    return StorageError(f"Sync state database error: {message}")


def storage_guard(func: Callable) -> Callable:
    """Translate sqlite/OS failures into StorageError subclasses."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StorageError:
            raise
        except (sqlite3.Error, OSError) as e:
            logger.error(f"{func.__name__} failed: {e}")
            raise _storage_error(e) from e
    return wrapper


class SyncStateStore:
    """Durable store for SyncItem and ChunkedUploadSession records."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path):
        """Open (and if new, initialize) the state database.

        Args:
            db_path: Path to SQLite database file

        Raises:
            StorageCorruption: If the file fails its integrity check
            SchemaVersionError: If the file carries an unknown schema version
            StorageError: On any other I/O failure
        """
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._write_lock = threading.RLock()
        self._tx_depth = 0
        self._tx_owner: Optional[int] = None
        self._readers: Dict[threading.Thread, sqlite3.Connection] = {}
        self._readers_lock = threading.Lock()
        self._open()

    @storage_guard
    def _open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False,
                               isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            self._check_integrity(conn)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._init_schema(conn)
        except BaseException:
            conn.close()
            raise
        self.conn = conn
        logger.info(f"Sync state store opened: {self.db_path}")

    @staticmethod
    def _check_integrity(conn: sqlite3.Connection) -> None:
        rows = conn.execute("PRAGMA quick_check").fetchall()
        results = [row[0] for row in rows]
        if results != ['ok']:
            raise StorageCorruption(
                f"Sync state database failed integrity check: {'; '.join(results[:5])}"
            )

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Create the schema on a new file; refuse unknown versions."""
        tables = {row[0] for row in conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'")}

        if 'metadata' in tables:
            row = conn.execute(
                "SELECT value FROM metadata WHERE key = 'schema_version'"
            ).fetchone()
            version = row[0] if row else None
            if version != str(self.SCHEMA_VERSION):
                raise SchemaVersionError(
                    f"Unsupported sync state schema version {version!r} "
                    f"(expected {self.SCHEMA_VERSION})"
                )
            return

        user_tables = {name for name in tables if not name.startswith('sqlite_')}
        if user_tables:
            raise SchemaVersionError(
                f"Sync state database has no schema marker (tables: {', '.join(sorted(user_tables))})"
            )

        logger.info("Initializing sync state schema...")
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute("""
                CREATE TABLE sync_items (
                    relative_path TEXT PRIMARY KEY,
                    local_hash TEXT,
                    remote_hash TEXT,
                    local_mtime REAL,
                    remote_mtime REAL,
                    size INTEGER,
                    sync_state TEXT NOT NULL,
                    last_synced_at REAL,
                    remote_etag TEXT,
                    CHECK (sync_state != 'synced'
                           OR (local_hash IS NOT NULL AND local_hash = remote_hash))
                )
            """)
            conn.execute("""
                CREATE INDEX idx_sync_items_state
                ON sync_items(sync_state)
            """)
            conn.execute("""
                CREATE TABLE upload_sessions (
                    relative_path TEXT PRIMARY KEY,
                    upload_url TEXT NOT NULL,
                    total_size INTEGER NOT NULL,
                    chunk_size INTEGER NOT NULL,
                    next_offset INTEGER NOT NULL DEFAULT 0,
                    expires_at REAL,
                    local_hash TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE sync_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    action TEXT NOT NULL,
                    path TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute(
                "INSERT INTO metadata (key, value) VALUES ('schema_version', ?)",
                (str(self.SCHEMA_VERSION),)
            )
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        logger.info("Sync state schema initialized")

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @storage_guard
    def begin_transaction(self) -> None:
        """Start a (possibly nested) write transaction on this thread."""
        self._write_lock.acquire()
        try:
            if self._tx_depth == 0:
                self.conn.execute("BEGIN IMMEDIATE")
                self._tx_owner = threading.get_ident()
            else:
                self.conn.execute(f"SAVEPOINT sp_{self._tx_depth}")
            self._tx_depth += 1
        except BaseException:
            self._write_lock.release()
            raise

    @storage_guard
    def commit(self) -> None:
        """Commit the innermost open transaction."""
        try:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._tx_owner = None
                try:
                    self.conn.execute("COMMIT")
                except sqlite3.Error:
                    self.conn.execute("ROLLBACK")
                    raise
            else:
                self.conn.execute(f"RELEASE SAVEPOINT sp_{self._tx_depth}")
        finally:
            self._write_lock.release()

    @storage_guard
    def rollback(self) -> None:
        """Discard the innermost open transaction."""
        try:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._tx_owner = None
                self.conn.execute("ROLLBACK")
            else:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT sp_{self._tx_depth}")
                self.conn.execute(f"RELEASE SAVEPOINT sp_{self._tx_depth}")
        finally:
            self._write_lock.release()

    @contextmanager
    def transaction(self) -> Iterator['SyncStateStore']:
        """Context manager committing on success, rolling back on error."""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def _reader(self) -> sqlite3.Connection:
        """Connection for reads: the writer inside our own transaction,
        otherwise a per-thread connection.

        Transfer pools are rebuilt every cycle, so connections left behind
        by exited threads are closed before a new one is opened.
        """
        if self._tx_owner == threading.get_ident():
            return self.conn
        thread = threading.current_thread()
        with self._readers_lock:
            conn = self._readers.get(thread)
            if conn is None:
                for dead in [t for t in self._readers if not t.is_alive()]:
                    self._readers.pop(dead).close()
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False,
                                       isolation_level=None)
                conn.row_factory = sqlite3.Row
                self._readers[thread] = conn
        return conn

    @property
    def open_reader_count(self) -> int:
        with self._readers_lock:
            return len(self._readers)

    # ------------------------------------------------------------------
    # Sync items
    # ------------------------------------------------------------------

    @storage_guard
    def get_item(self, path: str) -> Optional[SyncItem]:
        """Get sync item by relative path."""
        row = self._reader().execute(
            f"SELECT {_ITEM_COLUMNS} FROM sync_items WHERE relative_path = ?", (path,)
        ).fetchone()
        return self._row_to_item(row) if row else None

    @storage_guard
    def all_items(self) -> Dict[str, SyncItem]:
        """Get every known item keyed by relative path."""
        rows = self._reader().execute(f"SELECT {_ITEM_COLUMNS} FROM sync_items").fetchall()
        return {row['relative_path']: self._row_to_item(row) for row in rows}

    @storage_guard
    def items_not_synced(self) -> List[SyncItem]:
        """All items whose state is anything but Synced."""
        rows = self._reader().execute(
            f"SELECT {_ITEM_COLUMNS} FROM sync_items WHERE sync_state != ? "
            f"ORDER BY relative_path",
            (SyncState.SYNCED.value,)
        ).fetchall()
        return [self._row_to_item(row) for row in rows]

    @storage_guard
    def count_by_state(self) -> Dict[str, int]:
        rows = self._reader().execute(
            "SELECT sync_state, COUNT(*) FROM sync_items GROUP BY sync_state"
        ).fetchall()
        return {row[0]: row[1] for row in rows}

    @storage_guard
    def put_item(self, item: SyncItem) -> None:
        """Insert or replace a sync item."""
        with self.transaction():
            self.conn.execute(
                f"INSERT OR REPLACE INTO sync_items ({_ITEM_COLUMNS}) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    item.relative_path,
                    item.local_hash,
                    item.remote_hash,
                    item.local_mtime,
                    item.remote_mtime,
                    item.size,
                    SyncState(item.sync_state).value,
                    item.last_synced_at,
                    item.remote_etag,
                )
            )

    @storage_guard
    def set_state(self, path: str, state: SyncState) -> None:
        """Change the state of an existing item, creating a bare one if needed."""
        with self.transaction():
            cursor = self.conn.execute(
                "UPDATE sync_items SET sync_state = ? WHERE relative_path = ?",
                (state.value, path)
            )
            if cursor.rowcount == 0:
                self.conn.execute(
                    "INSERT INTO sync_items (relative_path, sync_state) VALUES (?, ?)",
                    (path, state.value)
                )

    @storage_guard
    def mark_synced(self, path: str, content_hash: str, size: int,
                    local_mtime: Optional[float], remote_mtime: Optional[float],
                    remote_etag: Optional[str] = None,
                    now: Optional[float] = None) -> SyncItem:
        """Record a completed sync in one atomic update.

        Both hashes are set to ``content_hash`` and any upload session for
        the path is dropped in the same transaction.
        """
        item = SyncItem(
            relative_path=path,
            local_hash=content_hash,
            remote_hash=content_hash,
            local_mtime=local_mtime,
            remote_mtime=remote_mtime,
            size=size,
            sync_state=SyncState.SYNCED,
            last_synced_at=now if now is not None else time.time(),
            remote_etag=remote_etag,
        )
        with self.transaction():
            self.put_item(item)
            self.conn.execute("DELETE FROM upload_sessions WHERE relative_path = ?", (path,))
        return item

    @storage_guard
    def delete_item(self, path: str) -> None:
        """Forget a path (and any upload session for it)."""
        with self.transaction():
            self.conn.execute("DELETE FROM sync_items WHERE relative_path = ?", (path,))
            self.conn.execute("DELETE FROM upload_sessions WHERE relative_path = ?", (path,))

    # ------------------------------------------------------------------
    # Chunked upload sessions
    # ------------------------------------------------------------------

    @storage_guard
    def get_session(self, path: str) -> Optional[ChunkedUploadSession]:
        row = self._reader().execute(
            f"SELECT {_SESSION_COLUMNS} FROM upload_sessions WHERE relative_path = ?", (path,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    @storage_guard
    def put_session(self, session: ChunkedUploadSession) -> None:
        with self.transaction():
            self.conn.execute(
                f"INSERT OR REPLACE INTO upload_sessions ({_SESSION_COLUMNS}) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session.relative_path,
                    session.upload_url,
                    session.total_size,
                    session.chunk_size,
                    session.next_offset,
                    session.expires_at,
                    session.local_hash,
                )
            )

    @storage_guard
    def advance_session(self, path: str, accepted_offset: int) -> None:
        """Record bytes acknowledged by the remote; never moves backwards."""
        with self.transaction():
            self.conn.execute(
                "UPDATE upload_sessions SET next_offset = MAX(next_offset, ?) "
                "WHERE relative_path = ?",
                (accepted_offset, path)
            )

    @storage_guard
    def reconcile_session_offset(self, path: str, remote_offset: int) -> None:
        """Adopt the remote's authoritative offset when resuming."""
        with self.transaction():
            row = self.conn.execute(
                "SELECT next_offset FROM upload_sessions WHERE relative_path = ?", (path,)
            ).fetchone()
            if row is None:
                return
            if remote_offset < row[0]:
                logger.warning(f"Remote offset {remote_offset} for {path} is behind "
                               f"recorded offset {row[0]}; trusting remote")
            self.conn.execute(
                "UPDATE upload_sessions SET next_offset = ? WHERE relative_path = ?",
                (remote_offset, path)
            )

    @storage_guard
    def delete_session(self, path: str) -> None:
        with self.transaction():
            self.conn.execute("DELETE FROM upload_sessions WHERE relative_path = ?", (path,))

    @storage_guard
    def active_sessions(self, now: Optional[float] = None) -> List[ChunkedUploadSession]:
        """All chunked sessions not yet expired."""
        now = now if now is not None else time.time()
        rows = self._reader().execute(
            f"SELECT {_SESSION_COLUMNS} FROM upload_sessions "
            f"WHERE expires_at IS NULL OR expires_at > ? ORDER BY relative_path",
            (now,)
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    @storage_guard
    def purge_expired_sessions(self, now: Optional[float] = None) -> int:
        now = now if now is not None else time.time()
        with self.transaction():
            cursor = self.conn.execute(
                "DELETE FROM upload_sessions WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,)
            )
        if cursor.rowcount:
            logger.info(f"Discarded {cursor.rowcount} expired upload sessions")
        return cursor.rowcount

    # ------------------------------------------------------------------
    # History and metadata
    # ------------------------------------------------------------------

    @storage_guard
    def log_event(self, action: str, path: str, status: str,
                  error: Optional[str] = None) -> None:
        with self.transaction():
            self.conn.execute(
                "INSERT INTO sync_log (timestamp, action, path, status, error) "
                "VALUES (?, ?, ?, ?, ?)",
                (time.time(), action, path, status, error)
            )

    @storage_guard
    def history(self, limit: int = 50) -> List[SyncLogEntry]:
        """Most recent history entries, newest first."""
        rows = self._reader().execute(
            "SELECT timestamp, action, path, status, error FROM sync_log "
            "ORDER BY id DESC LIMIT ?",
            (limit,)
        ).fetchall()
        return [SyncLogEntry(row['timestamp'], row['action'], row['path'],
                             row['status'], row['error']) for row in rows]

    @storage_guard
    def get_metadata(self, key: str) -> Optional[str]:
        row = self._reader().execute(
            "SELECT value FROM metadata WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    @storage_guard
    def set_metadata(self, key: str, value: str) -> None:
        with self.transaction():
            self.conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (key, value)
            )

    def close(self) -> None:
        """Close all connections."""
        with self._readers_lock:
            for conn in self._readers.values():
                conn.close()
            self._readers.clear()
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Sync state store closed")

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> SyncItem:
        return SyncItem(
            relative_path=row['relative_path'],
            local_hash=row['local_hash'],
            remote_hash=row['remote_hash'],
            local_mtime=row['local_mtime'],
            remote_mtime=row['remote_mtime'],
            size=row['size'],
            sync_state=SyncState(row['sync_state']),
            last_synced_at=row['last_synced_at'],
            remote_etag=row['remote_etag'],
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> ChunkedUploadSession:
        return ChunkedUploadSession(
            relative_path=row['relative_path'],
            upload_url=row['upload_url'],
            total_size=row['total_size'],
            chunk_size=row['chunk_size'],
            next_offset=row['next_offset'],
            expires_at=row['expires_at'],
            local_hash=row['local_hash'],
        )
