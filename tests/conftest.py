"""Shared fixtures: an in-memory remote store and an instant retry policy."""

import itertools
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from odsync.config import SyncSettings
from odsync.errors import ConflictError, NotFoundError, TransientError
from odsync.executor import RetryPolicy
from odsync.fingerprint import hash_bytes
from odsync.models import RemoteEntry
from odsync.orchestrator import SyncOrchestrator
from odsync.remote import ChunkResult, RemoteStore, UploadSessionInfo
from odsync.state_store import SyncStateStore


class SimulatedCrash(Exception):
    """Stands in for the process dying in the middle of a transfer."""


class FakeRemoteStore(RemoteStore):
    """In-memory RemoteStore with failure injection.

    Attributes used by tests to inject failures:
        list_error: raised by list() when set
        failures: mapping of operation name to a list of exceptions raised
            (one per call) before the operation runs
        crash_after_chunks: raise SimulatedCrash once this many chunks were
            accepted in total
        ack_before_crash: when crashing, accept the chunk first, as if the
            acknowledgement was lost on the way back
        report_hashes: include content hashes in listings and results
        report_quick_xor: include quickXorHash alongside (or instead of) them
        before_transfer: callable(operation, path) run before a transfer
            applies, to change the remote behind the executor's back
    """

    def __init__(self, hash_algorithm: str = 'sha256'):
        self.hash_algorithm = hash_algorithm
        self.files: Dict[str, bytes] = {}
        self.mtimes: Dict[str, float] = {}
        self.etags: Dict[str, str] = {}
        self.sessions: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.list_error: Optional[Exception] = None
        self.failures: Dict[str, List[Exception]] = {}
        self.crash_after_chunks: Optional[int] = None
        self.ack_before_crash = False
        self.report_hashes = True
        self.report_quick_xor = False
        self.before_transfer = None
        self.chunks_accepted = 0
        self._etag_counter = itertools.count(1)
        self._session_counter = itertools.count(1)

    # Test helpers

    def put(self, path: str, content: bytes, mtime: Optional[float] = None) -> None:
        self.files[path] = content
        self.mtimes[path] = mtime if mtime is not None else time.time()
        self.etags[path] = f"etag-{next(self._etag_counter)}"

    def content(self, path: str) -> bytes:
        return self.files[path]

    def ops(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def transfer_calls(self) -> List[tuple]:
        names = ('download', 'upload_small', 'begin_chunked_upload', 'upload_chunk', 'delete')
        return [call for call in self.calls if call[0] in names]

    def _maybe_fail(self, operation: str, path: Optional[str] = None) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)
        if self.before_transfer is not None and path is not None:
            self.before_transfer(operation, path)

    def _check_preconditions(self, path: str, if_match: Optional[str],
                             create_only: bool = False) -> None:
        current = self.etags.get(path)
        if create_only and current is not None:
            raise ConflictError(f"{path} already exists", etag=current, status_code=409)
        if if_match is not None and current not in (None, if_match):
            raise ConflictError(f"eTag mismatch for {path}", etag=current, status_code=412)

    def _entry(self, path: str) -> RemoteEntry:
        content = self.files[path]
        return RemoteEntry(
            path=path,
            hash=hash_bytes(content, self.hash_algorithm) if self.report_hashes else None,
            mtime=self.mtimes[path],
            size=len(content),
            etag=self.etags[path],
            item_id=f"id-{path}",
            quick_xor_hash=hash_bytes(content, 'quickxor') if self.report_quick_xor else None,
        )

    # RemoteStore

    def list(self, root: str = '') -> List[RemoteEntry]:
        self.calls.append(('list', root))
        if self.list_error is not None:
            raise self.list_error
        prefix = f"{root}/" if root else ''
        return [self._entry(path) for path in sorted(self.files) if path.startswith(prefix)]

    def download(self, path: str):
        self.calls.append(('download', path))
        self._maybe_fail('download')
        if path not in self.files:
            raise NotFoundError(f"{path} not found", 404)
        content = self.files[path]
        return iter([content[i:i + 4096] for i in range(0, len(content), 4096)] or [b''])

    def upload_small(self, path, data, if_match=None, create_only=False):
        self.calls.append(('upload_small', path))
        self._maybe_fail('upload_small', path)
        self._check_preconditions(path, if_match, create_only)
        self.put(path, bytes(data))
        return self._entry(path)

    def begin_chunked_upload(self, path, total_size, if_match=None, create_only=False):
        self.calls.append(('begin_chunked_upload', path))
        self._maybe_fail('begin_chunked_upload', path)
        self._check_preconditions(path, if_match, create_only)
        url = f"https://upload.example.com/session/{next(self._session_counter)}"
        self.sessions[url] = {'path': path, 'total': total_size, 'data': bytearray(),
                              'if_match': if_match, 'create_only': create_only}
        return UploadSessionInfo(upload_url=url, expires_at=time.time() + 3600)

    def upload_chunk(self, upload_url, offset, data, total_size):
        self.calls.append(('upload_chunk', upload_url, offset, len(data)))
        self._maybe_fail('upload_chunk')
        session = self.sessions.get(upload_url)
        if session is None:
            raise NotFoundError("Upload session not found", 404)
        if offset != len(session['data']):
            raise TransientError(f"Unexpected offset {offset}", 416)

        crash = (self.crash_after_chunks is not None
                 and self.chunks_accepted >= self.crash_after_chunks)
        if crash and not self.ack_before_crash:
            raise SimulatedCrash("process died before the chunk was sent")

        session['data'].extend(data)
        self.chunks_accepted += 1
        if crash:
            raise SimulatedCrash("process died before recording the chunk")

        if len(session['data']) >= total_size:
            path = session['path']
            del self.sessions[upload_url]
            self._check_preconditions(path, session['if_match'], session['create_only'])
            self.put(path, bytes(session['data']))
            entry = self._entry(path)
            return ChunkResult(accepted_offset=total_size, done=True,
                               final_hash=entry.hash, remote=entry)
        return ChunkResult(accepted_offset=len(session['data']))

    def query_upload_session_status(self, upload_url):
        self.calls.append(('query_upload_session_status', upload_url))
        self._maybe_fail('query_upload_session_status')
        session = self.sessions.get(upload_url)
        if session is None:
            raise NotFoundError("Upload session not found", 404)
        return len(session['data'])

    def cancel_upload_session(self, upload_url):
        self.calls.append(('cancel_upload_session', upload_url))
        self.sessions.pop(upload_url, None)

    def delete(self, path, if_match=None):
        self.calls.append(('delete', path))
        self._maybe_fail('delete', path)
        if path not in self.files:
            raise NotFoundError(f"{path} not found", 404)
        self._check_preconditions(path, if_match)
        del self.files[path]
        del self.mtimes[path]
        del self.etags[path]


class SleepRecorder:
    """Drop-in for time.sleep that only records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sync_root(tmp_path) -> Path:
    root = tmp_path / 'OneDrive'
    root.mkdir()
    return root


@pytest.fixture
def store(tmp_path):
    state_store = SyncStateStore(tmp_path / 'data' / 'state.db')
    yield state_store
    state_store.close()


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retry_policy(sleeper) -> RetryPolicy:
    return RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=60.0, sleep=sleeper)


@pytest.fixture
def settings(sync_root) -> SyncSettings:
    return SyncSettings(sync_root=sync_root, max_workers=2)


@pytest.fixture
def orchestrator(settings, store, remote, retry_policy) -> SyncOrchestrator:
    return SyncOrchestrator(settings, store, remote, retry_policy=retry_policy)


@pytest.fixture(autouse=True)
def trash(monkeypatch):
    """Keep tests out of the real desktop trash; records trashed paths."""
    trashed: List[str] = []

    def fake_send2trash(path):
        trashed.append(path)
        Path(path).unlink()

    monkeypatch.setattr('odsync.executor.send2trash', fake_send2trash)
    return trashed


def write_file(root: Path, rel_path: str, content: bytes) -> Path:
    path = root / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path
