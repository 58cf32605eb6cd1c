#!/usr/bin/env python3
"""Microsoft Graph implementation of the remote file store."""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote, urlparse

import certifi
import requests
from dateutil import parser as date_parser

from .errors import (
    ConflictError,
    FatalRemoteError,
    NotFoundError,
    RateLimited,
    TransientError,
    Unauthorized,
)
from .fingerprint import normalize_remote_hash
from .logging_config import sanitize_for_log
from .models import RemoteEntry
from .path_utils import SecurityError, join_remote_path, normalize_relative_path
from .remote import ChunkResult, RemoteStore, UploadSessionInfo

logger = logging.getLogger(__name__)

DOWNLOAD_BLOCK_SIZE = 64 * 1024
CONFLICT_BEHAVIOR = '@microsoft.graph.conflictBehavior'

HASH_FIELDS = {
    'sha256': 'sha256Hash',
    'sha1': 'sha1Hash',
    'quickxor': 'quickXorHash',
}


def parse_timestamp(value: Optional[str]) -> Optional[float]:
    """Parse a Graph ISO-8601 timestamp into seconds since epoch."""
    if not value:
        return None
    try:
        return date_parser.isoparse(value).timestamp()
    except (ValueError, OverflowError):
        logger.debug(f"Unparseable timestamp: {value}")
        return None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = date_parser.parse(value)
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
    except (ValueError, OverflowError):
        return None


def parse_next_expected_offset(ranges: List[str]) -> Optional[int]:
    """First byte the upload session still expects, from nextExpectedRanges."""
    if not ranges:
        return None
    start = ranges[0].split('-', 1)[0]
    return int(start)


class GraphRemoteStore(RemoteStore):
    """Remote store backed by the OneDrive (Microsoft Graph) files API."""

    API_BASE = "https://graph.microsoft.com/v1.0"

    def __init__(self, token_provider, remote_root: str = '',
                 hash_algorithm: str = 'sha256', timeout: int = 60,
                 session: Optional[requests.Session] = None):
        """Initialize Graph remote store.

        Args:
            token_provider: Object with get_valid_access_token()
            remote_root: Remote folder mirrored by the sync root
            hash_algorithm: Which Graph file hash to report
            timeout: Seconds per network call
            session: Optional pre-configured requests session
        """
        self.token_provider = token_provider
        self.remote_root = normalize_relative_path(remote_root) if remote_root else ''
        self.hash_algorithm = hash_algorithm
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.verify = certifi.where()  # Explicit certificate validation

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _item_endpoint(self, rel_path: str) -> str:
        full_path = join_remote_path(self.remote_root, rel_path)
        if not full_path:
            return "/me/drive/root"
        return f"/me/drive/root:/{quote(full_path)}:"

    def _children_endpoint(self, rel_path: str) -> str:
        full_path = join_remote_path(self.remote_root, rel_path)
        if not full_path:
            return "/me/drive/root/children"
        return f"/me/drive/root:/{quote(full_path)}:/children"

    def _request(self, method: str, url: str, authenticated: bool = True,
                 **kwargs) -> requests.Response:
        """Send a request and map failures onto the remote error taxonomy."""
        headers = kwargs.pop('headers', {})
        if authenticated:
            headers['Authorization'] = f"Bearer {self.token_provider.get_valid_access_token()}"

        try:
            response = self._session.request(method, url, headers=headers,
                                             timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientError(f"{method} {urlparse(url).path}: {sanitize_for_log(str(e))}") from e
        except requests.exceptions.RequestException as e:
            raise FatalRemoteError(f"{method} {urlparse(url).path}: {sanitize_for_log(str(e))}") from e

        self._raise_for_status(method, url, response)
        return response

    def _api_request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        return self._request(method, f"{self.API_BASE}{endpoint}", **kwargs)

    def _api_request_url(self, url: str, **kwargs) -> requests.Response:
        """Make authenticated GET to a full URL (for pagination).

        Raises:
            SecurityError: If URL is not from trusted Microsoft domain
        """
        parsed = urlparse(url)
        if not (parsed.scheme == 'https' and
                parsed.hostname == 'graph.microsoft.com' and
                parsed.path.startswith('/v1.0/')):
            raise SecurityError(
                f"Untrusted pagination URL: {url} "
                f"(scheme={parsed.scheme}, host={parsed.hostname}, path={parsed.path})"
            )
        return self._request('GET', url, **kwargs)

    @staticmethod
    def _raise_for_status(method: str, url: str, response: requests.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = f"{method} {urlparse(url).path} failed with HTTP {status}"
        try:
            error = response.json().get('error', {})
            if error.get('message'):
                detail += f": {error['message']}"
        except ValueError:
            pass
        detail = sanitize_for_log(detail)

        if status == 401:
            raise Unauthorized(detail, status)
        if status in (429, 503):
            retry_after = parse_retry_after(response.headers.get('Retry-After'))
            raise RateLimited(detail, retry_after=retry_after, status_code=status)
        if status == 404:
            raise NotFoundError(detail, status)
        if status in (409, 412):
            raise ConflictError(detail, etag=response.headers.get('ETag'), status_code=status)
        if status in (408, 416, 500, 502, 504):
            raise TransientError(detail, status)
        raise FatalRemoteError(detail, status)

    def _to_entry(self, rel_path: str, item: Dict[str, Any]) -> RemoteEntry:
        hashes = item.get('file', {}).get('hashes', {})
        raw_hash = hashes.get(HASH_FIELDS.get(self.hash_algorithm, ''))
        modified = (item.get('fileSystemInfo', {}).get('lastModifiedDateTime')
                    or item.get('lastModifiedDateTime'))
        return RemoteEntry(
            path=rel_path,
            hash=normalize_remote_hash(raw_hash, self.hash_algorithm),
            mtime=parse_timestamp(modified),
            size=item.get('size', 0),
            etag=item.get('eTag'),
            item_id=item.get('id'),
            quick_xor_hash=normalize_remote_hash(hashes.get('quickXorHash'), 'quickxor'),
        )

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    def list(self, root: str = '') -> List[RemoteEntry]:
        """Recursively list files below root with pagination support."""
        entries: List[RemoteEntry] = []
        pending = deque([normalize_relative_path(root) if root else ''])
        first = True

        while pending:
            folder = pending.popleft()
            try:
                children = self._list_children(folder)
            except NotFoundError:
                if first:
                    logger.info(f"Remote root does not exist yet: /{self.remote_root}")
                    return []
                raise
            first = False

            for item in children:
                name = item.get('name', '')
                try:
                    rel_path = normalize_relative_path(f"{folder}/{name}" if folder else name)
                except SecurityError as e:
                    logger.warning(f"Skipping unsafe remote path: {e}")
                    continue
                if 'folder' in item:
                    pending.append(rel_path)
                elif 'file' in item:
                    entries.append(self._to_entry(rel_path, item))

        logger.info(f"Listed {len(entries)} remote files")
        return entries

    def _list_children(self, folder: str) -> List[Dict[str, Any]]:
        all_items = []
        response = self._api_request('GET', self._children_endpoint(folder))

        while True:
            data = response.json()
            all_items.extend(data.get('value', []))

            next_link = data.get('@odata.nextLink')
            if not next_link:
                break
            logger.debug(f"Following pagination link, fetched {len(all_items)} items so far")
            response = self._api_request_url(next_link)

        return all_items

    def download(self, path: str) -> Iterator[bytes]:
        response = self._api_request('GET', f"{self._item_endpoint(path)}/content", stream=True)
        return self._stream(path, response)

    @staticmethod
    def _stream(path: str, response: requests.Response) -> Iterator[bytes]:
        try:
            for block in response.iter_content(chunk_size=DOWNLOAD_BLOCK_SIZE):
                if block:
                    yield block
        except requests.exceptions.RequestException as e:
            raise TransientError(f"Download of {path} interrupted: {e}") from e
        finally:
            response.close()

    def upload_small(self, path: str, data: bytes, if_match: Optional[str] = None,
                     create_only: bool = False) -> RemoteEntry:
        headers = {'Content-Type': 'application/octet-stream'}
        if if_match:
            headers['If-Match'] = if_match
        params = {CONFLICT_BEHAVIOR: 'fail'} if create_only else None
        response = self._api_request('PUT', f"{self._item_endpoint(path)}/content",
                                     data=data, headers=headers, params=params)
        logger.info(f"Uploaded: {path} ({len(data)} bytes)")
        return self._to_entry(path, response.json())

    def begin_chunked_upload(self, path: str, total_size: int, if_match: Optional[str] = None,
                             create_only: bool = False) -> UploadSessionInfo:
        headers = {}
        if if_match:
            headers['If-Match'] = if_match
        body = {"item": {CONFLICT_BEHAVIOR: 'fail' if create_only else 'replace'}}
        response = self._api_request('POST', f"{self._item_endpoint(path)}/createUploadSession",
                                     json=body, headers=headers)
        data = response.json()
        logger.info(f"Created upload session for {path} ({total_size} bytes)")
        return UploadSessionInfo(
            upload_url=data['uploadUrl'],
            expires_at=parse_timestamp(data.get('expirationDateTime')),
        )

    @staticmethod
    def _check_upload_url(upload_url: str) -> None:
        if urlparse(upload_url).scheme != 'https':
            raise SecurityError(f"Refusing non-https upload URL: {upload_url}")

    def upload_chunk(self, upload_url: str, offset: int, data: bytes,
                     total_size: int) -> ChunkResult:
        self._check_upload_url(upload_url)
        end = offset + len(data) - 1
        headers = {
            'Content-Length': str(len(data)),
            'Content-Range': f"bytes {offset}-{end}/{total_size}",
        }
        # Upload URLs are pre-authenticated; no bearer token
        response = self._request('PUT', upload_url, authenticated=False,
                                 data=data, headers=headers)

        if response.status_code in (200, 201):
            item = response.json()
            entry = self._to_entry('', item)
            return ChunkResult(accepted_offset=total_size, done=True,
                               final_hash=entry.hash, remote=entry)

        next_offset = parse_next_expected_offset(response.json().get('nextExpectedRanges', []))
        return ChunkResult(accepted_offset=next_offset if next_offset is not None else end + 1)

    def query_upload_session_status(self, upload_url: str) -> int:
        self._check_upload_url(upload_url)
        response = self._request('GET', upload_url, authenticated=False)
        offset = parse_next_expected_offset(response.json().get('nextExpectedRanges', []))
        if offset is None:
            raise NotFoundError("Upload session reports no expected ranges")
        return offset

    def cancel_upload_session(self, upload_url: str) -> None:
        self._check_upload_url(upload_url)
        try:
            self._request('DELETE', upload_url, authenticated=False)
        except NotFoundError:
            pass

    def delete(self, path: str, if_match: Optional[str] = None) -> None:
        headers = {'If-Match': if_match} if if_match else {}
        self._api_request('DELETE', self._item_endpoint(path), headers=headers)
        logger.info(f"Deleted remote file: {path}")
