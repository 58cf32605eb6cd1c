"""Abstract interface to the remote file store."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .models import RemoteEntry


@dataclass(frozen=True)
class UploadSessionInfo:
    """Handle returned when a chunked upload session is opened."""

    upload_url: str
    expires_at: Optional[float] = None


@dataclass(frozen=True)
class ChunkResult:
    """Remote acknowledgement of one uploaded chunk."""

    accepted_offset: int
    done: bool = False
    final_hash: Optional[str] = None
    remote: Optional[RemoteEntry] = None


class RemoteStore(ABC):
    """Abstract base class for remote file stores.

    Paths are relative to the configured remote root and use forward
    slashes. Every operation raises one of the RemoteError subclasses
    from odsync.errors on failure. Implementations never retry; the
    transfer executor owns retry policy.

    Hashes are lowercase hex strings computed with ``hash_algorithm``,
    or None when the remote does not report one.
    """

    hash_algorithm = 'sha256'

    @abstractmethod
    def list(self, root: str = '') -> List[RemoteEntry]:
        """List every file below ``root`` recursively.

        Args:
            root: Relative folder to list ('' for the whole remote root)

        Returns:
            One RemoteEntry per file (folders are not returned)
        """
        pass

    @abstractmethod
    def download(self, path: str) -> Iterator[bytes]:
        """Stream the content of a remote file.

        Args:
            path: Relative file path

        Returns:
            Iterator yielding the content in blocks
        """
        pass

    @abstractmethod
    def upload_small(self, path: str, data: bytes, if_match: Optional[str] = None,
                     create_only: bool = False) -> RemoteEntry:
        """Upload a file in a single request.

        Args:
            path: Relative file path
            data: Complete file content
            if_match: eTag the remote item must still have (ConflictError otherwise)
            create_only: Fail with ConflictError if the path already exists

        Returns:
            RemoteEntry of the stored file, including its hash
        """
        pass

    @abstractmethod
    def begin_chunked_upload(self, path: str, total_size: int, if_match: Optional[str] = None,
                             create_only: bool = False) -> UploadSessionInfo:
        """Open a resumable upload session.

        Args:
            path: Relative file path
            total_size: Size of the complete file in bytes
            if_match: eTag the remote item must still have
            create_only: The session fails with ConflictError if the path
                exists by the time it completes

        Returns:
            Session handle and expiry
        """
        pass

    @abstractmethod
    def upload_chunk(self, upload_url: str, offset: int, data: bytes,
                     total_size: int) -> ChunkResult:
        """Upload one chunk starting at ``offset``.

        Args:
            upload_url: Session handle from begin_chunked_upload
            offset: First byte position of this chunk
            data: Chunk content
            total_size: Size of the complete file

        Returns:
            Acknowledged offset and, on the final chunk, the stored hash
        """
        pass

    @abstractmethod
    def query_upload_session_status(self, upload_url: str) -> int:
        """Ask the remote how many bytes of a session it has accepted.

        Raises:
            NotFoundError: If the session no longer exists
        """
        pass

    def cancel_upload_session(self, upload_url: str) -> None:
        """Discard a session the executor will not resume."""
        pass

    @abstractmethod
    def delete(self, path: str, if_match: Optional[str] = None) -> None:
        """Delete a remote file.

        Args:
            path: Relative file path
            if_match: eTag the remote item must still have

        Raises:
            NotFoundError: If the file does not exist
            ConflictError: If the item changed since if_match was listed
        """
        pass
