"""Content fingerprints for local files."""

import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from functools import reduce
from operator import xor
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

BLOCK_SIZE = 1024 * 1024
SUPPORTED_ALGORITHMS = ('sha256', 'sha1', 'quickxor')


@dataclass(frozen=True)
class Fingerprint:
    """Content hash plus the size/mtime observed while hashing."""

    hash: str
    size: int
    mtime: float


class QuickXorHash:
    """OneDrive's quickXorHash with a hashlib-style interface.

    Each input byte is XORed into a 160-bit register rotated left by
    11 bits per byte position; the total length is XORed into the last
    eight bytes of the little-endian digest.
    """

    WIDTH = 160
    SHIFT = 11
    _MASK = (1 << WIDTH) - 1

    name = 'quickxor'
    digest_size = WIDTH // 8

    def __init__(self, data: bytes = b''):
        self._register = 0
        self._shift = 0
        self._length = 0
        if data:
            self.update(data)

    def update(self, data: bytes) -> None:
        data = bytes(data)
        register = self._register
        # Bytes 160 positions apart land on the same rotation.
        for i in range(min(len(data), self.WIDTH)):
            folded = reduce(xor, data[i::self.WIDTH], 0)
            if not folded:
                continue
            shift = (self._shift + self.SHIFT * i) % self.WIDTH
            value = folded << shift
            register ^= (value & self._MASK) | (value >> self.WIDTH)
        self._register = register
        self._shift = (self._shift + self.SHIFT * len(data)) % self.WIDTH
        self._length += len(data)

    def digest(self) -> bytes:
        raw = bytearray(self._register.to_bytes(self.digest_size, 'little'))
        length = self._length.to_bytes(8, 'little')
        for i, b in enumerate(length):
            raw[self.digest_size - 8 + i] ^= b
        return bytes(raw)

    def hexdigest(self) -> str:
        return self.digest().hex()

    def b64digest(self) -> str:
        return base64.b64encode(self.digest()).decode('ascii')


def new_hasher(algorithm: str):
    """Create a hash object for one of SUPPORTED_ALGORITHMS."""
    if algorithm == 'quickxor':
        return QuickXorHash()
    if algorithm in ('sha256', 'sha1'):
        return hashlib.new(algorithm)
    raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def hash_bytes(data: bytes, algorithm: str = 'sha256') -> str:
    """Hash an in-memory buffer, returning lowercase hex."""
    hasher = new_hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


def normalize_remote_hash(value: Optional[str], algorithm: str) -> Optional[str]:
    """Convert a hash string reported by the remote to lowercase hex.

    Graph reports sha1/sha256 as uppercase hex and quickXorHash as base64.
    """
    if not value:
        return None
    if algorithm == 'quickxor':
        return base64.b64decode(value).hex()
    return value.lower()


class Fingerprinter:
    """Computes fingerprints by folding fixed-size blocks into one hash."""

    def __init__(self, algorithm: str = 'sha256', block_size: int = BLOCK_SIZE):
        new_hasher(algorithm)
        self.algorithm = algorithm
        self.block_size = block_size

    def fingerprint(self, path: Path) -> Fingerprint:
        """Hash a local file.

        Args:
            path: Absolute path of the file

        Returns:
            Fingerprint of the content read

        Raises:
            OSError: If the file disappears or cannot be read mid-hash
        """
        hasher = new_hasher(self.algorithm)
        with open(path, 'rb') as f:
            stat_info = os.fstat(f.fileno())
            while True:
                block = f.read(self.block_size)
                if not block:
                    break
                hasher.update(block)
        return Fingerprint(
            hash=hasher.hexdigest(),
            size=stat_info.st_size,
            mtime=stat_info.st_mtime,
        )

    def hash_bytes(self, data: bytes) -> str:
        return hash_bytes(data, self.algorithm)
