"""Streaming checksum helpers.

Content is hashed incrementally while it is read, so a store never needs the
whole payload in memory.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from typing import BinaryIO, Final, Protocol

from polystore.storage.errors import StorageError, StorageErrorKind

CHECKSUM_ALGORITHM: Final[str] = "sha256"
CHUNK_SIZE: Final[int] = 64 * 1024


class Readable(Protocol):
    def read(self, size: int = -1, /) -> bytes: ...


def compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash of data and return as hex string."""
    return hashlib.sha256(data).hexdigest()


class HashingReader:
    """Read-through wrapper that hashes and counts the bytes it hands out.

    The wrapper is deliberately non-seekable so upload helpers consume it
    sequentially exactly once.

    Args:
        stream: Source stream.
        max_bytes: Optional limit; crossing it raises SIZE_EXCEEDED.
        key: Key used in error messages.
    """

    def __init__(self, stream: Readable, *, max_bytes: int | None = None, key: str | None = None):
        self._stream = stream
        self._max_bytes = max_bytes
        self._key = key
        self._hasher = hashlib.sha256()
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            chunks = []
            while True:
                chunk = self._read_chunk(CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
            return b"".join(chunks)
        return self._read_chunk(size)

    def _read_chunk(self, size: int) -> bytes:
        chunk = self._stream.read(size)
        if not chunk:
            return b""
        self.bytes_read += len(chunk)
        if self._max_bytes is not None and self.bytes_read > self._max_bytes:
            raise StorageError(
                StorageErrorKind.SIZE_EXCEEDED,
                f"Content exceeds maximum size of {self._max_bytes} bytes",
                key=self._key,
            )
        self._hasher.update(chunk)
        return chunk

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the remaining content in chunks, hashing as it goes."""
        while True:
            chunk = self._read_chunk(chunk_size)
            if not chunk:
                return
            yield chunk

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def hexdigest(self) -> str:
        """Hex digest of everything read so far."""
        return self._hasher.hexdigest()


def copy_and_hash(
    src: Readable,
    dst: BinaryIO,
    *,
    max_bytes: int | None = None,
    key: str | None = None,
) -> tuple[int, str]:
    """Copy src into dst chunk by chunk.

    Returns:
        Tuple of (bytes written, hex sha256 of the bytes written).

    Raises:
        StorageError: SIZE_EXCEEDED if more than max_bytes were read.
    """
    reader = HashingReader(src, max_bytes=max_bytes, key=key)
    for chunk in reader.iter_chunks():
        dst.write(chunk)
    return reader.bytes_read, reader.hexdigest()


def hash_stream(stream: Readable) -> tuple[int, str]:
    """Hash a stream to exhaustion, returning (size, hex sha256)."""
    reader = HashingReader(stream)
    for _ in reader.iter_chunks():
        pass
    return reader.bytes_read, reader.hexdigest()
