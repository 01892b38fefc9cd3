"""Tests for streaming checksum helpers."""

from __future__ import annotations

import hashlib
import io

import pytest

from polystore.storage.checksum import (
    CHUNK_SIZE,
    HashingReader,
    compute_sha256,
    copy_and_hash,
    hash_stream,
)
from polystore.storage.errors import StorageError, StorageErrorKind


class TestHashing:
    """Tests for incremental SHA-256 computation."""

    def test_compute_sha256(self) -> None:
        """compute_sha256 should match hashlib."""
        assert compute_sha256(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_hash_stream_multi_chunk(self) -> None:
        """Content larger than one chunk should hash identically to a one-shot digest."""
        data = bytes(range(256)) * (CHUNK_SIZE // 256 * 3 + 7)

        size, digest = hash_stream(io.BytesIO(data))

        assert size == len(data)
        assert digest == hashlib.sha256(data).hexdigest()

    def test_empty_stream(self) -> None:
        """The empty stream should hash to the SHA-256 of b''."""
        assert hash_stream(io.BytesIO(b"")) == (0, hashlib.sha256(b"").hexdigest())

    def test_copy_and_hash_writes_everything(self) -> None:
        """copy_and_hash should copy all bytes and report their digest."""
        data = b"x" * (CHUNK_SIZE + 1)
        dst = io.BytesIO()

        size, digest = copy_and_hash(io.BytesIO(data), dst)

        assert dst.getvalue() == data
        assert size == len(data)
        assert digest == hashlib.sha256(data).hexdigest()


class TestSizeLimit:
    """Tests for the max_bytes limit."""

    def test_exactly_at_limit_allowed(self) -> None:
        """Content of exactly max_bytes should pass."""
        size, _ = copy_and_hash(io.BytesIO(b"a" * 10), io.BytesIO(), max_bytes=10)
        assert size == 10

    def test_over_limit_raises_size_exceeded(self) -> None:
        """Crossing max_bytes should raise SIZE_EXCEEDED with the key."""
        with pytest.raises(StorageError) as exc_info:
            copy_and_hash(io.BytesIO(b"a" * 11), io.BytesIO(), max_bytes=10, key="big.bin")

        assert exc_info.value.kind == StorageErrorKind.SIZE_EXCEEDED
        assert exc_info.value.key == "big.bin"


class TestHashingReader:
    """Tests for the read-through HashingReader."""

    def test_read_all(self) -> None:
        """read() with no size should return everything and hash it."""
        reader = HashingReader(io.BytesIO(b"hello world"))

        assert reader.read() == b"hello world"
        assert reader.bytes_read == 11
        assert reader.hexdigest() == hashlib.sha256(b"hello world").hexdigest()

    def test_partial_reads(self) -> None:
        """Sized reads should accumulate into the same digest."""
        reader = HashingReader(io.BytesIO(b"hello world"))

        parts = [reader.read(4), reader.read(4), reader.read(100), reader.read(4)]

        assert b"".join(parts) == b"hello world"
        assert parts[-1] == b""
        assert reader.hexdigest() == hashlib.sha256(b"hello world").hexdigest()

    def test_not_seekable(self) -> None:
        """Upload helpers must consume the reader sequentially."""
        reader = HashingReader(io.BytesIO(b""))
        assert reader.readable() is True
        assert reader.seekable() is False
