"""polystore storage backend interface.

Provides the StorageBackend abstract base class that every backend implements,
plus the key validation and copy/move verification shared by all of them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import BinaryIO, Final

from polystore.storage.checksum import Readable, hash_stream
from polystore.storage.classify import storage_boundary
from polystore.storage.errors import StorageError, StorageErrorKind
from polystore.storage.models import (
    StorageObjectMetadata,
    StorageOperationResult,
    StorageStats,
    StorageType,
)
from polystore.storage.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE: Final[int] = 100 * 1024 * 1024
MAX_KEY_LENGTH: Final[int] = 1024


def validate_key(key: str, *, backend: str | None = None) -> str:
    """Validate a storage key.

    Args:
        key: Key to validate.
        backend: Backend name for error context.

    Returns:
        The key unchanged.

    Raises:
        StorageError: CONFIGURATION_ERROR for empty or over-long keys,
            ACCESS_DENIED for keys with NUL bytes, ".." segments or "//".
    """
    if not isinstance(key, str) or not key.strip():
        raise StorageError(
            StorageErrorKind.CONFIGURATION_ERROR,
            "Storage key cannot be empty",
            backend=backend,
        )
    if len(key) > MAX_KEY_LENGTH:
        raise StorageError(
            StorageErrorKind.CONFIGURATION_ERROR,
            f"Storage key exceeds {MAX_KEY_LENGTH} characters",
            backend=backend,
        )
    if "\x00" in key:
        raise StorageError(
            StorageErrorKind.ACCESS_DENIED,
            "Storage key contains a null byte",
            backend=backend,
        )
    segments = key.replace("\\", "/").split("/")
    if ".." in segments or "//" in key:
        raise StorageError(
            StorageErrorKind.ACCESS_DENIED,
            "Storage key contains a path traversal sequence",
            key=key,
            backend=backend,
        )
    return key


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Backends implement the primitive operations (store, retrieve, delete,
    exists, get_metadata, get_stats). Copy and move are provided here on top
    of them and always verify the destination checksum against the source.
    Backends with a native server-side copy override ``_copy_object``.

    Every public operation raises StorageError only; a missing key is
    reported as None/False, never as an error.

    Args:
        max_file_size: Largest object accepted by store, in bytes.
    """

    def __init__(self, *, max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> None:
        if max_file_size <= 0:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                f"max_file_size must be positive, got {max_file_size}",
            )
        self.max_file_size = max_file_size

    @property
    @abstractmethod
    def storage_type(self) -> StorageType:
        """Return the storage medium of this backend."""
        ...

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier for logs and spans (e.g., "local", "s3")."""
        ...

    @property
    def is_external(self) -> bool:
        """Whether the medium is network-attached (health checks add a round trip)."""
        return False

    @abstractmethod
    def store(
        self,
        key: str,
        stream: Readable,
        length: int | None,
        content_type: str | None,
        *,
        custom_metadata: Mapping[str, str] | None = None,
        overwrite: bool = True,
    ) -> StorageOperationResult:
        """Store content read from a stream.

        Args:
            key: Storage key.
            stream: Binary stream to read the content from.
            length: Declared content length, or None when unknown.
            content_type: MIME type of the content.
            custom_metadata: Free-form string metadata kept with the object.
            overwrite: When False an existing key raises ALREADY_EXISTS.

        Returns:
            Result carrying the size and SHA-256 of the bytes written.

        Raises:
            StorageError: SIZE_EXCEEDED when the declared or streamed size is
                above max_file_size (nothing is published), ALREADY_EXISTS,
                or the classified backend fault.
        """
        ...

    @abstractmethod
    def retrieve(self, key: str) -> BinaryIO | None:
        """Open the content of a key for reading.

        Returns:
            A readable binary stream the caller must close, or None if the
            key does not exist.
        """
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key.

        Returns:
            True if the object was removed, False if it did not exist.
        """
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return whether a key is present."""
        ...

    @abstractmethod
    def get_metadata(self, key: str) -> StorageObjectMetadata | None:
        """Return the descriptor of a key, or None if it does not exist."""
        ...

    @abstractmethod
    def get_stats(self) -> StorageStats:
        """Return a fresh capacity and usage snapshot."""
        ...

    def close(self) -> None:
        """Release resources held by the backend."""

    def validate_key(self, key: str) -> str:
        """Validate a key for this backend."""
        return validate_key(key, backend=self.backend_name)

    def check_declared_size(self, key: str, length: int | None) -> None:
        """Reject a store whose declared length is above max_file_size."""
        if length is not None and length > self.max_file_size:
            raise StorageError(
                StorageErrorKind.SIZE_EXCEEDED,
                f"Declared size {length} exceeds maximum of {self.max_file_size} bytes",
                key=key,
                backend=self.backend_name,
            )

    @traced_storage_operation("copy")
    @storage_boundary("copy")
    def copy(self, source: str, target: str) -> StorageOperationResult:
        """Copy an object to a new key and verify it.

        Args:
            source: Key to copy from.
            target: Key to copy to. Overwritten if present.

        Returns:
            Result for the target key.

        Raises:
            StorageError: NOT_FOUND if the source is missing,
                CHECKSUM_MISMATCH if the copy does not match the source
                (the target is removed).
        """
        self.validate_key(source)
        self.validate_key(target)

        source_meta = self.get_metadata(source)
        if source_meta is None:
            raise StorageError(
                StorageErrorKind.NOT_FOUND,
                "Copy source does not exist",
                key=source,
                backend=self.backend_name,
            )
        expected = source_meta.checksum or self._compute_checksum(source)

        if source == target:
            return StorageOperationResult(
                key=target,
                size=source_meta.size,
                checksum=expected,
                content_type=source_meta.content_type,
                stored_at=datetime.now(UTC),
                storage_path=source_meta.storage_path,
            )

        result = self._copy_object(source, target, source_meta)
        if result.checksum != expected:
            self._discard(target)
            raise StorageError(
                StorageErrorKind.CHECKSUM_MISMATCH,
                f"Copy verification failed: expected {expected}, got {result.checksum}",
                key=target,
                backend=self.backend_name,
            )

        logger.debug(
            "Copied object: backend=%s size=%d checksum=%s",
            self.backend_name,
            result.size,
            result.checksum,
        )
        return result

    @traced_storage_operation("move")
    @storage_boundary("move")
    def move(self, source: str, target: str) -> StorageOperationResult:
        """Move an object: a verified copy followed by deletion of the source.

        If the copy is verified but the source cannot be deleted, both
        objects are left in place and the returned result has
        ``success=False`` with the deletion fault in ``error_message``.

        Raises:
            StorageError: Any error raised by copy. The source is untouched.
        """
        result = self.copy(source, target)
        if source == target:
            return result

        try:
            self.delete(source)
        except StorageError as e:
            logger.warning(
                "Move left a duplicate: backend=%s source delete failed kind=%s",
                self.backend_name,
                e.kind.value,
            )
            return replace(
                result,
                success=False,
                error_message=f"Copied but source could not be deleted: {e}",
            )
        return result

    def _copy_object(
        self,
        source: str,
        target: str,
        source_meta: StorageObjectMetadata,
    ) -> StorageOperationResult:
        """Write a copy of source to target and return the target's result.

        The result checksum must be computed from the bytes that reached the
        target. The default streams the source through store().
        """
        stream = self.retrieve(source)
        if stream is None:
            raise StorageError(
                StorageErrorKind.NOT_FOUND,
                "Copy source disappeared during copy",
                key=source,
                backend=self.backend_name,
            )
        with stream:
            return self.store(
                target,
                stream,
                source_meta.size,
                source_meta.content_type,
                custom_metadata=source_meta.custom_metadata,
            )

    def _compute_checksum(self, key: str) -> str:
        stream = self.retrieve(key)
        if stream is None:
            raise StorageError(
                StorageErrorKind.NOT_FOUND,
                "Object disappeared while computing checksum",
                key=key,
                backend=self.backend_name,
            )
        with stream:
            _, digest = hash_stream(stream)
        return digest

    def _discard(self, key: str) -> None:
        """Best-effort removal of an unverified copy."""
        try:
            self.delete(key)
        except StorageError as e:
            logger.warning(
                "Failed to remove unverified copy: backend=%s kind=%s",
                self.backend_name,
                e.kind.value,
            )
