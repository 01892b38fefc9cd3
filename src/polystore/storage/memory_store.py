"""polystore in-memory storage backend.

Holds objects in a process-local dict. Intended for tests and ephemeral
caches; contents are lost when the process exits.
"""

from __future__ import annotations

import io
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import BinaryIO, Final

from polystore.storage.backend import StorageBackend
from polystore.storage.checksum import Readable, copy_and_hash
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

DEFAULT_MEMORY_MAX_FILE_SIZE: Final[int] = 1024 * 1024
CAPACITY_FACTOR: Final[int] = 1000


@dataclass(frozen=True)
class _Entry:
    data: bytes
    metadata: StorageObjectMetadata


class InMemoryStore(StorageBackend):
    """Dict-backed storage guarded by a lock.

    Args:
        max_file_size: Largest object accepted by store, in bytes.
        capacity_bytes: Upper bound on the total size of all objects.
            Defaults to 1000 times max_file_size.
    """

    def __init__(
        self,
        *,
        max_file_size: int = DEFAULT_MEMORY_MAX_FILE_SIZE,
        capacity_bytes: int | None = None,
    ) -> None:
        super().__init__(max_file_size=max_file_size)
        if capacity_bytes is None:
            capacity_bytes = max_file_size * CAPACITY_FACTOR
        self._capacity = capacity_bytes
        if self._capacity <= 0:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                f"capacity_bytes must be positive, got {self._capacity}",
                backend=self.backend_name,
            )
        self._objects: dict[str, _Entry] = {}
        self._used = 0
        self._lock = threading.Lock()
        logger.info(
            "memory storage initialized: max_file_size=%d capacity=%d",
            self.max_file_size,
            self._capacity,
        )

    @property
    def storage_type(self) -> StorageType:
        return StorageType.IN_MEMORY

    @property
    def backend_name(self) -> str:
        return "memory"

    @property
    def capacity_bytes(self) -> int:
        return self._capacity

    @traced_storage_operation("store")
    @storage_boundary("store")
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
        """Store an object."""
        self.validate_key(key)
        self.check_declared_size(key, length)

        buffer = io.BytesIO()
        size, checksum = copy_and_hash(stream, buffer, max_bytes=self.max_file_size, key=key)
        now = datetime.now(UTC)
        metadata = StorageObjectMetadata(
            key=key,
            size=size,
            content_type=content_type,
            checksum=checksum,
            created_at=now,
            last_modified=now,
            storage_path=f"memory://{key}",
            storage_type=self.storage_type,
            custom_metadata=dict(custom_metadata or {}),
        )

        with self._lock:
            previous = self._objects.get(key)
            if previous is not None and not overwrite:
                raise StorageError(
                    StorageErrorKind.ALREADY_EXISTS,
                    "Object already exists",
                    key=key,
                    backend=self.backend_name,
                )
            freed = previous.metadata.size if previous is not None else 0
            if self._used - freed + size > self._capacity:
                raise StorageError(
                    StorageErrorKind.INSUFFICIENT_STORAGE,
                    f"Storing {size} bytes exceeds capacity of {self._capacity} bytes",
                    key=key,
                    backend=self.backend_name,
                )
            self._objects[key] = _Entry(data=buffer.getvalue(), metadata=metadata)
            self._used += size - freed

        logger.debug("Stored object: backend=memory size=%d sha256=%s", size, checksum)
        return StorageOperationResult(
            key=key,
            size=size,
            checksum=checksum,
            content_type=content_type,
            stored_at=now,
            storage_path=metadata.storage_path,
        )

    @traced_storage_operation("retrieve")
    @storage_boundary("retrieve")
    def retrieve(self, key: str) -> BinaryIO | None:
        """Return a fresh stream over the stored bytes."""
        self.validate_key(key)
        with self._lock:
            entry = self._objects.get(key)
        if entry is None:
            return None
        return io.BytesIO(entry.data)

    @traced_storage_operation("delete")
    @storage_boundary("delete")
    def delete(self, key: str) -> bool:
        """Delete an object."""
        self.validate_key(key)
        with self._lock:
            entry = self._objects.pop(key, None)
            if entry is None:
                return False
            self._used -= entry.metadata.size
        return True

    @traced_storage_operation("exists")
    @storage_boundary("exists")
    def exists(self, key: str) -> bool:
        self.validate_key(key)
        with self._lock:
            return key in self._objects

    @traced_storage_operation("get_metadata")
    @storage_boundary("get_metadata")
    def get_metadata(self, key: str) -> StorageObjectMetadata | None:
        self.validate_key(key)
        with self._lock:
            entry = self._objects.get(key)
        return entry.metadata if entry is not None else None

    @traced_storage_operation("get_stats")
    def get_stats(self) -> StorageStats:
        """Report capacity, bytes held and object count."""
        with self._lock:
            used = self._used
            count = len(self._objects)
        return StorageStats(
            storage_type=self.storage_type,
            total_space=self._capacity,
            used_space=used,
            available_space=max(0, self._capacity - used),
            file_count=count,
            healthy=True,
            health_message="OK",
        )

    def clear(self) -> None:
        """Drop every object."""
        with self._lock:
            self._objects.clear()
            self._used = 0
