"""polystore local filesystem storage backend.

Objects are sharded by the SHA-256 of their key, so any valid key maps to a
safe fixed-depth path:

    {root}/{digest[0:2]}/{digest[2:4]}/
        {digest}.data        # content
        {digest}.meta.json   # metadata sidecar

Content is written to a uniquely named temp file in the shard directory and
published with an atomic rename, so readers never observe a partial object.
With ``overwrite=False`` the temp file is hard-linked into place instead,
which fails when another writer published the key first.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE, StorageBackend
from polystore.storage.checksum import Readable, copy_and_hash, hash_stream
from polystore.storage.classify import classified_stream, storage_boundary
from polystore.storage.errors import StorageError, StorageErrorKind
from polystore.storage.models import (
    StorageObjectMetadata,
    StorageOperationResult,
    StorageStats,
    StorageType,
)
from polystore.storage.tracing import key_digest, traced_storage_operation

logger = logging.getLogger(__name__)

_CONTENT_SUFFIX = ".data"
_METADATA_SUFFIX = ".meta.json"
_TMP_SUFFIX = ".tmp"
_LINK_UNSUPPORTED = frozenset({errno.EPERM, errno.EOPNOTSUPP, errno.ENOTSUP, errno.EMLINK})


class LocalFilesystemStore(StorageBackend):
    """Filesystem-based storage implementation.

    Args:
        root_dir: Directory holding the objects. Created if missing.
        max_file_size: Largest object accepted by store, in bytes.
    """

    def __init__(
        self,
        root_dir: str | Path,
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        super().__init__(max_file_size=max_file_size)
        self._root = Path(root_dir).expanduser().resolve()
        self._prepare_root()
        logger.info(
            "%s storage initialized: root=%s max_file_size=%d",
            self.backend_name,
            self._root,
            self.max_file_size,
        )

    @property
    def storage_type(self) -> StorageType:
        return StorageType.LOCAL_FILESYSTEM

    @property
    def backend_name(self) -> str:
        return "local"

    @property
    def root_dir(self) -> Path:
        """Return the directory holding the objects."""
        return self._root

    def _prepare_root(self) -> None:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                f"Cannot create storage root: {e}",
                backend=self.backend_name,
                cause=e,
            ) from e

    def _ensure_ready(self) -> None:
        """Hook run before every operation; mounted stores check the mount here."""

    def _extra_metadata(self) -> dict[str, str]:
        """Entries merged into custom_metadata returned by get_metadata."""
        return {}

    def _paths(self, key: str) -> tuple[Path, Path, Path]:
        """Return (shard directory, content path, sidecar path) of a key."""
        digest = key_digest(key)
        shard = self._root / digest[0:2] / digest[2:4]
        return shard, shard / f"{digest}{_CONTENT_SUFFIX}", shard / f"{digest}{_METADATA_SUFFIX}"

    def _relative(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    def _write_temp(self, shard: Path, key: str, stream: Readable) -> tuple[Path, int, str]:
        """Stream content into a fresh temp file in the shard directory.

        Returns:
            Tuple of (temp path, size, sha256). The caller publishes or removes it.
        """
        shard.mkdir(parents=True, exist_ok=True)
        tmp_path = shard / f".{uuid.uuid4().hex}{_TMP_SUFFIX}"
        try:
            with open(tmp_path, "xb") as f:
                size, checksum = copy_and_hash(
                    stream, f, max_bytes=self.max_file_size, key=key
                )
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path, size, checksum

    def _write_sidecar(self, shard: Path, meta_path: Path, metadata: StorageObjectMetadata) -> None:
        tmp_path = shard / f".{uuid.uuid4().hex}.meta{_TMP_SUFFIX}"
        try:
            tmp_path.write_text(json.dumps(metadata.to_dict(), indent=2), encoding="utf-8")
            tmp_path.replace(meta_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def _publish_new(self, key: str, tmp_path: Path, data_path: Path) -> None:
        """Move tmp_path to data_path unless data_path exists, atomically where possible.

        os.link refuses an existing name, so of two racing writers only one
        succeeds. Shares without hard links fall back to a check followed by
        a rename.
        """
        try:
            os.link(tmp_path, data_path)
        except FileExistsError as e:
            raise StorageError(
                StorageErrorKind.ALREADY_EXISTS,
                "Object already exists",
                key=key,
                backend=self.backend_name,
            ) from e
        except OSError as e:
            if e.errno not in _LINK_UNSUPPORTED:
                raise
            logger.debug("Hard links unsupported: backend=%s", self.backend_name)
            if data_path.exists():
                raise StorageError(
                    StorageErrorKind.ALREADY_EXISTS,
                    "Object already exists",
                    key=key,
                    backend=self.backend_name,
                ) from e
            os.replace(tmp_path, data_path)
            return
        tmp_path.unlink()

    def _publish(
        self,
        key: str,
        tmp_path: Path,
        size: int,
        checksum: str,
        content_type: str | None,
        custom_metadata: Mapping[str, str] | None,
        *,
        overwrite: bool = True,
    ) -> StorageOperationResult:
        shard, data_path, meta_path = self._paths(key)
        now = datetime.now(UTC)
        storage_path = self._relative(data_path)
        metadata = StorageObjectMetadata(
            key=key,
            size=size,
            content_type=content_type,
            checksum=checksum,
            created_at=now,
            last_modified=now,
            storage_path=storage_path,
            storage_type=self.storage_type,
            custom_metadata=dict(custom_metadata or {}),
        )
        if overwrite:
            os.replace(tmp_path, data_path)
        else:
            self._publish_new(key, tmp_path, data_path)
        self._write_sidecar(shard, meta_path, metadata)
        return StorageOperationResult(
            key=key,
            size=size,
            checksum=checksum,
            content_type=content_type,
            stored_at=now,
            storage_path=storage_path,
        )

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
        self._ensure_ready()

        shard, data_path, _ = self._paths(key)
        if not overwrite and data_path.exists():
            raise StorageError(
                StorageErrorKind.ALREADY_EXISTS,
                "Object already exists",
                key=key,
                backend=self.backend_name,
            )

        tmp_path, size, checksum = self._write_temp(shard, key, stream)
        try:
            result = self._publish(
                key,
                tmp_path,
                size,
                checksum,
                content_type,
                custom_metadata,
                overwrite=overwrite,
            )
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.debug(
            "Stored object: backend=%s path=%s size=%d sha256=%s",
            self.backend_name,
            result.storage_path,
            size,
            checksum,
        )
        return result

    @traced_storage_operation("retrieve")
    @storage_boundary("retrieve")
    def retrieve(self, key: str) -> BinaryIO | None:
        """Open an object for reading."""
        self.validate_key(key)
        self._ensure_ready()
        _, data_path, _ = self._paths(key)
        try:
            handle = open(data_path, "rb")
        except FileNotFoundError:
            return None
        return classified_stream(handle, key=key, backend=self.backend_name)

    @traced_storage_operation("delete")
    @storage_boundary("delete")
    def delete(self, key: str) -> bool:
        """Delete an object and its sidecar."""
        self.validate_key(key)
        self._ensure_ready()
        _, data_path, meta_path = self._paths(key)
        try:
            data_path.unlink()
        except FileNotFoundError:
            return False
        meta_path.unlink(missing_ok=True)
        logger.debug(
            "Deleted object: backend=%s path=%s", self.backend_name, self._relative(data_path)
        )
        return True

    @traced_storage_operation("exists")
    @storage_boundary("exists")
    def exists(self, key: str) -> bool:
        """Check whether an object exists."""
        self.validate_key(key)
        self._ensure_ready()
        _, data_path, _ = self._paths(key)
        try:
            data_path.stat()
        except FileNotFoundError:
            return False
        return True

    @traced_storage_operation("get_metadata")
    @storage_boundary("get_metadata")
    def get_metadata(self, key: str) -> StorageObjectMetadata | None:
        """Read object metadata from its sidecar.

        Objects without a readable sidecar fall back to file attributes and a
        computed checksum.
        """
        self.validate_key(key)
        self._ensure_ready()
        _, data_path, meta_path = self._paths(key)
        try:
            st = data_path.stat()
        except FileNotFoundError:
            return None

        last_modified = datetime.fromtimestamp(st.st_mtime, UTC)
        extra = self._extra_metadata()
        try:
            raw = json.loads(meta_path.read_text(encoding="utf-8"))
            stored = StorageObjectMetadata.from_dict(raw)
        except FileNotFoundError:
            stored = None
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(
                "Unreadable metadata sidecar, recomputing: backend=%s path=%s error=%s",
                self.backend_name,
                self._relative(meta_path),
                e,
            )
            stored = None

        if stored is not None:
            return StorageObjectMetadata(
                key=key,
                size=st.st_size,
                content_type=stored.content_type,
                checksum=stored.checksum,
                created_at=stored.created_at,
                last_modified=last_modified,
                storage_path=self._relative(data_path),
                storage_type=self.storage_type,
                custom_metadata={**stored.custom_metadata, **extra},
            )

        with open(data_path, "rb") as f:
            size, checksum = hash_stream(f)
        return StorageObjectMetadata(
            key=key,
            size=size,
            content_type=None,
            checksum=checksum,
            created_at=datetime.fromtimestamp(st.st_ctime, UTC),
            last_modified=last_modified,
            storage_path=self._relative(data_path),
            storage_type=self.storage_type,
            custom_metadata=extra,
        )

    def _copy_object(
        self,
        source: str,
        target: str,
        source_meta: StorageObjectMetadata,
    ) -> StorageOperationResult:
        """Copy into a temp file and publish it only if its checksum matches."""
        _, source_path, _ = self._paths(source)
        target_shard, _, _ = self._paths(target)
        share_keys = self._extra_metadata().keys()
        custom = {k: v for k, v in source_meta.custom_metadata.items() if k not in share_keys}
        with open(source_path, "rb") as src:
            tmp_path, size, checksum = self._write_temp(target_shard, target, src)
        try:
            if source_meta.checksum is not None and checksum != source_meta.checksum:
                raise StorageError(
                    StorageErrorKind.CHECKSUM_MISMATCH,
                    f"Copy verification failed: expected {source_meta.checksum}, got {checksum}",
                    key=target,
                    backend=self.backend_name,
                )
            return self._publish(
                target,
                tmp_path,
                size,
                checksum,
                source_meta.content_type,
                custom,
            )
        finally:
            tmp_path.unlink(missing_ok=True)

    @traced_storage_operation("get_stats")
    def get_stats(self) -> StorageStats:
        """Report disk capacity of the root and the number of stored objects.

        Failures are reported as an unhealthy snapshot rather than raised.
        """
        try:
            self._ensure_ready()
            usage = shutil.disk_usage(self._root)
            file_count = sum(1 for _ in self._root.rglob(f"*{_CONTENT_SUFFIX}"))
        except (OSError, StorageError) as e:
            logger.error("Failed to collect stats: backend=%s error=%s", self.backend_name, e)
            return StorageStats(
                storage_type=self.storage_type,
                healthy=False,
                health_message=str(e),
            )

        return StorageStats(
            storage_type=self.storage_type,
            total_space=usage.total,
            used_space=usage.used,
            available_space=usage.free,
            file_count=file_count,
            healthy=True,
            health_message="OK",
        )
