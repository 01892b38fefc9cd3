"""polystore storage abstraction.

Provides one streaming storage contract over several media with SHA-256
integrity tracking, a canonical error taxonomy and tracing hooks.

Backends:
- LocalFilesystemStore: Local directory
- NFSStore / SMBStore: Mounted network shares
- S3Store: AWS S3 and S3-compatible services
- WebDAVStore: WebDAV servers
- InMemoryStore: Process-local dict (tests, ephemeral data)
"""

from polystore.storage.backend import StorageBackend, validate_key
from polystore.storage.errors import StorageConfigError, StorageError, StorageErrorKind
from polystore.storage.filesystem_store import LocalFilesystemStore
from polystore.storage.gateway import StorageGateway
from polystore.storage.memory_store import InMemoryStore
from polystore.storage.models import (
    UNBOUNDED_SPACE,
    StorageObjectMetadata,
    StorageOperationResult,
    StorageStats,
    StorageType,
    parse_storage_type,
)
from polystore.storage.nfs_store import NFSStore
from polystore.storage.s3_store import S3Store
from polystore.storage.smb_store import SMBStore
from polystore.storage.webdav_store import WebDAVStore

__all__ = [
    "InMemoryStore",
    "LocalFilesystemStore",
    "NFSStore",
    "S3Store",
    "SMBStore",
    "StorageBackend",
    "StorageConfigError",
    "StorageError",
    "StorageErrorKind",
    "StorageGateway",
    "StorageObjectMetadata",
    "StorageOperationResult",
    "StorageStats",
    "StorageType",
    "UNBOUNDED_SPACE",
    "WebDAVStore",
    "parse_storage_type",
    "validate_key",
]
