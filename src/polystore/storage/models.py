"""polystore storage data models.

Provides the backend type enumeration and the immutable value objects
returned by backend operations.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Final

UNBOUNDED_SPACE: Final[int] = -1


class StorageType(str, Enum):
    """Physical storage medium of a backend."""

    LOCAL_FILESYSTEM = "LOCAL_FILESYSTEM"
    S3_COMPATIBLE = "S3_COMPATIBLE"
    NFS = "NFS"
    SMB_CIFS = "SMB_CIFS"
    WEBDAV = "WEBDAV"
    IN_MEMORY = "IN_MEMORY"


STORAGE_TYPE_ALIASES: Final[dict[str, StorageType]] = {
    "local": StorageType.LOCAL_FILESYSTEM,
    "filesystem": StorageType.LOCAL_FILESYSTEM,
    "s3": StorageType.S3_COMPATIBLE,
    "object": StorageType.S3_COMPATIBLE,
    "nfs": StorageType.NFS,
    "smb": StorageType.SMB_CIFS,
    "cifs": StorageType.SMB_CIFS,
    "webdav": StorageType.WEBDAV,
    "memory": StorageType.IN_MEMORY,
}


def parse_storage_type(value: str | StorageType | None) -> StorageType | None:
    """Resolve a configured storage type string.

    Matching is case-insensitive. Both the aliases ("filesystem", "object", ...)
    and the enum member names ("S3_COMPATIBLE", ...) are accepted.

    Args:
        value: Configured type string or an existing StorageType.

    Returns:
        The matching StorageType, or None if the value is unknown.
    """
    if isinstance(value, StorageType):
        return value
    if value is None:
        return None

    normalized = value.strip().lower()
    if not normalized:
        return None

    alias = STORAGE_TYPE_ALIASES.get(normalized)
    if alias is not None:
        return alias

    try:
        return StorageType(normalized.upper())
    except ValueError:
        return None


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str) and raw:
        return datetime.fromisoformat(raw)
    return datetime.now(UTC)


@dataclass(frozen=True)
class StorageObjectMetadata:
    """Descriptor of stored content.

    Created on the first successful store and replaced wholesale on overwrite.

    Attributes:
        key: Storage key of the object.
        size: Content size in bytes.
        content_type: MIME type of the content.
        checksum: Hex-encoded SHA-256 of the content.
        created_at: When this version of the object was stored.
        last_modified: Last modification time reported by the medium.
        storage_path: Backend-specific location (diagnostic only).
        custom_metadata: Free-form string metadata.
        storage_type: Type of the backend holding the object.
    """

    key: str
    size: int
    content_type: str | None
    checksum: str | None
    created_at: datetime
    last_modified: datetime
    storage_path: str
    storage_type: StorageType
    custom_metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError(f"size must be >= 0, got {self.size}")
        object.__setattr__(self, "custom_metadata", MappingProxyType(dict(self.custom_metadata)))

    def to_dict(self) -> dict[str, Any]:
        """Convert metadata to a JSON-serializable dictionary."""
        return {
            "key": self.key,
            "size": self.size,
            "content_type": self.content_type,
            "checksum": self.checksum,
            "created_at": self.created_at.isoformat(),
            "last_modified": self.last_modified.isoformat(),
            "storage_path": self.storage_path,
            "storage_type": self.storage_type.value,
            "custom_metadata": dict(self.custom_metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StorageObjectMetadata:
        """Create metadata from a dictionary produced by to_dict()."""
        content_type_raw = data.get("content_type")
        checksum_raw = data.get("checksum")
        custom_raw = data.get("custom_metadata") or {}

        return cls(
            key=str(data["key"]),
            size=int(data.get("size") or 0),
            content_type=str(content_type_raw) if content_type_raw else None,
            checksum=str(checksum_raw) if checksum_raw else None,
            created_at=_parse_datetime(data.get("created_at")),
            last_modified=_parse_datetime(data.get("last_modified")),
            storage_path=str(data.get("storage_path") or ""),
            storage_type=StorageType(str(data["storage_type"])),
            custom_metadata={str(k): str(v) for k, v in dict(custom_raw).items()},
        )


@dataclass(frozen=True)
class StorageOperationResult:
    """Outcome of a store, copy or move call.

    Attributes:
        key: Key that was written.
        size: Number of bytes written.
        checksum: Hex-encoded SHA-256 of the written content.
        content_type: MIME type recorded for the content.
        stored_at: Completion time of the operation.
        storage_path: Backend-specific location (diagnostic only).
        success: Whether the operation fully succeeded.
        error_message: Description of what went wrong when success is False.
    """

    key: str
    size: int
    checksum: str | None
    content_type: str | None
    stored_at: datetime
    storage_path: str
    success: bool = True
    error_message: str | None = None


@dataclass(frozen=True)
class StorageStats:
    """Point-in-time capacity and usage snapshot of one backend.

    Capacity fields are UNBOUNDED_SPACE when the medium does not report them.
    """

    storage_type: StorageType
    total_space: int = 0
    used_space: int = 0
    available_space: int = 0
    file_count: int = 0
    healthy: bool = True
    health_message: str = ""

    def usage_percentage(self) -> float:
        """Return used/total as a percentage, 0.0 when total is unknown or zero."""
        if self.total_space <= 0:
            return 0.0
        return self.used_space / self.total_space * 100.0

    def to_dict(self) -> dict[str, Any]:
        """Convert stats to a JSON-serializable dictionary."""
        return {
            "storage_type": self.storage_type.value,
            "total_space": self.total_space,
            "used_space": self.used_space,
            "available_space": self.available_space,
            "file_count": self.file_count,
            "usage_percentage": round(self.usage_percentage(), 2),
            "healthy": self.healthy,
            "health_message": self.health_message,
        }
