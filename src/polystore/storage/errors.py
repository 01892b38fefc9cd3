"""polystore storage error types.

Every fault that escapes a backend is a StorageError carrying exactly one
StorageErrorKind. Backend-native exceptions (OSError, botocore, httpx) are
chained as the cause but never raised past the backend boundary.

Absence is not an error: retrieve/get_metadata return None and delete/exists
return False for a missing key.
"""

from __future__ import annotations

from enum import Enum


class StorageErrorKind(str, Enum):
    """Canonical storage failure kinds."""

    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    INSUFFICIENT_STORAGE = "INSUFFICIENT_STORAGE"
    ACCESS_DENIED = "ACCESS_DENIED"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    IO_ERROR = "IO_ERROR"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    SIZE_EXCEEDED = "SIZE_EXCEEDED"
    UNKNOWN = "UNKNOWN"


class StorageError(Exception):
    """Typed storage failure.

    Attributes:
        kind: Canonical kind of the failure.
        message: Human-readable error message.
        key: Storage key associated with the operation (if applicable).
        backend: Backend identifier that raised the error (if applicable).
        cause: Backend-native exception that was classified (if any).
    """

    def __init__(
        self,
        kind: StorageErrorKind,
        message: str,
        *,
        key: str | None = None,
        backend: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.key = key
        self.backend = backend
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}] {self.message}"]
        if self.backend:
            parts.append(f"backend={self.backend}")
        if self.key:
            parts.append(f"key={self.key}")
        return " ".join(parts)


class StorageConfigError(Exception):
    """Raised when storage settings cannot be loaded or validated.

    Attributes:
        message: Summary of the failure.
        errors: One entry per offending setting.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.message = message
        self.errors = errors or []
        super().__init__(message)
