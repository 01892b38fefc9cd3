"""polystore storage gateway.

Read-only registry of the configured backends, keyed by StorageType, with
resolution of the primary backend.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from polystore.storage.backend import StorageBackend
from polystore.storage.errors import StorageError, StorageErrorKind
from polystore.storage.models import StorageType, parse_storage_type

logger = logging.getLogger(__name__)


class StorageGateway:
    """Registry of storage backends.

    The registry is built once, in registration order, and cannot be
    modified afterwards.

    Args:
        backends: Backends to register. At most one per StorageType.
        primary_type: Configured primary type ("local", "s3", "S3_COMPATIBLE", ...).

    Raises:
        StorageError: CONFIGURATION_ERROR if two backends share a type.
    """

    def __init__(
        self,
        backends: Iterable[StorageBackend],
        primary_type: str | StorageType | None = "local",
    ) -> None:
        registry: dict[StorageType, StorageBackend] = {}
        for backend in backends:
            existing = registry.get(backend.storage_type)
            if existing is not None:
                raise StorageError(
                    StorageErrorKind.CONFIGURATION_ERROR,
                    f"Duplicate backend for {backend.storage_type.value}: "
                    f"{existing.backend_name} and {backend.backend_name}",
                    backend=backend.backend_name,
                )
            registry[backend.storage_type] = backend
        self._backends = registry
        self._primary_type = primary_type
        logger.info(
            "Storage gateway built: backends=%s primary=%s",
            ",".join(t.value for t in registry) or "none",
            primary_type,
        )

    def get_primary(self) -> StorageBackend:
        """Resolve the primary backend.

        An unknown or unregistered primary type falls back to the first
        registered backend.

        Raises:
            StorageError: CONFIGURATION_ERROR if no backend is registered.
        """
        if not self._backends:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                "No storage backend is registered",
            )

        wanted = parse_storage_type(self._primary_type)
        if wanted is not None and wanted in self._backends:
            return self._backends[wanted]

        fallback = next(iter(self._backends.values()))
        logger.warning(
            "Primary storage type %r unavailable, falling back to %s",
            self._primary_type,
            fallback.storage_type.value,
        )
        return fallback

    def get_by_type(self, storage_type: str | StorageType) -> StorageBackend | None:
        """Return the backend of a type, or None if it is not registered."""
        resolved = parse_storage_type(storage_type)
        if resolved is None:
            return None
        return self._backends.get(resolved)

    def is_available(self, storage_type: str | StorageType) -> bool:
        return self.get_by_type(storage_type) is not None

    def list(self) -> tuple[StorageBackend, ...]:
        """Return the registered backends in registration order."""
        return tuple(self._backends.values())

    def __len__(self) -> int:
        return len(self._backends)

    def close(self) -> None:
        """Close every backend. Failures are logged so that all backends get closed."""
        for backend in self._backends.values():
            try:
                backend.close()
            except Exception as e:
                logger.error("Failed to close backend %s: %s", backend.backend_name, e)
