"""polystore per-owner quota accounting."""

from polystore.quota.errors import (
    InvalidQuotaError,
    QuotaConflictError,
    QuotaError,
    QuotaExceededError,
    QuotaStoreError,
)
from polystore.quota.quota import (
    BYTES_PER_GB,
    BYTES_PER_KB,
    BYTES_PER_MB,
    DEFAULT_QUOTA,
    MAX_QUOTA,
    MIN_QUOTA,
    Quota,
)
from polystore.quota.store import QuotaRecord, SqliteQuotaStore

__all__ = [
    "BYTES_PER_GB",
    "BYTES_PER_KB",
    "BYTES_PER_MB",
    "DEFAULT_QUOTA",
    "InvalidQuotaError",
    "MAX_QUOTA",
    "MIN_QUOTA",
    "Quota",
    "QuotaConflictError",
    "QuotaError",
    "QuotaExceededError",
    "QuotaRecord",
    "QuotaStoreError",
    "SqliteQuotaStore",
]
