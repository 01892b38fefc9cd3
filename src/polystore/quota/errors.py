"""polystore quota error types.

Quota violations are a separate hierarchy from StorageError so callers can
tell "insufficient space" apart from a storage outage.
"""

from __future__ import annotations


class QuotaError(Exception):
    """Base class for quota failures.

    Attributes:
        message: Human-readable error message.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidQuotaError(QuotaError):
    """Raised for out-of-bounds quotas, negative sizes or a quota below usage."""


class QuotaExceededError(QuotaError):
    """Raised when adding usage would exceed the quota.

    Attributes:
        quota: Quota in bytes at the time of the attempt.
        used: Usage in bytes at the time of the attempt.
        requested: Bytes that were to be added.
    """

    def __init__(self, quota: int, used: int, requested: int) -> None:
        super().__init__(
            f"Storage quota exceeded: used={used} requested={requested} quota={quota}"
        )
        self.quota = quota
        self.used = used
        self.requested = requested


class QuotaConflictError(QuotaError):
    """Raised when an optimistic quota update keeps losing to concurrent writers.

    Attributes:
        owner_id: Owner whose quota could not be updated.
        attempts: Number of compare-and-set attempts made.
    """

    def __init__(self, owner_id: str, attempts: int) -> None:
        super().__init__(
            f"Quota update for owner {owner_id} lost to concurrent writers {attempts} times"
        )
        self.owner_id = owner_id
        self.attempts = attempts


class QuotaStoreError(QuotaError):
    """Raised when the quota store cannot read or write persisted quotas."""
