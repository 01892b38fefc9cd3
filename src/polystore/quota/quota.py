"""Immutable per-owner storage quota.

Every transition returns a new Quota; instances are never mutated. Callers
that persist a Quota must apply transitions with an atomic read-modify-write
(see polystore.quota.store.SqliteQuotaStore.update).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

from polystore.quota.errors import InvalidQuotaError, QuotaExceededError

BYTES_PER_KB: Final[int] = 1024
BYTES_PER_MB: Final[int] = 1024 * BYTES_PER_KB
BYTES_PER_GB: Final[int] = 1024 * BYTES_PER_MB

DEFAULT_QUOTA: Final[int] = 10 * BYTES_PER_GB
MIN_QUOTA: Final[int] = BYTES_PER_GB
MAX_QUOTA: Final[int] = 1024 * BYTES_PER_GB


def _require_size(n: int | None, what: str) -> int:
    if n is None or n < 0:
        raise InvalidQuotaError(f"{what} must be a non-negative byte count, got {n}")
    return n


@dataclass(frozen=True)
class Quota:
    """Storage capacity and consumption of one owner, in bytes.

    Attributes:
        quota: Capacity, within [MIN_QUOTA, MAX_QUOTA].
        used: Consumption, within [0, quota].

    Raises:
        InvalidQuotaError: If either field is out of range.
    """

    quota: int = DEFAULT_QUOTA
    used: int = 0

    def __post_init__(self) -> None:
        if not MIN_QUOTA <= self.quota <= MAX_QUOTA:
            raise InvalidQuotaError(
                f"quota must be between {MIN_QUOTA} and {MAX_QUOTA} bytes, got {self.quota}"
            )
        if not 0 <= self.used <= self.quota:
            raise InvalidQuotaError(f"used must be between 0 and {self.quota}, got {self.used}")

    @classmethod
    def default(cls) -> Quota:
        """Quota assigned at owner provisioning: 10 GiB, nothing used."""
        return cls(DEFAULT_QUOTA, 0)

    @classmethod
    def with_quota_in_gb(cls, gigabytes: int) -> Quota:
        """Create an unused quota of the given number of GiB."""
        if gigabytes is None or gigabytes <= 0:
            raise InvalidQuotaError(f"quota in GB must be positive, got {gigabytes}")
        return cls(gigabytes * BYTES_PER_GB, 0)

    def has_enough_space(self, additional: int | None) -> bool:
        """True iff ``additional`` more bytes fit; False for None or negative sizes."""
        if additional is None or additional < 0:
            return False
        return self.used + additional <= self.quota

    def add_usage(self, size: int | None) -> Quota:
        """Return a Quota with ``size`` more bytes used.

        Raises:
            InvalidQuotaError: If size is None or negative.
            QuotaExceededError: If the new usage would exceed the quota.
        """
        size = _require_size(size, "size")
        if self.used + size > self.quota:
            raise QuotaExceededError(quota=self.quota, used=self.used, requested=size)
        return Quota(self.quota, self.used + size)

    def reduce_usage(self, size: int | None) -> Quota:
        """Return a Quota with ``size`` fewer bytes used, floored at zero."""
        size = _require_size(size, "size")
        return Quota(self.quota, max(0, self.used - size))

    def update_quota(self, new_quota: int | None) -> Quota:
        """Return a Quota with a new capacity and the same usage.

        Raises:
            InvalidQuotaError: If new_quota is out of bounds or below current usage.
        """
        if new_quota is None or not MIN_QUOTA <= new_quota <= MAX_QUOTA:
            raise InvalidQuotaError(
                f"quota must be between {MIN_QUOTA} and {MAX_QUOTA} bytes, got {new_quota}"
            )
        if new_quota < self.used:
            raise InvalidQuotaError(
                f"new quota {new_quota} is below current usage {self.used}"
            )
        return Quota(new_quota, self.used)

    def usage_ratio(self) -> float:
        if self.quota == 0:
            return 0.0
        return min(1.0, self.used / self.quota)

    def remaining_space(self) -> int:
        return max(0, self.quota - self.used)

    def is_near_limit(self, threshold: float) -> bool:
        return self.usage_ratio() >= threshold

    def format_info(self) -> str:
        """Human-readable summary, e.g. "5.0 GB / 10.0 GB (50.0%)"."""
        return (
            f"{self.used / BYTES_PER_GB:.1f} GB / {self.quota / BYTES_PER_GB:.1f} GB "
            f"({self.usage_ratio() * 100:.1f}%)"
        )

    def to_dict(self) -> dict[str, Any]:
        return {"quota": self.quota, "used": self.used}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Quota:
        return cls(quota=int(data["quota"]), used=int(data.get("used") or 0))
