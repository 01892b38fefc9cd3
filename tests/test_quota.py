"""Tests for the immutable Quota value type.

- hasEnoughSpace is true iff used + n <= quota
- add_usage never exceeds the quota and leaves the original unchanged
- reduce_usage floors at zero
- update_quota rejects values below usage or outside [MIN_QUOTA, MAX_QUOTA]
"""

from __future__ import annotations

import dataclasses

import pytest

from polystore.quota import (
    BYTES_PER_GB,
    DEFAULT_QUOTA,
    MAX_QUOTA,
    MIN_QUOTA,
    InvalidQuotaError,
    Quota,
    QuotaError,
    QuotaExceededError,
)
from polystore.storage.errors import StorageError

TEN_GB = 10_737_418_240
FIVE_GB = 5_368_709_120
NINE_GB = 9_663_676_416


class TestConstruction:
    """Tests for bounds enforced at construction."""

    def test_default_is_ten_gb_unused(self) -> None:
        """Provisioning default should be 10 GiB with nothing used."""
        quota = Quota.default()

        assert quota.quota == DEFAULT_QUOTA == TEN_GB
        assert quota.used == 0

    def test_with_quota_in_gb(self) -> None:
        """with_quota_in_gb should convert GiB to bytes."""
        assert Quota.with_quota_in_gb(20).quota == 20 * BYTES_PER_GB

    @pytest.mark.parametrize("gigabytes", [0, -1, 2048])
    def test_with_quota_in_gb_rejects_out_of_range(self, gigabytes: int) -> None:
        """Zero, negative and above-maximum sizes should be rejected."""
        with pytest.raises(InvalidQuotaError):
            Quota.with_quota_in_gb(gigabytes)

    @pytest.mark.parametrize("value", [MIN_QUOTA - 1, MAX_QUOTA + 1, 0])
    def test_quota_outside_bounds_rejected(self, value: int) -> None:
        """Quota outside [MIN_QUOTA, MAX_QUOTA] should not construct."""
        with pytest.raises(InvalidQuotaError):
            Quota(quota=value)

    def test_used_above_quota_rejected(self) -> None:
        """used > quota should not construct."""
        with pytest.raises(InvalidQuotaError):
            Quota(quota=MIN_QUOTA, used=MIN_QUOTA + 1)

    def test_negative_used_rejected(self) -> None:
        """Negative usage should not construct."""
        with pytest.raises(InvalidQuotaError):
            Quota(used=-1)

    def test_bounds_inclusive(self) -> None:
        """MIN_QUOTA and MAX_QUOTA themselves should be valid."""
        assert Quota(quota=MIN_QUOTA).quota == MIN_QUOTA
        assert Quota(quota=MAX_QUOTA, used=MAX_QUOTA).used == MAX_QUOTA

    def test_is_frozen(self) -> None:
        """Quota instances should be immutable."""
        quota = Quota.default()
        with pytest.raises(dataclasses.FrozenInstanceError):
            quota.used = 1  # type: ignore[misc]


class TestAddUsage:
    """Tests for add_usage and has_enough_space."""

    def test_add_one_gb_to_five_gb(self) -> None:
        """Adding 1 GiB to 5 GiB of 10 GiB should succeed."""
        quota = Quota(quota=TEN_GB, used=FIVE_GB)

        updated = quota.add_usage(1_073_741_824)

        assert updated.used == 6_442_450_944
        assert updated.quota == TEN_GB

    def test_add_two_gb_to_nine_gb_exceeds(self) -> None:
        """Adding 2 GiB to 9 GiB of 10 GiB should fail and leave the value unchanged."""
        quota = Quota(quota=TEN_GB, used=NINE_GB)

        with pytest.raises(QuotaExceededError) as exc_info:
            quota.add_usage(2_147_483_648)

        assert quota.used == NINE_GB
        assert exc_info.value.requested == 2_147_483_648
        assert exc_info.value.used == NINE_GB
        assert exc_info.value.quota == TEN_GB

    def test_add_usage_returns_new_instance(self) -> None:
        """Transitions should never mutate the original."""
        quota = Quota(quota=TEN_GB, used=0)
        updated = quota.add_usage(10)

        assert updated is not quota
        assert quota.used == 0

    def test_fill_exactly_to_quota(self) -> None:
        """Usage may reach the quota exactly."""
        quota = Quota(quota=MIN_QUOTA, used=0)
        assert quota.add_usage(MIN_QUOTA).used == MIN_QUOTA

    @pytest.mark.parametrize("size", [None, -1])
    def test_invalid_size_rejected(self, size: int | None) -> None:
        """None and negative sizes are invalid arguments, not quota overflows."""
        with pytest.raises(InvalidQuotaError):
            Quota.default().add_usage(size)

    @pytest.mark.parametrize(
        ("used", "additional", "expected"),
        [
            (0, 0, True),
            (FIVE_GB, FIVE_GB, True),
            (FIVE_GB, FIVE_GB + 1, False),
            (TEN_GB, 0, True),
            (TEN_GB, 1, False),
        ],
    )
    def test_has_enough_space(self, used: int, additional: int, expected: bool) -> None:
        """has_enough_space(n) should be true iff used + n <= quota."""
        assert Quota(quota=TEN_GB, used=used).has_enough_space(additional) is expected

    @pytest.mark.parametrize("additional", [None, -5])
    def test_has_enough_space_invalid_size_is_false(self, additional: int | None) -> None:
        """Invalid sizes should never be reported as fitting."""
        assert Quota.default().has_enough_space(additional) is False

    def test_quota_errors_are_not_storage_errors(self) -> None:
        """Quota violations are a separate hierarchy from storage faults."""
        assert issubclass(QuotaExceededError, QuotaError)
        assert not issubclass(QuotaExceededError, StorageError)


class TestReduceAndUpdate:
    """Tests for reduce_usage and update_quota."""

    def test_reduce_usage(self) -> None:
        """reduce_usage should subtract the size."""
        assert Quota(quota=TEN_GB, used=FIVE_GB).reduce_usage(1024).used == FIVE_GB - 1024

    def test_reduce_usage_floors_at_zero(self) -> None:
        """Reducing more than used should floor at zero."""
        assert Quota(quota=TEN_GB, used=100).reduce_usage(1000).used == 0

    def test_reduce_negative_rejected(self) -> None:
        """Negative reductions should be rejected."""
        with pytest.raises(InvalidQuotaError):
            Quota.default().reduce_usage(-1)

    def test_update_quota_keeps_usage(self) -> None:
        """update_quota should change capacity and keep usage."""
        updated = Quota(quota=TEN_GB, used=FIVE_GB).update_quota(20 * BYTES_PER_GB)

        assert updated.quota == 20 * BYTES_PER_GB
        assert updated.used == FIVE_GB

    def test_update_quota_below_usage_rejected(self) -> None:
        """A quota below current usage should be rejected."""
        quota = Quota(quota=TEN_GB, used=NINE_GB)
        with pytest.raises(InvalidQuotaError):
            quota.update_quota(2 * BYTES_PER_GB)

    @pytest.mark.parametrize("value", [None, MIN_QUOTA - 1, MAX_QUOTA + 1])
    def test_update_quota_out_of_bounds_rejected(self, value: int | None) -> None:
        """Out-of-bounds capacities should be rejected."""
        with pytest.raises(InvalidQuotaError):
            Quota.default().update_quota(value)


class TestReporting:
    """Tests for ratio, remaining space and formatting."""

    def test_usage_ratio(self) -> None:
        """Half full should report 0.5."""
        assert Quota(quota=TEN_GB, used=FIVE_GB).usage_ratio() == 0.5

    def test_remaining_space(self) -> None:
        """remaining_space should be quota - used."""
        assert Quota(quota=TEN_GB, used=NINE_GB).remaining_space() == TEN_GB - NINE_GB

    def test_is_near_limit(self) -> None:
        """is_near_limit should compare the ratio with the threshold."""
        quota = Quota(quota=TEN_GB, used=NINE_GB)

        assert quota.is_near_limit(0.9) is True
        assert quota.is_near_limit(0.95) is False

    def test_format_info(self) -> None:
        """format_info should render GB with one decimal and the percentage."""
        assert Quota(quota=TEN_GB, used=FIVE_GB).format_info() == "5.0 GB / 10.0 GB (50.0%)"

    def test_dict_roundtrip(self) -> None:
        """to_dict/from_dict should preserve both fields."""
        quota = Quota(quota=TEN_GB, used=12345)
        assert Quota.from_dict(quota.to_dict()) == quota
