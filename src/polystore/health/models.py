"""Typed health report models for storage backends."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from polystore.storage.models import StorageType

HealthStatus = Literal["UP", "DOWN"]
RoundTripResult = Literal["passed", "failed", "skipped"]

_KB = 1024
_UNITS = ("KB", "MB", "GB", "TB")


def format_bytes(n: int) -> str:
    """Format a byte count for humans: "512 B", "1.5 KB", "2.0 GB".

    Negative values denote a capacity the medium does not report.
    """
    if n < 0:
        return "unbounded"
    if n < _KB:
        return f"{n} B"
    value = float(n)
    unit = _UNITS[0]
    for unit in _UNITS:
        value /= _KB
        if value < _KB:
            break
    return f"{value:.1f} {unit}"


class HealthReport(BaseModel):
    """Verdict of one backend probe.

    Details keys: total-space, used-space, available-space, file-count,
    usage-percentage, round-trip, and error/warning when applicable.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    storage_type: StorageType
    backend: str = Field(..., min_length=1)
    status: HealthStatus
    message: str = ""
    details: dict[str, str | int] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_ms: float = Field(default=0.0, ge=0)

    @property
    def is_up(self) -> bool:
        return self.status == "UP"


class HealthSummary(BaseModel):
    """Aggregate of one probing cycle over every registered backend.

    UP only when every report is UP; an empty cycle is DOWN.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    status: HealthStatus
    reports: tuple[HealthReport, ...] = ()
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_reports(cls, reports: Iterable[HealthReport]) -> HealthSummary:
        collected = tuple(reports)
        up = bool(collected) and all(r.is_up for r in collected)
        return cls(status="UP" if up else "DOWN", reports=collected)

    def report_for(self, storage_type: StorageType) -> HealthReport | None:
        for report in self.reports:
            if report.storage_type == storage_type:
                return report
        return None
