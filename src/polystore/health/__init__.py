"""polystore storage health probing."""

from polystore.health.models import HealthReport, HealthSummary, format_bytes
from polystore.health.prober import StorageHealthProber
from polystore.health.scheduler import HealthProbeScheduler

__all__ = [
    "HealthProbeScheduler",
    "HealthReport",
    "HealthSummary",
    "StorageHealthProber",
    "format_bytes",
]
