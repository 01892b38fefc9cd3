"""Fixed-interval background health probing."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from polystore.health.models import HealthSummary
from polystore.health.prober import StorageHealthProber

logger = logging.getLogger(__name__)


class HealthProbeScheduler:
    """Run a prober on a daemon thread at a fixed interval.

    The first cycle runs immediately after start(). The latest summary is
    available from ``latest``; ``on_result`` is called after every cycle and
    its exceptions are logged without stopping the schedule.

    Args:
        prober: Prober to run.
        interval_seconds: Delay between the end of one cycle and the next.
        on_result: Optional callback receiving each summary.
    """

    def __init__(
        self,
        prober: StorageHealthProber,
        interval_seconds: float,
        *,
        on_result: Callable[[HealthSummary], None] | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self._prober = prober
        self._interval = interval_seconds
        self._on_result = on_result
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._latest: HealthSummary | None = None
        self._lock = threading.Lock()

    @property
    def latest(self) -> HealthSummary | None:
        with self._lock:
            return self._latest

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> HealthSummary:
        """Run one probing cycle synchronously."""
        summary = self._prober.probe_all()
        with self._lock:
            self._latest = summary
        if self._on_result is not None:
            try:
                self._on_result(summary)
            except Exception:
                logger.exception("Health result callback failed")
        return summary

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="polystore-health-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Health probe scheduler started: interval=%ss", self._interval)

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to stop and wait up to timeout seconds for it."""
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Health probe scheduler did not stop within %ss", timeout)
            else:
                self._thread = None
        logger.info("Health probe scheduler stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Health probe cycle failed")
            self._stop.wait(self._interval)
