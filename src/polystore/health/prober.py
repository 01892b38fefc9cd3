"""Storage health prober.

Checks every registered backend in parallel on daemon threads, each bounded
by its own timeout. A check reads the backend's stats and, for network-attached
backends, performs a synthetic store/retrieve/delete round trip, since
static capacity numbers say nothing about whether a share still answers.

Probing never raises: every failure becomes a DOWN report. A backend whose
previous check outlived its timeout is reported DOWN without starting another.
"""

from __future__ import annotations

import io
import logging
import threading
import time
import uuid
from collections.abc import Iterable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import UTC, datetime
from typing import Final

from polystore.health.models import HealthReport, HealthSummary, format_bytes
from polystore.storage.backend import StorageBackend
from polystore.storage.errors import StorageError
from polystore.storage.gateway import StorageGateway

logger = logging.getLogger(__name__)

HEALTH_CHECK_KEY_PREFIX: Final[str] = ".health-check-"
HEALTH_CHECK_CONTENT_TYPE: Final[str] = "text/plain"
HEALTH_THREAD_PREFIX: Final[str] = "polystore-health"
DEFAULT_PROBE_TIMEOUT_SECONDS: Final[float] = 10.0
DEFAULT_USAGE_WARNING_PERCENT: Final[float] = 80.0
DEFAULT_USAGE_CRITICAL_PERCENT: Final[float] = 90.0


class StorageHealthProber:
    """Probe storage backends and report UP/DOWN verdicts.

    Args:
        backends: Gateway or backends to probe.
        timeout_seconds: Upper bound on each backend's check.
        usage_warning_percent: Usage above which a warning detail is added.
        usage_critical_percent: Usage above which the backend is DOWN.
    """

    def __init__(
        self,
        backends: StorageGateway | Iterable[StorageBackend],
        *,
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        usage_warning_percent: float = DEFAULT_USAGE_WARNING_PERCENT,
        usage_critical_percent: float = DEFAULT_USAGE_CRITICAL_PERCENT,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        if not 0 < usage_warning_percent <= usage_critical_percent <= 100:
            raise ValueError("usage thresholds must satisfy 0 < warning <= critical <= 100")
        self._source = backends
        self._timeout = timeout_seconds
        self._warning = usage_warning_percent
        self._critical = usage_critical_percent
        self._lock = threading.Lock()
        self._running: dict[StorageBackend, Future[HealthReport]] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def _backends(self) -> tuple[StorageBackend, ...]:
        if isinstance(self._source, StorageGateway):
            return self._source.list()
        return tuple(self._source)

    @property
    def has_pending_checks(self) -> bool:
        """True while a check that outlived its timeout is still running."""
        with self._lock:
            return any(not f.done() for f in self._running.values())

    def probe(self, backend: StorageBackend) -> HealthReport:
        """Check one backend within the timeout."""
        return self._collect(backend, self._start(backend), time.monotonic() + self._timeout)

    def probe_all(self) -> HealthSummary:
        """Check every backend in parallel and aggregate the verdicts."""
        backends = self._backends()
        if not backends:
            logger.error("Health probe found no registered storage backend")
            return HealthSummary.from_reports(())

        deadline = time.monotonic() + self._timeout
        started = [(b, self._start(b)) for b in backends]
        reports = [self._collect(b, f, deadline) for b, f in started]

        summary = HealthSummary.from_reports(reports)
        logger.info(
            "Storage health probe: status=%s up=%d down=%d",
            summary.status,
            sum(1 for r in reports if r.is_up),
            sum(1 for r in reports if not r.is_up),
        )
        return summary

    def _start(self, backend: StorageBackend) -> Future[HealthReport] | None:
        """Run a check on a daemon thread; None while the previous one is still running."""
        with self._lock:
            previous = self._running.get(backend)
            if previous is not None and not previous.done():
                return None
            future: Future[HealthReport] = Future()
            self._running[backend] = future
        thread = threading.Thread(
            target=self._run,
            args=(backend, future),
            name=f"{HEALTH_THREAD_PREFIX}-{backend.backend_name}",
            daemon=True,
        )
        thread.start()
        return future

    def _run(self, backend: StorageBackend, future: Future[HealthReport]) -> None:
        future.set_running_or_notify_cancel()
        try:
            future.set_result(self._check(backend))
        except Exception as e:
            future.set_exception(e)

    def _collect(
        self,
        backend: StorageBackend,
        future: Future[HealthReport] | None,
        deadline: float,
    ) -> HealthReport:
        if future is None:
            message = "previous check still running"
            logger.error("Health probe skipped: backend=%s %s", backend.backend_name, message)
            return self._down(backend, message, {"error": message, "round-trip": "failed"})
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            message = f"timed out after {self._timeout:g} s"
            logger.error("Health probe failed: backend=%s %s", backend.backend_name, message)
            return self._down(backend, message, {"error": message, "round-trip": "failed"})
        except Exception as e:
            logger.exception("Health probe failed: backend=%s", backend.backend_name)
            return self._down(backend, str(e), {"error": f"{type(e).__name__}: {e}"})

    def _down(
        self,
        backend: StorageBackend,
        message: str,
        details: dict[str, str | int],
        duration_ms: float = 0.0,
    ) -> HealthReport:
        return HealthReport(
            storage_type=backend.storage_type,
            backend=backend.backend_name,
            status="DOWN",
            message=message,
            details=details,
            duration_ms=duration_ms,
        )

    def _check(self, backend: StorageBackend) -> HealthReport:
        started = time.monotonic()
        stats = backend.get_stats()
        usage = stats.usage_percentage()
        details: dict[str, str | int] = {
            "total-space": format_bytes(stats.total_space),
            "used-space": format_bytes(stats.used_space),
            "available-space": format_bytes(stats.available_space),
            "file-count": stats.file_count,
            "usage-percentage": f"{usage:.2f}%",
        }

        if not stats.healthy:
            details["error"] = stats.health_message
            details["round-trip"] = "skipped"
            return self._down(
                backend, stats.health_message or "unhealthy", details, _elapsed_ms(started)
            )

        if backend.is_external:
            error = self._round_trip(backend)
            details["round-trip"] = "failed" if error else "passed"
            if error:
                details["error"] = error
                return self._down(
                    backend, f"round trip failed: {error}", details, _elapsed_ms(started)
                )
        else:
            details["round-trip"] = "skipped"

        if usage > self._critical:
            details["error"] = f"usage {usage:.1f}% above {self._critical:g}%"
            return self._down(backend, "usage critical", details, _elapsed_ms(started))

        message = "OK"
        if usage > self._warning:
            details["warning"] = f"usage {usage:.1f}% above {self._warning:g}%"
            message = "usage high"
            logger.warning(
                "Storage usage high: backend=%s usage=%.1f%%", backend.backend_name, usage
            )

        return HealthReport(
            storage_type=backend.storage_type,
            backend=backend.backend_name,
            status="UP",
            message=message,
            details=details,
            duration_ms=_elapsed_ms(started),
        )

    def _round_trip(self, backend: StorageBackend) -> str | None:
        """Store, read back and delete a probe object.

        Returns:
            None when the round trip succeeded, otherwise a description of the failure.
        """
        key = f"{HEALTH_CHECK_KEY_PREFIX}{uuid.uuid4().hex}"
        payload = f"polystore health check {datetime.now(UTC).isoformat()}".encode()
        try:
            backend.store(key, io.BytesIO(payload), len(payload), HEALTH_CHECK_CONTENT_TYPE)
            stream = backend.retrieve(key)
            if stream is None:
                return "probe object missing after store"
            with stream:
                read_back = stream.read()
            if read_back != payload:
                return "probe object content mismatch"
            return None
        except StorageError as e:
            return str(e)
        finally:
            try:
                backend.delete(key)
            except StorageError as e:
                logger.warning(
                    "Failed to delete health probe object: backend=%s error=%s",
                    backend.backend_name,
                    e,
                )


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000.0, 3)
