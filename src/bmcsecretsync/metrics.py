"""Sync metrics collector -- in-process counters for the engine.

Records reconciliation passes, backend operations, authentication
attempts and per-credential sync outcomes into a thread-safe store.
``report()`` returns a JSON-serializable snapshot for the daemon's
status API and for debugging.

Every recording method takes plain values, so any object exposing the
same methods can stand in (the engine never depends on this class).

Usage:
    collector = MetricsCollector()
    collector.record_auth("token", "vault", 0.12, None)
    print(collector.report().model_dump_json(indent=2))
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from . import __version__

logger = logging.getLogger("bmcsecretsync.metrics")

RESULT_SUCCESS = "success"
RESULT_ERROR = "error"

_ERROR_CLASSES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("network", ("connection refused", "connection reset", "dial tcp", "no such host",
                 "max retries exceeded", "failed to establish a new connection")),
    ("auth", ("authentication failed", "unauthorized", "permission denied", "forbidden",
              "invalid token")),
    ("not_found", ("not found", "does not exist")),
    ("timeout", ("timeout", "timed out", "deadline exceeded", "context canceled")),
    ("config", ("invalid configuration", "missing", "required")),
)


def classify_error(err: Optional[BaseException]) -> str:
    """Categorize an error by substring matching on its text.

    Args:
        err: The error, or None.

    Returns:
        str: One of network, auth, not_found, timeout, config, unknown
        (or "none" when err is None).
    """
    if err is None:
        return "none"
    text = str(err).lower()
    for error_type, needles in _ERROR_CLASSES:
        if any(needle in text for needle in needles):
            return error_type
    return "unknown"


class MetricsRecorder(Protocol):
    """The recording interface consumed by stores, cache and reconciler."""

    def record_auth(
        self, method: str, backend_type: str, duration: float, error: Optional[BaseException]
    ) -> None: ...

    def record_backend_operation(
        self,
        operation: str,
        backend_type: str,
        duration: float,
        error: Optional[BaseException],
        engine: Optional[str] = None,
    ) -> None: ...


class TimingStats(BaseModel):
    """Count, error count and duration totals for one label set."""

    count: int = 0
    errors: int = 0
    total_seconds: float = 0.0
    max_seconds: float = 0.0

    def observe(self, duration: float, failed: bool = False) -> None:
        self.count += 1
        if failed:
            self.errors += 1
        self.total_seconds += duration
        self.max_seconds = max(self.max_seconds, duration)

    @property
    def mean_seconds(self) -> float:
        return self.total_seconds / self.count if self.count else 0.0


class SecretSyncMetrics(BaseModel):
    """Latest sync outcome for one credential."""

    device_count: int = 0
    success_paths: int = 0
    failed_paths: int = 0
    last_success_at: Optional[datetime] = None


class MetricsReport(BaseModel):
    """Snapshot of everything recorded so far."""

    collected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = __version__
    uptime_seconds: float = 0.0

    reconcile: dict[str, TimingStats] = Field(default_factory=dict)
    reconcile_results: dict[str, int] = Field(default_factory=dict)
    backend_operations: dict[str, TimingStats] = Field(default_factory=dict)
    backend_errors: dict[str, int] = Field(default_factory=dict)
    auth: dict[str, TimingStats] = Field(default_factory=dict)
    discovery: dict[str, TimingStats] = Field(default_factory=dict)
    credential_extraction: dict[str, int] = Field(default_factory=dict)
    secrets: dict[str, SecretSyncMetrics] = Field(default_factory=dict)

    def summary(self) -> str:
        """One-line summary for logging.

        Returns:
            str: Compact status line.
        """
        ok = self.reconcile_results.get(RESULT_SUCCESS, 0)
        failed = self.reconcile_results.get(RESULT_ERROR, 0)
        ops = sum(s.count for s in self.backend_operations.values())
        op_errors = sum(self.backend_errors.values())
        return (
            f"reconcile={ok} ok/{failed} err | backend ops={ops} err={op_errors} "
            f"| secrets={len(self.secrets)}"
        )


class MetricsCollector:
    """Thread-safe in-process implementation of MetricsRecorder."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_time = time.monotonic()
        self._report = MetricsReport()

    # -- reconciliation -----------------------------------------------------

    def record_reconcile_duration(self, operation: str, duration: float) -> None:
        with self._lock:
            self._report.reconcile.setdefault(operation, TimingStats()).observe(duration)

    def record_reconcile_result(self, result: str) -> None:
        with self._lock:
            results = self._report.reconcile_results
            results[result] = results.get(result, 0) + 1

    def record_device_count(self, secret: str, count: int) -> None:
        with self._lock:
            self._report.secrets.setdefault(secret, SecretSyncMetrics()).device_count = count

    def record_sync_status(
        self, secret: str, success_paths: int, failed_paths: int, sync_time: datetime
    ) -> None:
        with self._lock:
            entry = self._report.secrets.setdefault(secret, SecretSyncMetrics())
            entry.success_paths = success_paths
            entry.failed_paths = failed_paths
            if success_paths > 0 and failed_paths == 0:
                entry.last_success_at = sync_time

    def forget_secret(self, secret: str) -> None:
        with self._lock:
            self._report.secrets.pop(secret, None)
            self._report.discovery.pop(secret, None)
            counts = self._report.credential_extraction
            for outcome in (RESULT_SUCCESS, RESULT_ERROR):
                counts.pop(f"{secret}/{outcome}", None)

    def record_discovery(self, secret: str, duration: float) -> None:
        with self._lock:
            self._report.discovery.setdefault(secret, TimingStats()).observe(duration)

    def record_credential_extraction(self, secret: str, error: Optional[BaseException]) -> None:
        result = RESULT_ERROR if error is not None else RESULT_SUCCESS
        key = f"{secret}/{result}"
        with self._lock:
            counts = self._report.credential_extraction
            counts[key] = counts.get(key, 0) + 1

    # -- backend ------------------------------------------------------------

    def record_backend_operation(
        self,
        operation: str,
        backend_type: str,
        duration: float,
        error: Optional[BaseException],
        engine: Optional[str] = None,
    ) -> None:
        key = f"{operation}/{backend_type}" + (f"/{engine}" if engine else "")
        with self._lock:
            self._report.backend_operations.setdefault(key, TimingStats()).observe(
                duration, failed=error is not None
            )
            if error is not None:
                error_key = f"{operation}/{backend_type}/{classify_error(error)}"
                errors = self._report.backend_errors
                errors[error_key] = errors.get(error_key, 0) + 1

    def record_auth(
        self, method: str, backend_type: str, duration: float, error: Optional[BaseException]
    ) -> None:
        if error is not None:
            logger.debug("Auth attempt %s/%s failed: %s", method, backend_type, error)
        with self._lock:
            self._report.auth.setdefault(f"{method}/{backend_type}", TimingStats()).observe(
                duration, failed=error is not None
            )

    # -- reporting ----------------------------------------------------------

    def report(self) -> MetricsReport:
        """Return a deep copy of the current metrics.

        Returns:
            MetricsReport: Snapshot safe to serialize while recording continues.
        """
        with self._lock:
            snapshot = self._report.model_copy(deep=True)
        snapshot.collected_at = datetime.now(timezone.utc)
        snapshot.uptime_seconds = time.monotonic() - self._start_time
        return snapshot
