"""
OpenTelemetry metrics for batch and task execution.

Instruments are created from the OpenTelemetry metrics API; they only export
data when the application configures an SDK MeterProvider. With
``enable_metrics=False`` every recording method becomes a no-op while the
in-process snapshot keeps counting, which is what the tests assert against.

Example:
    >>> from cloudsql_migrator.metrics import MigrationMetrics
    >>>
    >>> metrics = MigrationMetrics(batch_id="batch_1f2e")
    >>> metrics.record_task_completed(1250.0)
    >>> with metrics.time_phase("Export"):
    ...     await export_databases()

Metrics Exposed:
    - cloudsql_migrator.tasks.completed (Counter): Tasks that succeeded
    - cloudsql_migrator.tasks.failed (Counter): Tasks that failed
    - cloudsql_migrator.tasks.retried (Counter): Tasks run again by the retry pass
    - cloudsql_migrator.tasks.active (Gauge): Tasks currently in flight
    - cloudsql_migrator.task.duration (Histogram): Task duration in milliseconds
    - cloudsql_migrator.phase.duration (Histogram): Engine phase duration in seconds
    - cloudsql_migrator.bytes.transferred (Counter): Bytes exported and imported

All metrics carry the ``batch_id`` attribute.
"""

from __future__ import annotations

import time
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation

# Module-level meter instance
_meter: Any = None


def _get_meter() -> Any:
    """Get or create the meter for the cloudsql_migrator namespace."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("cloudsql_migrator", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the global meter instance.

    Useful for testing to ensure fresh meter state between tests.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class MigrationMetricSnapshot:
    """
    Snapshot of the values recorded so far.

    Attributes:
        tasks_completed: Tasks that succeeded.
        tasks_failed: Task failures (a task failing twice counts twice).
        tasks_retried: Tasks re-run by the retry pass.
        active_tasks: Tasks currently in flight.
        peak_active_tasks: Highest number of tasks in flight at once.
        bytes_transferred: Bytes per direction (``export``/``import``).
        phase_durations: Phase name to total seconds.
        task_durations: Recorded task durations in milliseconds.
    """

    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_retried: int = 0
    active_tasks: int = 0
    peak_active_tasks: int = 0
    bytes_transferred: dict[str, int] = field(default_factory=dict)
    phase_durations: dict[str, float] = field(default_factory=dict)
    task_durations: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_retried": self.tasks_retried,
            "active_tasks": self.active_tasks,
            "peak_active_tasks": self.peak_active_tasks,
            "bytes_transferred": dict(self.bytes_transferred),
            "phase_durations": dict(self.phase_durations),
            "task_durations": list(self.task_durations),
        }


@dataclass
class MigrationMetrics:
    """
    Container for batch and task metric instruments.

    Attributes:
        batch_id: Batch identifier used as metric label (``none`` outside
            of a batch).
        enable_metrics: Whether instruments are created (default True).
    """

    batch_id: str | None = None
    enable_metrics: bool = True

    _tasks_completed_counter: Any = field(default=None, init=False, repr=False)
    _tasks_failed_counter: Any = field(default=None, init=False, repr=False)
    _tasks_retried_counter: Any = field(default=None, init=False, repr=False)
    _task_duration_histogram: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)
    _bytes_counter: Any = field(default=None, init=False, repr=False)

    _completed: int = field(default=0, init=False, repr=False)
    _failed: int = field(default=0, init=False, repr=False)
    _retried: int = field(default=0, init=False, repr=False)
    _active: int = field(default=0, init=False, repr=False)
    _peak_active: int = field(default=0, init=False, repr=False)
    _bytes: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _phase_durations: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _task_durations: list[float] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = _get_meter()

        self._tasks_completed_counter = meter.create_counter(
            name="cloudsql_migrator.tasks.completed",
            unit="tasks",
            description="Number of migration tasks that completed successfully",
        )
        self._tasks_failed_counter = meter.create_counter(
            name="cloudsql_migrator.tasks.failed",
            unit="tasks",
            description="Number of migration task failures",
        )
        self._tasks_retried_counter = meter.create_counter(
            name="cloudsql_migrator.tasks.retried",
            unit="tasks",
            description="Number of tasks run again by the retry pass",
        )
        meter.create_observable_gauge(
            name="cloudsql_migrator.tasks.active",
            callbacks=[self._observe_active_tasks],
            unit="tasks",
            description="Number of migration tasks currently in flight",
        )
        self._task_duration_histogram = meter.create_histogram(
            name="cloudsql_migrator.task.duration",
            unit="ms",
            description="Duration of migration tasks in milliseconds",
        )
        self._phase_duration_histogram = meter.create_histogram(
            name="cloudsql_migrator.phase.duration",
            unit="s",
            description="Time spent in each execution phase in seconds",
        )
        self._bytes_counter = meter.create_counter(
            name="cloudsql_migrator.bytes.transferred",
            unit="By",
            description="Bytes of database data exported and imported",
        )

    def _setup_noop(self) -> None:
        self._tasks_completed_counter = NoOpCounter()
        self._tasks_failed_counter = NoOpCounter()
        self._tasks_retried_counter = NoOpCounter()
        self._task_duration_histogram = NoOpHistogram()
        self._phase_duration_histogram = NoOpHistogram()
        self._bytes_counter = NoOpCounter()

    def _base_attributes(self) -> dict[str, str]:
        return {"batch_id": self.batch_id or "none"}

    def _observe_active_tasks(self, options: CallbackOptions) -> Iterable[Observation]:
        """Callback for the active tasks gauge, called during collection."""
        yield Observation(value=self._active, attributes=self._base_attributes())

    def record_task_started(self) -> None:
        self._active += 1
        self._peak_active = max(self._peak_active, self._active)

    def record_task_completed(self, duration_ms: float) -> None:
        """
        Record a successful task.

        Args:
            duration_ms: Task duration in milliseconds
        """
        attrs = self._base_attributes()
        self._tasks_completed_counter.add(1, attrs)
        self._task_duration_histogram.record(duration_ms, {**attrs, "success": "true"})
        self._active = max(0, self._active - 1)
        self._completed += 1
        self._task_durations.append(duration_ms)

    def record_task_failed(self, duration_ms: float, error_type: str | None = None) -> None:
        """
        Record a failed task.

        Args:
            duration_ms: Time spent before the failure, in milliseconds
            error_type: Exception class name
        """
        attrs = self._base_attributes()
        if error_type:
            attrs["error_type"] = error_type
        self._tasks_failed_counter.add(1, attrs)
        self._task_duration_histogram.record(
            duration_ms, {**self._base_attributes(), "success": "false"}
        )
        self._active = max(0, self._active - 1)
        self._failed += 1
        self._task_durations.append(duration_ms)

    def record_task_retried(self) -> None:
        self._tasks_retried_counter.add(1, self._base_attributes())
        self._retried += 1

    def reset_active(self) -> None:
        """Forget in-flight tasks (used when a batch is cancelled)."""
        self._active = 0

    def record_phase_duration(self, phase: str, duration_seconds: float) -> None:
        """
        Record duration for an execution phase.

        Args:
            phase: Phase name (e.g., 'Export', 'Import')
            duration_seconds: Duration in seconds
        """
        self._phase_duration_histogram.record(
            duration_seconds, {**self._base_attributes(), "phase": phase}
        )
        self._phase_durations[phase] = self._phase_durations.get(phase, 0.0) + duration_seconds

    def record_bytes_transferred(self, size_bytes: int, direction: str) -> None:
        """
        Record bytes moved by the export or import primitive.

        Args:
            size_bytes: Size of the database that was transferred
            direction: ``export`` or ``import``
        """
        self._bytes_counter.add(size_bytes, {**self._base_attributes(), "direction": direction})
        self._bytes[direction] = self._bytes.get(direction, 0) + size_bytes

    @contextmanager
    def time_phase(self, phase: str) -> Generator[None, None, None]:
        """
        Context manager timing an execution phase.

        The duration is recorded when the context exits, including on error.

        Example:
            >>> with metrics.time_phase("Import"):
            ...     await import_databases()
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_phase_duration(phase, time.perf_counter() - start)

    def get_snapshot(self) -> MigrationMetricSnapshot:
        """
        Get a snapshot of current metric values.

        Returns:
            MigrationMetricSnapshot with accumulated values
        """
        return MigrationMetricSnapshot(
            tasks_completed=self._completed,
            tasks_failed=self._failed,
            tasks_retried=self._retried,
            active_tasks=self._active,
            peak_active_tasks=self._peak_active,
            bytes_transferred=dict(self._bytes),
            phase_durations=dict(self._phase_durations),
            task_durations=list(self._task_durations),
        )

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics


__all__ = [
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "reset_meter",
]
