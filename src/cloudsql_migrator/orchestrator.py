"""
BatchOrchestrator - Runs every task of a mapping under one batch policy.

A batch goes through five sequential phases:

    Initialization -> Validation -> Execution -> [Consolidation] -> Reporting

Initialization validates the mapping and plans it into Operations stamped
with a shared batch id. Validation asks the tool to validate every operation
concurrently, without a cap; any failure aborts the batch before a single
task runs. Execution runs tasks through a sliding admission window of
``max_parallel`` slots: the moment a task settles its slot is handed to the
next pending task. An optional sequential retry pass follows. Consolidation
only audits N:1 merge batches. Reporting builds the BatchReport.

All bookkeeping is owned by the coroutine running ``execute_batch``: task
coroutines only call the tool, and their outcomes are recorded after
``asyncio.wait`` hands them back. Nothing else writes the tracking
collections, so concurrent completions can never lose updates.

Example:
    >>> orchestrator = BatchOrchestrator(tool, BatchConfig(max_parallel=2))
    >>> report = await orchestrator.execute_batch(mapping, progress_callback=print)
    >>> report.summary.success_rate
    '100.00%'
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from cloudsql_migrator.config import BatchConfig, get_settings
from cloudsql_migrator.exceptions import BatchAbortError, ConfigurationError, ValidationError
from cloudsql_migrator.mapping import MigrationMapping
from cloudsql_migrator.metrics import MigrationMetrics
from cloudsql_migrator.models import (
    ActiveTask,
    BatchProgress,
    BatchReport,
    BatchResult,
    BatchStatus,
    CancelResult,
    ExecutionState,
    MigrationResult,
    Operation,
    ReportMetadata,
    TaskFailure,
    TaskSuccess,
)
from cloudsql_migrator.observability import (
    ATTR_BATCH_ID,
    ATTR_MAPPING_TYPE,
    ATTR_MAX_PARALLEL,
    ATTR_OPERATION_ID,
    ATTR_RETRY,
    ATTR_SOURCE,
    ATTR_STRATEGY,
    ATTR_TARGET,
    ATTR_TASKS_FAILED,
    ATTR_TASKS_SKIPPED,
    ATTR_TASKS_SUCCESSFUL,
    Tracer,
    create_tracer,
)
from cloudsql_migrator.protocols import BatchProgressCallback, Tool
from cloudsql_migrator.types import ConflictResolution, MappingType

logger = logging.getLogger(__name__)

PHASE_INITIALIZATION = "Initialization"
PHASE_VALIDATION = "Validation"
PHASE_EXECUTION = "Execution"
PHASE_CONSOLIDATION = "Consolidation"
PHASE_REPORTING = "Reporting"

BATCH_PHASES = (
    PHASE_INITIALIZATION,
    PHASE_VALIDATION,
    PHASE_EXECUTION,
    PHASE_CONSOLIDATION,
    PHASE_REPORTING,
)


@dataclass
class _InFlight:
    operation: Operation
    started_at: datetime
    started: float

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class BatchOrchestrator:
    """
    Executes a MigrationMapping as a batch of concurrent tasks.

    Args:
        tool: Validates and executes single operations.
        config: Batch policy. When omitted it is read from the mapping
            options, falling back to the process settings.
        tracer: Optional custom Tracer instance.
        metrics: Optional metrics container. A fresh one labelled with the
            batch id is created per batch when omitted.
        enable_tracing: Whether to enable OpenTelemetry tracing, read from
            the settings when None. Ignored if tracer is explicitly provided.

    Example:
        >>> orchestrator = BatchOrchestrator(tool)
        >>> try:
        ...     report = await orchestrator.execute_batch(mapping)
        ... except BatchAbortError as e:
        ...     print(e.result.skipped)
    """

    def __init__(
        self,
        tool: Tool,
        config: BatchConfig | None = None,
        *,
        tracer: Tracer | None = None,
        metrics: MigrationMetrics | None = None,
        enable_tracing: bool | None = None,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._tool = tool
        self._config = config
        self._custom_metrics = metrics
        self._metrics = metrics or MigrationMetrics(enable_metrics=False)

        self._state: ExecutionState | None = None
        self._active: dict[str, _InFlight] = {}
        self._completed: list[str] = []
        self._failed: list[str] = []
        self._pending: deque[Operation] = deque()

    @property
    def state(self) -> ExecutionState | None:
        """State of the current (or last) batch."""
        return self._state

    @property
    def metrics(self) -> MigrationMetrics:
        return self._metrics

    def resolve_config(self, mapping: MigrationMapping) -> BatchConfig:
        """
        Return the batch policy that applies to ``mapping``.

        Raises:
            ConfigurationError: If the mapping options hold an invalid
                batch policy.
        """
        if self._config is not None:
            return self._config
        try:
            return BatchConfig.from_options(
                mapping.options, defaults=BatchConfig.from_settings(get_settings())
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid batch options: {exc}", [str(exc)]) from exc

    async def execute_batch(
        self,
        mapping: MigrationMapping | Mapping[str, Any],
        progress_callback: BatchProgressCallback | None = None,
    ) -> BatchReport:
        """
        Run every task of the mapping.

        Args:
            mapping: The mapping to execute.
            progress_callback: Optional callback receiving BatchProgress
                events. Its exceptions are logged and ignored.

        Returns:
            BatchReport, possibly with failed tasks when ``stop_on_error``
            is disabled.

        Raises:
            ConfigurationError: If the mapping is invalid.
            ValidationError: If any operation fails tool validation.
            BatchAbortError: If a task failed with ``stop_on_error`` set.
                Its ``result`` holds the partial bookkeeping.
        """
        if not isinstance(mapping, MigrationMapping):
            mapping = MigrationMapping.from_dict(mapping)

        config = self.resolve_config(mapping)
        batch_id = f"batch_{uuid4().hex}"
        if self._custom_metrics is None:
            self._metrics = MigrationMetrics(batch_id=batch_id)

        state = ExecutionState(id=batch_id, name="batch-migration")
        state.start(BATCH_PHASES)
        self._state = state
        self._active = {}
        self._completed = []
        self._failed = []
        self._pending = deque()

        def emit(progress: BatchProgress) -> None:
            self._emit(progress_callback, progress)

        with self._tracer.span(
            "cloudsql_migrator.orchestrator.execute_batch",
            {
                ATTR_BATCH_ID: batch_id,
                ATTR_STRATEGY: mapping.strategy_name,
                ATTR_MAPPING_TYPE: mapping.mapping_type.value,
                ATTR_MAX_PARALLEL: config.max_parallel,
            },
        ) as span:
            try:
                report = await self._run(mapping, config, batch_id, state, emit)
            except asyncio.CancelledError:
                phase = state.current_phase
                state.fail(f"Batch cancelled during phase {phase}")
                logger.warning(
                    "Batch %s cancelled in phase %s",
                    batch_id,
                    phase,
                    extra={"batch_id": batch_id, "phase": phase},
                )
                raise
            except Exception as exc:
                state.fail(exc)
                logger.error(
                    "Batch %s failed in phase %s: %s",
                    batch_id,
                    state.current_phase,
                    exc,
                    extra={"batch_id": batch_id, "phase": state.current_phase},
                )
                raise
            summary = report.summary
            span.set_attribute(ATTR_TASKS_SUCCESSFUL, summary.successful)
            span.set_attribute(ATTR_TASKS_FAILED, summary.failed)
            span.set_attribute(ATTR_TASKS_SKIPPED, summary.skipped)

        state.complete(report)
        emit(
            BatchProgress(
                phase="Complete",
                current=summary.total_tasks,
                total=summary.total_tasks,
                status=(
                    f"Batch migration completed: {summary.successful}/"
                    f"{summary.total_tasks} successful"
                ),
                details={"successful": summary.successful, "failed": summary.failed},
            )
        )
        logger.info(
            "Batch %s completed: %d successful, %d failed, %d skipped in %s",
            batch_id,
            summary.successful,
            summary.failed,
            summary.skipped,
            summary.duration_formatted,
            extra={"batch_id": batch_id},
        )
        return report

    async def _run(
        self,
        mapping: MigrationMapping,
        config: BatchConfig,
        batch_id: str,
        state: ExecutionState,
        emit: BatchProgressCallback,
    ) -> BatchReport:
        state.set_current_phase(PHASE_INITIALIZATION)
        operations = self._initialize(mapping, batch_id, emit)

        state.set_current_phase(PHASE_VALIDATION)
        await self._validate_all(operations, emit)

        state.set_current_phase(PHASE_EXECUTION)
        result = BatchResult()
        await self._execute_all(operations, result, config, emit)

        if config.retry_failed and result.failed:
            await self._retry_failed(result, emit)

        if (
            mapping.mapping_type is MappingType.MANY_TO_ONE
            and mapping.conflict_resolution is ConflictResolution.MERGE
        ):
            state.set_current_phase(PHASE_CONSOLIDATION)
            emit(BatchProgress(phase=PHASE_CONSOLIDATION, status="Consolidating databases"))
            for warning in self.consolidate(result.successful):
                state.add_warning(warning)

        state.set_current_phase(PHASE_REPORTING)
        return BatchReport.build(
            result,
            strategy=mapping.strategy_name,
            mapping_type=mapping.mapping_type.value,
            duration_ms=state.duration_ms,
            metadata=ReportMetadata(
                executed_at=datetime.now(UTC),
                coordinator=type(self).__name__,
                max_parallel=config.max_parallel,
                stop_on_error=config.stop_on_error,
                retry_failed=config.retry_failed,
            ),
        )

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _initialize(
        self,
        mapping: MigrationMapping,
        batch_id: str,
        emit: BatchProgressCallback,
    ) -> list[Operation]:
        emit(BatchProgress(phase=PHASE_INITIALIZATION, total=1, status="Preparing batch migration"))

        validation = mapping.validate()
        for warning in validation.warnings:
            logger.warning("Mapping warning: %s", warning, extra={"batch_id": batch_id})
        if not validation.valid:
            raise ConfigurationError(
                f"Invalid mapping configuration: {'; '.join(validation.errors)}",
                list(validation.errors),
            )

        operations = mapping.to_operations(batch_id)
        logger.info(
            "Batch %s initialized: %s strategy, %s mapping, %d migrations",
            batch_id,
            mapping.strategy_name,
            mapping.mapping_type.value,
            len(operations),
            extra={"batch_id": batch_id, "total_tasks": len(operations)},
        )
        emit(
            BatchProgress(
                phase=PHASE_INITIALIZATION,
                current=1,
                total=1,
                status=f"Prepared {len(operations)} migrations",
            )
        )
        return operations

    async def _validate_all(
        self, operations: Sequence[Operation], emit: BatchProgressCallback
    ) -> None:
        total = len(operations)
        emit(BatchProgress(phase=PHASE_VALIDATION, total=total, status="Validating all migrations"))

        outcomes = await asyncio.gather(
            *(self._tool.validate(op) for op in operations),
            return_exceptions=True,
        )

        failures: list[tuple[str, str]] = []
        for op, outcome in zip(operations, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failures.append((op.id, str(outcome)))
            elif not outcome.is_valid:
                failures.append((op.id, "; ".join(outcome.errors) or "Validation failed"))

        if failures:
            for op_id, error in failures:
                logger.error(
                    "Validation failed for %s: %s", op_id, error, extra={"operation_id": op_id}
                )
            raise ValidationError(failures)

        emit(
            BatchProgress(
                phase=PHASE_VALIDATION,
                current=total,
                total=total,
                status="All migrations validated",
            )
        )

    async def _execute_all(
        self,
        operations: Sequence[Operation],
        result: BatchResult,
        config: BatchConfig,
        emit: BatchProgressCallback,
    ) -> None:
        total = len(operations)
        self._pending = deque(operations)
        in_flight: dict[asyncio.Task[MigrationResult], _InFlight] = {}
        abort: BatchAbortError | None = None

        try:
            while self._pending or in_flight:
                while self._pending and abort is None and len(in_flight) < config.max_parallel:
                    op = self._pending.popleft()
                    entry = _InFlight(
                        operation=op, started_at=datetime.now(UTC), started=time.monotonic()
                    )
                    task = asyncio.create_task(self._run_task(op), name=op.id)
                    in_flight[task] = entry
                    self._active[op.id] = entry
                    self._metrics.record_task_started()
                    logger.debug(
                        "Started %s (%d in flight)",
                        op.id,
                        len(in_flight),
                        extra={"operation_id": op.id},
                    )

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    entry = in_flight.pop(task)
                    error = self._record_outcome(task, entry, result)
                    self._emit_task_progress(entry.operation, error, result, total, emit)
                    if error is not None and config.stop_on_error and abort is None:
                        abort = BatchAbortError(entry.operation.id, error)
        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            raise

        if abort is not None:
            result.skipped.extend(self._pending)
            self._pending.clear()
            abort.result = result
            logger.error(
                "%s (%d skipped)",
                abort,
                len(result.skipped),
                extra={"operation_id": abort.operation_id},
            )
            raise abort from abort.original_error

    def _record_outcome(
        self,
        task: asyncio.Task[MigrationResult],
        entry: _InFlight,
        result: BatchResult,
    ) -> BaseException | None:
        op = entry.operation
        duration_ms = entry.elapsed_ms
        self._active.pop(op.id, None)

        if task.cancelled():
            error: BaseException | None = asyncio.CancelledError(
                f"Migration {op.id} was cancelled"
            )
        else:
            error = task.exception()
        if error is None:
            result.successful.append(TaskSuccess(op, task.result(), duration_ms))
            self._completed.append(op.id)
            self._metrics.record_task_completed(duration_ms)
            logger.info(
                "Migration %s completed in %dms",
                op.id,
                duration_ms,
                extra={"operation_id": op.id},
            )
        else:
            result.failed.append(TaskFailure.from_exception(op, error, duration_ms))
            self._failed.append(op.id)
            self._metrics.record_task_failed(duration_ms, type(error).__name__)
            logger.error(
                "Migration %s failed: %s",
                op.id,
                error,
                extra={"operation_id": op.id, "error_type": type(error).__name__},
            )

        if self._state is not None:
            self._state.update_metrics(
                completed=len(result.successful) + len(result.failed),
                successful=len(result.successful),
                failed=len(result.failed),
            )
        return error

    def _emit_task_progress(
        self,
        op: Operation,
        error: BaseException | None,
        result: BatchResult,
        total: int,
        emit: BatchProgressCallback,
    ) -> None:
        status = f"Completed {op.id}" if error is None else f"Failed {op.id}: {error}"
        emit(
            BatchProgress(
                phase=PHASE_EXECUTION,
                current=len(result.successful) + len(result.failed),
                total=total,
                status=status,
                details={"successful": len(result.successful), "failed": len(result.failed)},
            )
        )

    async def _retry_failed(self, result: BatchResult, emit: BatchProgressCallback) -> None:
        failures = list(result.failed)
        logger.info("Retrying %d failed migrations", len(failures))

        for index, failure in enumerate(failures):
            op = failure.operation
            emit(
                BatchProgress(
                    phase="Retry",
                    current=index,
                    total=len(failures),
                    status=f"Retrying {op.id}",
                )
            )
            self._metrics.record_task_retried()
            self._metrics.record_task_started()
            started = time.monotonic()

            try:
                migration = await self._run_task(op, retry=True)
            except Exception as exc:
                duration_ms = int((time.monotonic() - started) * 1000)
                position = result.failed.index(failure)
                result.failed[position] = TaskFailure.from_exception(op, exc, duration_ms)
                self._metrics.record_task_failed(duration_ms, type(exc).__name__)
                logger.warning(
                    "Retry of %s failed: %s",
                    op.id,
                    exc,
                    extra={"operation_id": op.id},
                )
                continue

            duration_ms = int((time.monotonic() - started) * 1000)
            result.failed.remove(failure)
            result.successful.append(TaskSuccess(op, migration, duration_ms))
            self._failed.remove(op.id)
            self._completed.append(op.id)
            self._metrics.record_task_completed(duration_ms)
            logger.info("Retry of %s succeeded", op.id, extra={"operation_id": op.id})

    async def _run_task(self, op: Operation, *, retry: bool = False) -> MigrationResult:
        with self._tracer.span(
            "cloudsql_migrator.orchestrator.task",
            {
                ATTR_OPERATION_ID: op.id,
                ATTR_SOURCE: op.source.label,
                ATTR_TARGET: op.target.label,
                ATTR_RETRY: retry,
            },
        ):
            return await self._tool.execute(op)

    @staticmethod
    def consolidate(successful: Sequence[TaskSuccess]) -> list[str]:
        """
        Audit databases that reached one target from several sources.

        No data is moved; every name observed from more than one source is
        logged and returned as a warning message.
        """
        by_target: dict[str, list[TaskSuccess]] = {}
        for success in successful:
            by_target.setdefault(success.operation.target.key, []).append(success)

        warnings: list[str] = []
        for target, successes in by_target.items():
            if len(successes) < 2:
                continue
            # keyed by source.key so a repeated source -> target path counts once
            sources_by_db: dict[str, dict[str, str]] = {}
            for success in successes:
                source = success.operation.source
                for name in success.result.migrated_databases:
                    sources_by_db.setdefault(name, {})[source.key] = source.label
            for name, labels in sources_by_db.items():
                sources = list(labels.values())
                if len(sources) > 1:
                    message = (
                        f'Database "{name}" was migrated from multiple sources: '
                        f"{', '.join(sources)}"
                    )
                    logger.warning("%s", message, extra={"target": target, "database": name})
                    warnings.append(message)
        return warnings

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def cancel_batch(self) -> CancelResult:
        """
        Forget the in-flight tasks.

        Export and import operations that are already running are not
        interrupted; this only resets the in-flight bookkeeping.
        """
        logger.warning(
            "Cancelling batch: %d in-flight migrations are no longer tracked "
            "and will run to completion",
            len(self._active),
            extra={"active": list(self._active)},
        )
        self._active.clear()
        self._metrics.reset_active()
        return CancelResult(
            cancelled=True,
            completed=len(self._completed),
            failed=len(self._failed),
        )

    def get_status(self) -> BatchStatus:
        """Return a point-in-time snapshot of the batch."""
        return BatchStatus(
            active=len(self._active),
            completed=len(self._completed),
            failed=len(self._failed),
            pending=len(self._pending),
            active_migrations=tuple(
                ActiveTask(id=op_id, started_at=entry.started_at, elapsed_ms=entry.elapsed_ms)
                for op_id, entry in self._active.items()
            ),
        )

    @staticmethod
    def _emit(callback: BatchProgressCallback | None, progress: BatchProgress) -> None:
        if callback is None:
            return
        try:
            callback(progress)
        except Exception:
            logger.warning(
                "Batch progress callback failed for %s",
                progress.phase,
                exc_info=True,
            )


__all__ = [
    "BatchOrchestrator",
    "BATCH_PHASES",
    "PHASE_INITIALIZATION",
    "PHASE_VALIDATION",
    "PHASE_EXECUTION",
    "PHASE_CONSOLIDATION",
    "PHASE_REPORTING",
]
