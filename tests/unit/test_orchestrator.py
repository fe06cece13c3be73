"""
Unit tests for the BatchOrchestrator.

Tests cover:
- Sliding admission window and the max_parallel cap
- stop_on_error (in-flight tasks finish, pending tasks are skipped)
- Failure isolation and the sequential retry pass
- Batch validation and mapping configuration errors
- Consolidation audit of N:1 merge batches
- Progress events, status snapshots and cancellation
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from cloudsql_migrator.config import BatchConfig
from cloudsql_migrator.exceptions import (
    BatchAbortError,
    ConfigurationError,
    TransferError,
    ValidationError,
)
from cloudsql_migrator.metrics import MigrationMetrics
from cloudsql_migrator.models import (
    BatchProgress,
    MigrationResult,
    Operation,
    TaskSuccess,
    TransferMetrics,
)
from cloudsql_migrator.observability import (
    ATTR_ERROR_CODE,
    ATTR_TASKS_FAILED,
    ATTR_TASKS_SKIPPED,
    ATTR_TASKS_SUCCESSFUL,
)
from cloudsql_migrator.orchestrator import BATCH_PHASES, BatchOrchestrator
from cloudsql_migrator.types import ExecutionStatus
from tests.fixtures import FakeTool, endpoint_dict, make_operation


def custom_mapping(count: int, **options: Any) -> dict[str, Any]:
    """Custom mapping of ``count`` independent src-i -> dst-i tasks."""
    return {
        "strategy": "custom-mapping",
        "migrations": [
            {
                "source": endpoint_dict(f"src-{i}", password="s3cret"),
                "target": endpoint_dict(f"dst-{i}"),
                "databases": ["app"],
            }
            for i in range(count)
        ],
        "options": options,
    }


def op_id(index: int) -> str:
    return f"migration_{index}_src-{index}_to_dst-{index}"


def migration_result(op: Operation, databases: tuple[str, ...]) -> MigrationResult:
    return MigrationResult(
        success=True,
        migration_id=f"m_{op.id}",
        duration_ms=10,
        metrics=TransferMetrics(),
        migrated_databases=databases,
        source=op.source.label,
        target=op.target.label,
    )


def make_orchestrator(tool: FakeTool, **config: Any) -> BatchOrchestrator:
    return BatchOrchestrator(
        tool,
        BatchConfig(**config),
        metrics=MigrationMetrics(enable_metrics=False),
        enable_tracing=False,
    )


class TestConcurrency:
    """Tests for the admission window."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_parallel(self):
        tool = FakeTool(delay=0.02)
        orchestrator = make_orchestrator(tool, max_parallel=2)

        report = await orchestrator.execute_batch(custom_mapping(4))

        assert tool.peak == 2
        assert report.summary.successful == 4
        assert report.summary.success_rate == "100.00%"
        assert orchestrator.metrics.get_snapshot().peak_active_tasks == 2

    @pytest.mark.asyncio
    async def test_slot_is_refilled_as_soon_as_a_task_settles(self):
        """A slow task does not hold back the tasks queued behind it."""
        tool = FakeTool(delay=0.02, delays={"src-0": 0.3})
        orchestrator = make_orchestrator(tool, max_parallel=2)

        report = await orchestrator.execute_batch(custom_mapping(4))

        assert [record.id for record in report.successful] == [
            op_id(1),
            op_id(2),
            op_id(3),
            op_id(0),
        ]

    @pytest.mark.asyncio
    async def test_sequential_batch(self):
        tool = FakeTool()
        orchestrator = make_orchestrator(tool, max_parallel=1)

        await orchestrator.execute_batch(custom_mapping(3))

        assert tool.peak == 1
        assert tool.started == [op_id(0), op_id(1), op_id(2)]

    @pytest.mark.asyncio
    async def test_config_from_mapping_options(self):
        """maxParallel in the mapping options applies when no config is given."""
        tool = FakeTool()
        orchestrator = BatchOrchestrator(
            tool, metrics=MigrationMetrics(enable_metrics=False), enable_tracing=False
        )

        report = await orchestrator.execute_batch(custom_mapping(3, maxParallel=1))

        assert tool.peak == 1
        assert report.metadata.max_parallel == 1

    @pytest.mark.asyncio
    async def test_config_from_environment(self, monkeypatch):
        monkeypatch.setenv("CLOUDSQL_MIGRATOR_MAX_PARALLEL", "1")
        orchestrator = BatchOrchestrator(FakeTool(), enable_tracing=False)

        report = await orchestrator.execute_batch(custom_mapping(2))

        assert report.metadata.max_parallel == 1

    @pytest.mark.asyncio
    async def test_zero_max_parallel_in_options_is_rejected(self):
        tool = FakeTool()
        orchestrator = BatchOrchestrator(
            tool, metrics=MigrationMetrics(enable_metrics=False), enable_tracing=False
        )

        with pytest.raises(ConfigurationError, match="max_parallel must be >= 1, got 0"):
            await orchestrator.execute_batch(custom_mapping(2, maxParallel=0))

        assert tool.started == []

    @pytest.mark.asyncio
    async def test_string_flags_in_options(self):
        """stopOnError given as the string "false" keeps the batch going."""
        tool = FakeTool(fail={"src-0"})
        orchestrator = BatchOrchestrator(
            tool, metrics=MigrationMetrics(enable_metrics=False), enable_tracing=False
        )

        report = await orchestrator.execute_batch(
            custom_mapping(2, stopOnError="false", retryFailed="no")
        )

        assert [f.operation.id for f in report.failed] == [op_id(0)]
        assert [s.operation.id for s in report.successful] == [op_id(1)]
        assert tool.attempts["src-0"] == 1


class TestStopOnError:
    """Tests for stop_on_error."""

    @pytest.mark.asyncio
    async def test_pending_tasks_are_skipped(self):
        tool = FakeTool(fail={"src-1"})
        orchestrator = make_orchestrator(tool, max_parallel=1, stop_on_error=True)

        with pytest.raises(BatchAbortError) as exc_info:
            await orchestrator.execute_batch(custom_mapping(4))

        error = exc_info.value
        assert str(error) == (
            f"Stopping batch execution due to failure in {op_id(1)}: "
            "Export failed for database app: dump of src-1 failed"
        )
        assert isinstance(error.__cause__, TransferError)
        assert [s.operation.id for s in error.result.successful] == [op_id(0)]
        assert [f.operation.id for f in error.result.failed] == [op_id(1)]
        assert [op.id for op in error.result.skipped] == [op_id(2), op_id(3)]
        assert tool.attempts["src-2"] == 0
        assert orchestrator.state.status is ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_in_flight_tasks_finish(self):
        """Tasks already running when the failure lands are awaited."""
        tool = FakeTool(delays={"src-0": 0.01, "src-1": 0.1}, fail={"src-0"})
        orchestrator = make_orchestrator(tool, max_parallel=2, stop_on_error=True)

        with pytest.raises(BatchAbortError) as exc_info:
            await orchestrator.execute_batch(custom_mapping(4))

        result = exc_info.value.result
        assert [s.operation.id for s in result.successful] == [op_id(1)]
        assert [op.id for op in result.skipped] == [op_id(2), op_id(3)]
        assert tool.active == 0

    @pytest.mark.asyncio
    async def test_no_retry_after_abort(self):
        tool = FakeTool(fail={"src-0"})
        orchestrator = make_orchestrator(
            tool, max_parallel=1, stop_on_error=True, retry_failed=True
        )

        with pytest.raises(BatchAbortError):
            await orchestrator.execute_batch(custom_mapping(2))

        assert tool.attempts["src-0"] == 1


class TestFailureIsolation:
    """Tests for batches that keep going after failures."""

    @pytest.mark.asyncio
    async def test_failures_are_reported(self):
        tool = FakeTool(fail={"src-1", "src-3"})
        orchestrator = make_orchestrator(
            tool, max_parallel=2, stop_on_error=False, retry_failed=False
        )

        report = await orchestrator.execute_batch(custom_mapping(4))

        assert report.summary.successful == 2
        assert report.summary.failed == 2
        assert report.summary.skipped == 0
        assert report.summary.success_rate == "50.00%"
        assert sorted(record.id for record in report.failed) == [op_id(1), op_id(3)]
        assert report.failed[0].error.startswith("Export failed for database app")
        assert orchestrator.state.status is ExecutionStatus.COMPLETED
        assert orchestrator.state.metrics["failed"] == 2

    @pytest.mark.asyncio
    async def test_retry_recovers_transient_failure(self):
        tool = FakeTool(fail_once={"src-1"})
        events: list[BatchProgress] = []
        orchestrator = make_orchestrator(
            tool, max_parallel=2, stop_on_error=False, retry_failed=True
        )

        report = await orchestrator.execute_batch(custom_mapping(3), events.append)

        assert report.summary.successful == 3
        assert report.summary.failed == 0
        assert tool.attempts["src-1"] == 2
        assert BatchProgress(
            phase="Retry", current=0, total=1, status=f"Retrying {op_id(1)}"
        ) in events
        snapshot = orchestrator.metrics.get_snapshot()
        assert snapshot.tasks_retried == 1
        assert snapshot.tasks_failed == 1
        assert snapshot.tasks_completed == 3
        assert orchestrator.get_status().failed == 0

    @pytest.mark.asyncio
    async def test_retry_runs_once(self):
        tool = FakeTool(fail={"src-0"})
        orchestrator = make_orchestrator(tool, stop_on_error=False, retry_failed=True)

        report = await orchestrator.execute_batch(custom_mapping(2))

        assert tool.attempts["src-0"] == 2
        assert [record.id for record in report.failed] == [op_id(0)]

    @pytest.mark.asyncio
    async def test_task_cancelled_by_the_tool_is_a_failure(self):
        """A task that ends cancelled is recorded without tearing down the batch."""

        class CancellingTool(FakeTool):
            async def execute(self, operation, on_progress=None):
                if operation.source.instance == "src-1":
                    raise asyncio.CancelledError()
                return await super().execute(operation, on_progress)

        orchestrator = make_orchestrator(
            CancellingTool(), stop_on_error=False, retry_failed=False
        )

        report = await orchestrator.execute_batch(custom_mapping(2))

        assert report.summary.successful == 1
        assert [record.id for record in report.failed] == [op_id(1)]
        assert report.failed[0].error == f"Migration {op_id(1)} was cancelled"


class TestBatchSetup:
    """Tests for the Initialization and Validation phases."""

    @pytest.mark.asyncio
    async def test_validation_failure_prevents_execution(self):
        tool = FakeTool(invalid={"src-2"})
        orchestrator = make_orchestrator(tool)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.execute_batch(custom_mapping(4))

        assert exc_info.value.failures == [(op_id(2), "Source connection failed: src-2")]
        assert len(tool.validated) == 4
        assert tool.started == []
        assert orchestrator.state.errors[0].phase == "Validation"

    @pytest.mark.asyncio
    async def test_invalid_mapping(self):
        tool = FakeTool()
        orchestrator = make_orchestrator(tool)

        with pytest.raises(ConfigurationError) as exc_info:
            await orchestrator.execute_batch({"strategy": "custom-mapping"})

        assert str(exc_info.value) == (
            "Invalid mapping configuration: At least one migration mapping is required"
        )
        assert tool.validated == []

    @pytest.mark.asyncio
    async def test_invalid_task_options(self):
        tool = FakeTool()
        orchestrator = make_orchestrator(tool)

        with pytest.raises(ConfigurationError, match="jobs must be >= 1, got 0") as exc_info:
            await orchestrator.execute_batch(custom_mapping(1, jobs=0))

        assert exc_info.value.operation_id == op_id(0)
        assert tool.validated == []

    @pytest.mark.asyncio
    async def test_unknown_strategy(self):
        orchestrator = make_orchestrator(FakeTool())

        with pytest.raises(ConfigurationError, match="Invalid strategy: round-robin"):
            await orchestrator.execute_batch(
                {"strategy": "round-robin", "sources": ["p:a"], "targets": ["p:b"]}
            )

    @pytest.mark.asyncio
    async def test_batch_state_walks_phases(self):
        orchestrator = make_orchestrator(FakeTool())

        await orchestrator.execute_batch(custom_mapping(1))

        state = orchestrator.state
        assert state.id.startswith("batch_")
        assert state.name == "batch-migration"
        assert state.phases == list(BATCH_PHASES)
        assert state.status is ExecutionStatus.COMPLETED
        assert state.current_phase == "Reporting"


class TestConsolidation:
    """Tests for the N:1 merge audit."""

    @pytest.fixture
    def merge_mapping(self) -> dict[str, Any]:
        return {
            "strategy": "consolidate",
            "sources": [endpoint_dict("src-a"), endpoint_dict("src-b")],
            "target": endpoint_dict("shared"),
            "conflictResolution": "merge",
            "options": {"includeAll": True},
        }

    @pytest.mark.asyncio
    async def test_reports_databases_from_several_sources(self, merge_mapping):
        tool = FakeTool(databases={"src-a": ("app", "orders"), "src-b": ("app",)})
        events: list[BatchProgress] = []
        orchestrator = make_orchestrator(tool)

        report = await orchestrator.execute_batch(merge_mapping, events.append)

        assert report.summary.mapping_type == "N:1"
        assert [w.message for w in orchestrator.state.warnings] == [
            'Database "app" was migrated from multiple sources: '
            "acme-prod:src-a, acme-prod:src-b"
        ]
        assert any(event.phase == "Consolidation" for event in events)

    @pytest.mark.asyncio
    async def test_skipped_without_merge_policy(self, merge_mapping):
        merge_mapping["conflictResolution"] = "prefix"
        events: list[BatchProgress] = []
        orchestrator = make_orchestrator(FakeTool())

        await orchestrator.execute_batch(merge_mapping, events.append)

        assert not any(event.phase == "Consolidation" for event in events)
        assert orchestrator.state.warnings == []

    def test_consolidate_groups_by_target(self):
        def success(source: str, target: str, databases: tuple[str, ...]) -> TaskSuccess:
            op = make_operation(source, target)
            return TaskSuccess(op, migration_result(op, databases), 10)

        warnings = BatchOrchestrator.consolidate(
            [
                success("a-db", "shared", ("app",)),
                success("b-db", "other", ("app",)),
                success("c-db", "shared", ("app", "crm")),
            ]
        )

        assert warnings == [
            'Database "app" was migrated from multiple sources: acme-prod:a-db, acme-prod:c-db'
        ]

    def test_consolidate_counts_distinct_sources(self):
        """The same source migrated twice into a target is not a merge."""

        def success(source: str) -> TaskSuccess:
            op = make_operation(source, "shared")
            return TaskSuccess(op, migration_result(op, ("app",)), 10)

        assert BatchOrchestrator.consolidate([success("a-db"), success("a-db")]) == []
        assert len(BatchOrchestrator.consolidate([success("a-db"), success("b-db")])) == 1


class TestProgressAndStatus:
    """Tests for progress events, status snapshots and cancellation."""

    @pytest.mark.asyncio
    async def test_progress_events(self):
        events: list[BatchProgress] = []
        orchestrator = make_orchestrator(FakeTool(), max_parallel=1)

        await orchestrator.execute_batch(custom_mapping(2), events.append)

        assert events[0] == BatchProgress(
            phase="Initialization", total=1, status="Preparing batch migration"
        )
        assert BatchProgress(
            phase="Validation", current=2, total=2, status="All migrations validated"
        ) in events
        execution = [event for event in events if event.phase == "Execution"]
        assert [event.status for event in execution] == [
            f"Completed {op_id(0)}",
            f"Completed {op_id(1)}",
        ]
        assert execution[-1].details == {"successful": 2, "failed": 0}
        assert events[-1].phase == "Complete"
        assert events[-1].status == "Batch migration completed: 2/2 successful"

    @pytest.mark.asyncio
    async def test_failing_callback_is_ignored(self):
        def explode(progress: BatchProgress) -> None:
            raise RuntimeError("progress bar closed")

        orchestrator = make_orchestrator(FakeTool())

        report = await orchestrator.execute_batch(custom_mapping(2), explode)

        assert report.summary.successful == 2

    @pytest.mark.asyncio
    async def test_status_while_running_and_cancel(self):
        """cancel_batch forgets in-flight tasks without interrupting them."""
        tool = FakeTool(delay=0.2)
        orchestrator = make_orchestrator(tool, max_parallel=2)

        running = asyncio.create_task(orchestrator.execute_batch(custom_mapping(4)))
        await asyncio.sleep(0.05)

        status = orchestrator.get_status()
        assert status.active == 2
        assert status.pending == 2
        assert status.completed == 0
        assert {task.id for task in status.active_migrations} == {op_id(0), op_id(1)}

        cancelled = orchestrator.cancel_batch()
        assert cancelled.cancelled is True
        assert cancelled.completed == 0
        assert orchestrator.get_status().active == 0
        assert orchestrator.metrics.get_snapshot().active_tasks == 0

        report = await running
        assert report.summary.successful == 4

    @pytest.mark.asyncio
    async def test_status_after_batch(self):
        orchestrator = make_orchestrator(FakeTool(fail={"src-0"}), stop_on_error=False)

        await orchestrator.execute_batch(custom_mapping(3))

        status = orchestrator.get_status()
        assert status.active == 0
        assert status.pending == 0
        assert status.completed == 2
        assert status.failed == 1

    @pytest.mark.asyncio
    async def test_cancelling_the_batch_cancels_tasks(self):
        tool = FakeTool(delay=1.0)
        orchestrator = make_orchestrator(tool, max_parallel=2)

        running = asyncio.create_task(orchestrator.execute_batch(custom_mapping(2)))
        await asyncio.sleep(0.05)
        running.cancel()

        with pytest.raises(asyncio.CancelledError):
            await running
        assert tool.active == 0
        assert tool.cancelled == 2
        assert orchestrator.state.status is ExecutionStatus.FAILED
        assert orchestrator.state.errors[-1].message == "Batch cancelled during phase Execution"

    @pytest.mark.asyncio
    async def test_traces_batch_and_tasks(self, mock_tracer):
        orchestrator = BatchOrchestrator(
            FakeTool(),
            BatchConfig(max_parallel=2),
            tracer=mock_tracer,
            metrics=MigrationMetrics(enable_metrics=False),
        )

        await orchestrator.execute_batch(custom_mapping(3))

        assert mock_tracer.span_names.count("cloudsql_migrator.orchestrator.execute_batch") == 1
        assert mock_tracer.span_names.count("cloudsql_migrator.orchestrator.task") == 3
        batch_attrs = mock_tracer.spans[0].attributes
        assert batch_attrs["cloudsql_migrator.batch.id"] == orchestrator.state.id
        assert batch_attrs[ATTR_TASKS_SUCCESSFUL] == 3
        assert batch_attrs[ATTR_TASKS_FAILED] == 0
        assert batch_attrs[ATTR_TASKS_SKIPPED] == 0

    @pytest.mark.asyncio
    async def test_failed_task_span(self, mock_tracer):
        orchestrator = BatchOrchestrator(
            FakeTool(fail={"src-1"}),
            BatchConfig(max_parallel=1, stop_on_error=False, retry_failed=False),
            tracer=mock_tracer,
            metrics=MigrationMetrics(enable_metrics=False),
        )

        await orchestrator.execute_batch(custom_mapping(2))

        failed = [span for span in mock_tracer.spans if span.failed]
        assert [span.name for span in failed] == ["cloudsql_migrator.orchestrator.task"]
        assert failed[0].attributes[ATTR_ERROR_CODE] == "TRANSFER_ERROR"
        assert mock_tracer.spans[0].attributes[ATTR_TASKS_FAILED] == 1

