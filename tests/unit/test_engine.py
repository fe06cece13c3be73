"""
Unit tests for the ExecutionEngine.

Tests cover:
- Phase ordering and progress reporting
- Discovery filtering and system database exclusion
- Pre-flight and post-migration connectivity failures
- Export/import failures, cleanup on failure, cleanup errors
- Users & roles phase (non-fatal failures, permissions gating)
- Single use of an engine
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

import pytest

from cloudsql_migrator.engine import (
    PHASE_APPLY_PERMISSIONS,
    PHASE_CLEANUP,
    PHASE_DISCOVERY,
    PHASE_EXPORT,
    PHASE_IMPORT,
    PHASE_POST_VALIDATION,
    PHASE_PREFLIGHT,
    PHASE_USERS_ROLES,
    PHASE_VALIDATION,
    ExecutionEngine,
    planned_phases,
    select_databases,
)
from cloudsql_migrator.exceptions import (
    CleanupWarning,
    ConfigurationError,
    ConnectivityError,
    ExecutionStateError,
    PermissionApplyError,
    TransferError,
)
from cloudsql_migrator.metrics import MigrationMetrics
from cloudsql_migrator.models import DatabaseInfo, Endpoint, ScriptApplyResult, StatementFailure
from cloudsql_migrator.observability import (
    ATTR_DATABASE_COUNT,
    ATTR_ERROR_CODE,
    ATTR_ERROR_TYPE,
    ATTR_PHASE,
)
from cloudsql_migrator.types import ExecutionStatus
from tests.fixtures import (
    MB,
    FakeExporter,
    FakeImporter,
    FakePermissions,
    InMemoryConnectionProvider,
    make_operation,
)


class RaisingProgressSink:
    """Progress sink whose every call raises, like a closed renderer."""

    def start_phase(self, name, total):
        raise RuntimeError("renderer closed")

    def update(self, current, status=None, size_bytes=0):
        raise RuntimeError("renderer closed")

    def complete_phase(self, summary=None):
        raise RuntimeError("renderer closed")

    def status(self, message, level="info"):
        raise RuntimeError("renderer closed")


ALL_PHASES = [
    PHASE_VALIDATION,
    PHASE_DISCOVERY,
    PHASE_PREFLIGHT,
    PHASE_EXPORT,
    PHASE_IMPORT,
    PHASE_POST_VALIDATION,
    PHASE_CLEANUP,
]


def make_engine(connections, exporter, importer, progress=None, **kwargs) -> ExecutionEngine:
    kwargs.setdefault("enable_tracing", False)
    return ExecutionEngine(connections, exporter, importer, progress, **kwargs)


class TestPlannedPhases:
    """Tests for the phase plan."""

    def test_without_users_roles(self):
        """Optional phases are left out by default."""
        assert planned_phases(False) == ALL_PHASES

    def test_with_users_roles(self):
        """Users & roles setup precedes export, permissions follow import."""
        phases = planned_phases(True)
        assert phases.index(PHASE_USERS_ROLES) == phases.index(PHASE_PREFLIGHT) + 1
        assert phases.index(PHASE_APPLY_PERMISSIONS) == phases.index(PHASE_IMPORT) + 1


class TestSelectDatabases:
    """Tests for select_databases()."""

    def test_excludes_system_databases_with_include_all(self, source_databases):
        """System databases never survive selection."""
        op = make_operation(databases=None, include_all=True)
        names = [db.name for db in select_databases(source_databases, op)]
        assert names == ["orders", "billing"]

    def test_excludes_system_databases_even_when_selected(self, source_databases):
        """An explicit selection cannot bring system databases back."""
        op = make_operation(databases=("postgres", "orders"))
        names = [db.name for db in select_databases(source_databases, op)]
        assert names == ["orders"]

    def test_include_all_ignores_selection(self, source_databases):
        """include_all wins over an explicit selection."""
        op = make_operation(databases=("orders",), include_all=True)
        names = [db.name for db in select_databases(source_databases, op)]
        assert names == ["orders", "billing"]


class TestSuccessfulMigration:
    """Tests for a migration that goes through every phase."""

    @pytest.mark.asyncio
    async def test_runs_phases_in_order(self, connections, exporter, importer, progress):
        """Every phase is started once, in order."""
        engine = make_engine(connections, exporter, importer, progress)

        await engine.migrate(make_operation(databases=("orders", "billing")))

        assert progress.started_phases == ALL_PHASES
        assert engine.state.status is ExecutionStatus.COMPLETED
        assert engine.state.completed_phases == ALL_PHASES
        assert engine.state.progress_percent == 100

    @pytest.mark.asyncio
    async def test_result_describes_transfer(self, connections, exporter, importer):
        """The result lists databases, sizes and endpoint labels."""
        engine = make_engine(connections, exporter, importer)

        result = await engine.migrate(make_operation(databases=("orders", "billing")))

        assert result.success is True
        assert result.migration_id == engine.migration_id
        assert result.migrated_databases == ("orders", "billing")
        assert result.source == "acme-prod:orders-db"
        assert result.target == "acme-prod:orders-db-v15"
        assert result.metrics.total_databases == 2
        assert result.metrics.processed_databases == 2
        assert result.metrics.total_size_bytes == 160 * MB
        assert result.metrics.processed_size_bytes == 160 * MB
        assert [detail.status for detail in result.database_details] == ["completed", "completed"]
        assert result.users_roles is None

    @pytest.mark.asyncio
    async def test_discovery_skips_system_databases(self, connections, exporter, importer):
        """include_all never exports postgres or template databases."""
        engine = make_engine(connections, exporter, importer)

        result = await engine.migrate(make_operation(databases=None, include_all=True))

        assert result.migrated_databases == ("orders", "billing")
        assert [call["database"] for call in exporter.calls] == ["orders", "billing"]

    @pytest.mark.asyncio
    async def test_export_and_import_options(self, connections, exporter, importer):
        """Export gets the source endpoint, import the target and jobs."""
        op = make_operation(databases=("orders",), schema_only=True, jobs=4)
        engine = make_engine(connections, exporter, importer)

        await engine.migrate(op)

        export_call = exporter.calls[0]
        assert export_call["schema_only"] is True
        assert export_call["data_only"] is False
        assert export_call["connection"] == op.source

        import_call = importer.calls[0]
        assert import_call["jobs"] == 4
        assert import_call["schema_only"] is True
        assert import_call["backup_file"] == "/tmp/orders-db_orders.dump"
        assert import_call["connection"] == op.target
        assert import_call["instance"] == "orders-db-v15"

    @pytest.mark.asyncio
    async def test_reports_size_aware_progress(self, connections, exporter, importer, progress):
        """Export updates carry the database size once it is exported."""
        engine = make_engine(connections, exporter, importer, progress)

        await engine.migrate(make_operation(databases=("orders",)))

        assert ("update", 0, "Exporting orders (120 MB)", 0) in progress.events
        assert ("update", 1, "Exported orders", 120 * MB) in progress.events
        assert ("update", 1, "Imported orders", 120 * MB) in progress.events
        assert ("status", "Found 1 databases", "success") in progress.events

    @pytest.mark.asyncio
    async def test_post_validation_checks_every_database(self, connections, exporter, importer):
        """Every migrated database is reached on the target."""
        engine = make_engine(connections, exporter, importer)

        await engine.migrate(make_operation(databases=("orders", "billing")))

        target_checks = [
            call[2]
            for call in connections.calls
            if call[0] == "test_connection" and call[1] == "orders-db-v15"
        ]
        assert target_checks == ["postgres", "orders", "billing"]

    @pytest.mark.asyncio
    async def test_cleanup_runs_on_success(self, connections, exporter, importer):
        """Connections are closed and primitives cleaned up."""
        engine = make_engine(connections, exporter, importer)

        await engine.migrate(make_operation(databases=("orders",)))

        assert connections.closed == 1
        assert exporter.cleaned == 1
        assert importer.cleaned == 1

    @pytest.mark.asyncio
    async def test_shared_primitive_cleaned_once(self, connections):
        """A collaborator acting as exporter and importer is cleaned once."""

        class DumpRestore(FakeExporter, FakeImporter):
            def __init__(self) -> None:
                FakeExporter.__init__(self)
                self.import_calls: list[str] = []

            async def import_database(self, project, instance, database, backup_file, **kwargs):
                self.import_calls.append(database)

        primitive = DumpRestore()
        engine = make_engine(connections, primitive, primitive)

        await engine.migrate(make_operation(databases=("orders",)))

        assert primitive.import_calls == ["orders"]
        assert primitive.cleaned == 1

    @pytest.mark.asyncio
    async def test_records_metrics(self, connections, exporter, importer):
        """Bytes and phase durations are recorded."""
        metrics = MigrationMetrics(enable_metrics=False)
        engine = make_engine(connections, exporter, importer, metrics=metrics)

        await engine.migrate(make_operation(databases=("orders", "billing")))

        snapshot = metrics.get_snapshot()
        assert snapshot.bytes_transferred == {"export": 160 * MB, "import": 160 * MB}
        assert set(snapshot.phase_durations) == set(ALL_PHASES)

    @pytest.mark.asyncio
    async def test_traces_migration_and_phases(self, connections, exporter, importer, mock_tracer):
        """One migrate span and one span per phase."""
        engine = make_engine(connections, exporter, importer, tracer=mock_tracer)

        await engine.migrate(make_operation(databases=("orders",)))

        assert mock_tracer.span_names[0] == "cloudsql_migrator.engine.migrate"
        phase_spans = mock_tracer.find("cloudsql_migrator.engine.phase")
        assert [span.attributes[ATTR_PHASE] for span in phase_spans] == ALL_PHASES
        assert "cloudsql_migrator.engine.export_database" in mock_tracer.span_names
        migrate_span = mock_tracer.spans[0]
        assert migrate_span.attributes[ATTR_DATABASE_COUNT] == 1
        assert not any(span.failed for span in mock_tracer.spans)

    @pytest.mark.asyncio
    async def test_raising_progress_sink_is_ignored(self, connections, exporter, importer, caplog):
        """A progress sink that raises never fails the migration."""
        engine = make_engine(connections, exporter, importer, RaisingProgressSink())

        with caplog.at_level(logging.WARNING, logger="cloudsql_migrator.protocols"):
            result = await engine.migrate(make_operation(databases=("orders",)))

        assert result.migrated_databases == ("orders",)
        assert engine.state.status is ExecutionStatus.COMPLETED
        assert importer.calls
        assert "Progress sink RaisingProgressSink failed in start_phase" in caplog.text


class TestValidationAndDiscoveryFailures:
    """Tests for failures before any data moves."""

    @pytest.mark.asyncio
    async def test_missing_source_project(self, connections, exporter, importer):
        """A source without project fails the Validation phase."""
        op = replace(make_operation(), source=Endpoint(instance="orders-db"))
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(ConfigurationError, match="Source project and instance are required"):
            await engine.migrate(op)

        assert engine.state.errors[0].phase == PHASE_VALIDATION
        assert connections.calls[-1] == ("close_all_connections",)

    @pytest.mark.asyncio
    async def test_missing_target_instance(self, connections, exporter, importer):
        op = replace(make_operation(), target=Endpoint(project="acme-prod"))
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(ConfigurationError, match="Target project and instance are required"):
            await engine.migrate(op)

    @pytest.mark.asyncio
    async def test_no_databases_left(self, exporter, importer):
        """Only system databases on the source is fatal."""
        connections = InMemoryConnectionProvider(
            {"orders-db": [DatabaseInfo("postgres"), DatabaseInfo("template0")]}
        )
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(ConfigurationError, match="No databases found for migration"):
            await engine.migrate(make_operation(databases=None, include_all=True))

        assert engine.state.errors[0].phase == PHASE_DISCOVERY
        assert exporter.calls == []

    @pytest.mark.asyncio
    async def test_unreachable_target_blocks_export(self, source_databases, exporter, importer):
        """Pre-flight checks fail before anything is exported."""
        connections = InMemoryConnectionProvider(
            {"orders-db": source_databases}, unreachable={"orders-db-v15"}
        )
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(ConnectivityError, match="Target connection failed") as exc_info:
            await engine.migrate(make_operation())

        assert exc_info.value.endpoint == "acme-prod:orders-db-v15"
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert exporter.calls == []

    @pytest.mark.asyncio
    async def test_unreachable_source(self, source_databases, exporter, importer):
        connections = InMemoryConnectionProvider(
            {"orders-db": source_databases}, unreachable={"orders-db"}
        )
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(ConnectivityError, match="Source connection failed"):
            await engine.migrate(make_operation())


class TestTransferFailures:
    """Tests for export and import failures."""

    @pytest.mark.asyncio
    async def test_export_failure_stops_remaining_databases(
        self, connections, importer, progress
    ):
        """The first failing export aborts the phase and the task."""
        exporter = FakeExporter(fail_on={"orders"})
        engine = make_engine(connections, exporter, importer, progress)

        with pytest.raises(TransferError) as exc_info:
            await engine.migrate(make_operation(databases=("orders", "billing")))

        assert str(exc_info.value) == (
            "Export failed for database orders: pg_dump exited with status 1"
        )
        assert [call["database"] for call in exporter.calls] == ["orders"]
        assert importer.calls == []
        assert progress.phase_summaries[-1] == f"Failed: {exc_info.value}"
        assert PHASE_IMPORT not in progress.started_phases

    @pytest.mark.asyncio
    async def test_export_failure_still_cleans_up(self, connections, importer):
        """Cleanup runs after a fatal export failure."""
        exporter = FakeExporter(fail_on={"orders"})
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(TransferError):
            await engine.migrate(make_operation(databases=("orders",)))

        assert connections.closed == 1
        assert exporter.cleaned == 1
        assert importer.cleaned == 1
        assert engine.state.status is ExecutionStatus.FAILED
        assert engine.state.errors[0].phase == PHASE_EXPORT
        assert "pg_dump exited" in engine.state.errors[0].message

    @pytest.mark.asyncio
    async def test_failed_phase_marks_spans(self, connections, importer, mock_tracer):
        """The failing phase and the migrate span carry the error code."""
        exporter = FakeExporter(fail_on={"orders"})
        engine = make_engine(connections, exporter, importer, tracer=mock_tracer)

        with pytest.raises(TransferError):
            await engine.migrate(make_operation(databases=("orders",)))

        failed = [span for span in mock_tracer.spans if span.failed]
        assert [span.name for span in failed] == [
            "cloudsql_migrator.engine.migrate",
            "cloudsql_migrator.engine.phase",
            "cloudsql_migrator.engine.export_database",
        ]
        migrate_span, export_phase, _ = failed
        assert export_phase.attributes[ATTR_PHASE] == PHASE_EXPORT
        assert export_phase.attributes[ATTR_ERROR_CODE] == "TRANSFER_ERROR"
        assert migrate_span.attributes[ATTR_ERROR_TYPE] == "TransferError"


class TestCancellation:
    """Tests for a migration cancelled while it runs."""

    @pytest.mark.asyncio
    async def test_cancel_during_export_cleans_up(self, connections, importer):
        exporter = FakeExporter(delay=1.0)
        engine = make_engine(connections, exporter, importer)

        task = asyncio.create_task(engine.migrate(make_operation(databases=("orders",))))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert connections.closed == 1
        assert exporter.cleaned == 1
        assert importer.calls == []
        assert engine.state.status is ExecutionStatus.FAILED
        assert "cancelled during phase Export" in engine.state.errors[-1].message

    @pytest.mark.asyncio
    async def test_cancel_is_recorded_on_spans(self, connections, importer, mock_tracer):
        exporter = FakeExporter(delay=1.0)
        engine = make_engine(connections, exporter, importer, tracer=mock_tracer)

        task = asyncio.create_task(engine.migrate(make_operation(databases=("orders",))))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        migrate_span = mock_tracer.find("cloudsql_migrator.engine.migrate")[0]
        assert migrate_span.attributes[ATTR_ERROR_CODE] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_mask_error(self, source_databases, importer):
        """The original export error is raised even when cleanup fails."""
        connections = InMemoryConnectionProvider(
            {"orders-db": source_databases}, close_error=RuntimeError("pool already closed")
        )
        exporter = FakeExporter(fail_on={"orders"}, cleanup_error=OSError("dump dir busy"))
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(TransferError, match="Export failed for database orders"):
            await engine.migrate(make_operation(databases=("orders",)))

        assert engine.cleanup_failures == 2
        assert importer.cleaned == 1
        warnings = [w for w in engine.warnings if isinstance(w, CleanupWarning)]
        assert len(warnings) == 2

    @pytest.mark.asyncio
    async def test_cleanup_failure_on_success_is_not_fatal(
        self, source_databases, exporter, importer
    ):
        connections = InMemoryConnectionProvider(
            {"orders-db": source_databases}, close_error=RuntimeError("pool already closed")
        )
        engine = make_engine(connections, exporter, importer)

        result = await engine.migrate(make_operation(databases=("orders",)))

        assert result.success is True
        assert engine.cleanup_failures == 1

    @pytest.mark.asyncio
    async def test_import_failure(self, connections, exporter):
        importer = FakeImporter(fail_on={"billing"})
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(TransferError, match="Import failed for database billing") as exc_info:
            await engine.migrate(make_operation(databases=("orders", "billing")))

        assert exc_info.value.direction == "import"
        assert [call["database"] for call in importer.calls] == ["orders", "billing"]
        assert engine.state.errors[0].phase == PHASE_IMPORT

    @pytest.mark.asyncio
    async def test_post_validation_failure(self, source_databases, exporter, importer):
        """A database unreachable after import fails the migration."""
        connections = InMemoryConnectionProvider(
            {"orders-db": source_databases},
            unreachable_databases={("orders-db-v15", "billing")},
        )
        engine = make_engine(connections, exporter, importer)

        with pytest.raises(
            ConnectivityError, match="Post-migration validation failed for database billing"
        ) as exc_info:
            await engine.migrate(make_operation(databases=("orders", "billing")))

        assert exc_info.value.database == "billing"
        assert engine.state.errors[0].phase == PHASE_POST_VALIDATION


class TestUsersAndRoles:
    """Tests for the optional users/roles and permissions phases."""

    @pytest.mark.asyncio
    async def test_phases_run_when_requested(self, connections, exporter, importer, progress):
        permissions = FakePermissions()
        engine = make_engine(connections, exporter, importer, progress, permissions=permissions)

        result = await engine.migrate(
            make_operation(databases=("orders", "billing"), include_users_roles=True)
        )

        assert progress.started_phases == planned_phases(True)
        assert permissions.calls == [
            "extract_users_and_roles",
            "extract_database_permissions",
            "generate_create_script",
            "apply_users_and_roles",
            "generate_permissions_script",
            "apply_permissions_script",
        ]
        assert permissions.permission_databases == ["orders", "billing"]
        assert permissions.cleaned == 1
        assert result.users_roles is not None
        assert result.users_roles.success_count == 3
        assert result.users_roles.permissions_applied is True

    @pytest.mark.asyncio
    async def test_statement_failures_are_warnings(self, connections, exporter, importer, progress):
        """Failed statements are summarized and the migration continues."""
        permissions = FakePermissions(
            ScriptApplyResult(
                success_count=2,
                error_count=1,
                errors=(StatementFailure("CREATE ROLE app_rw", "role already exists"),),
            )
        )
        engine = make_engine(connections, exporter, importer, progress, permissions=permissions)

        result = await engine.migrate(make_operation(include_users_roles=True))

        assert result.success is True
        assert ("Users/roles applied: 2 successful, 1 failed", "warning") in progress.statuses
        statement_errors = [w for w in engine.warnings if isinstance(w, PermissionApplyError)]
        assert len(statement_errors) == 1
        assert statement_errors[0].statement == "CREATE ROLE app_rw"
        assert result.users_roles.error_count == 1

    @pytest.mark.asyncio
    async def test_setup_failure_skips_permissions(self, connections, exporter, importer, progress):
        """A failing setup is a warning and disables Apply Permissions."""
        permissions = FakePermissions(extract_error=RuntimeError("permission denied for pg_authid"))
        engine = make_engine(connections, exporter, importer, progress, permissions=permissions)

        result = await engine.migrate(make_operation(include_users_roles=True))

        assert result.success is True
        assert result.users_roles is None
        assert PHASE_USERS_ROLES in progress.started_phases
        assert PHASE_APPLY_PERMISSIONS not in progress.started_phases
        assert "generate_permissions_script" not in permissions.calls
        assert engine.state.warnings[0].message.startswith("Users/roles setup failed")

    @pytest.mark.asyncio
    async def test_apply_permissions_failure_is_fatal(self, connections, exporter, importer):
        permissions = FakePermissions(apply_permissions_error=RuntimeError("syntax error"))
        engine = make_engine(connections, exporter, importer, permissions=permissions)

        with pytest.raises(RuntimeError, match="syntax error"):
            await engine.migrate(make_operation(include_users_roles=True))

        assert engine.state.errors[0].phase == PHASE_APPLY_PERMISSIONS
        assert permissions.cleaned == 1

    @pytest.mark.asyncio
    async def test_skipped_without_collaborator(self, connections, exporter, importer, progress):
        """Requesting users/roles without a collaborator skips both phases."""
        engine = make_engine(connections, exporter, importer, progress)

        result = await engine.migrate(make_operation(include_users_roles=True))

        assert result.success is True
        assert progress.started_phases == ALL_PHASES


class TestEngineLifecycle:
    """Tests for engine state handling."""

    @pytest.mark.asyncio
    async def test_engine_cannot_be_reused(self, connections, exporter, importer):
        engine = make_engine(connections, exporter, importer)
        await engine.migrate(make_operation())

        with pytest.raises(ExecutionStateError):
            await engine.migrate(make_operation())

    def test_migration_ids_are_unique(self, connections, exporter, importer):
        first = make_engine(connections, exporter, importer)
        second = make_engine(connections, exporter, importer)
        assert first.migration_id != second.migration_id
        assert first.migration_id.startswith("migration_")
