"""
CloudSQLMigrationTool - The Tool used by the batch orchestrator.

The tool validates, estimates and executes one Operation. Execution is
delegated to a fresh ExecutionEngine per call, so no engine state is ever
shared between tasks of a batch.

Example:
    >>> tool = CloudSQLMigrationTool(connections, exporter, importer)
    >>> await tool.validate(operation)
    ToolValidation(is_valid=True, errors=(), warnings=())
    >>> estimate = await tool.get_estimate(operation)
    >>> estimate.estimated_speed
    '25 MB/min'
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from cloudsql_migrator.engine import ExecutionEngine, select_databases
from cloudsql_migrator.exceptions import ConfigurationError, ConnectivityError
from cloudsql_migrator.metrics import MigrationMetrics
from cloudsql_migrator.models import (
    DatabaseInfo,
    MigrationEstimate,
    MigrationResult,
    Operation,
    ToolValidation,
    TransferMetrics,
)
from cloudsql_migrator.observability import (
    ATTR_DRY_RUN,
    ATTR_OPERATION_ID,
    ATTR_SOURCE,
    ATTR_TARGET,
    Tracer,
    create_tracer,
)
from cloudsql_migrator.protocols import (
    CallbackProgressSink,
    ConnectionProvider,
    ExportPrimitive,
    GuardedProgressSink,
    ImportPrimitive,
    NullProgressSink,
    PermissionsCollaborator,
    ProgressCallback,
    ProgressSink,
)
from cloudsql_migrator.types import SYSTEM_DATABASES, TOOL_NAME

logger = logging.getLogger(__name__)

# Throughput assumptions in MB/min, typical for Cloud SQL dump/restore.
SPEED_FULL = 40
SPEED_WITH_INDEXES = 25
SPEED_SCHEMA_ONLY = 500
SPEED_DATA_ONLY = 50
CROSS_PROJECT_FACTOR = 0.7
LARGE_DATASET_FACTOR = 0.8
LARGE_DATASET_MB = 10 * 1024


class CloudSQLMigrationTool:
    """
    Migrates the databases of one Cloud SQL PostgreSQL instance to another.

    Args:
        connections: Lists databases and tests connectivity.
        exporter: Dumps source databases.
        importer: Restores dumps on the target.
        permissions: Optional users/roles collaborator.
        tracer: Optional custom Tracer instance.
        metrics: Optional metrics container shared with the engines.
        enable_tracing: Whether to enable OpenTelemetry tracing, read from
            the settings when None. Ignored if tracer is explicitly provided.
    """

    def __init__(
        self,
        connections: ConnectionProvider,
        exporter: ExportPrimitive,
        importer: ImportPrimitive,
        *,
        permissions: PermissionsCollaborator | None = None,
        tracer: Tracer | None = None,
        metrics: MigrationMetrics | None = None,
        enable_tracing: bool | None = None,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._metrics = metrics or MigrationMetrics(enable_metrics=False)
        self._connections = connections
        self._exporter = exporter
        self._importer = importer
        self._permissions = permissions

    @property
    def name(self) -> str:
        return TOOL_NAME

    async def validate(self, operation: Operation | Mapping[str, Any]) -> ToolValidation:
        """
        Check that an operation can run.

        Structure is checked first, then connectivity (the target is not
        contacted on dry runs), then the database selection against what
        the source actually holds.

        Raises:
            ConfigurationError: If the operation is malformed or selects
                databases the source does not have.
            ConnectivityError: If an endpoint cannot be reached.
        """
        op = Operation.coerce(operation)

        errors = op.validate()
        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}",
                errors,
                operation_id=op.id,
            )

        await self._check_connection(op, is_source=True)
        if not op.options.dry_run:
            await self._check_connection(op, is_source=False)

        errors = await self._check_database_selection(op)
        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}",
                errors,
                operation_id=op.id,
            )

        logger.debug("Operation %s is valid", op.id, extra={"operation_id": op.id})
        return ToolValidation(is_valid=True)

    async def _check_connection(self, op: Operation, *, is_source: bool) -> None:
        endpoint = op.source if is_source else op.target
        role = "Source" if is_source else "Target"
        try:
            await self._connections.test_connection(
                endpoint.project, endpoint.instance, "postgres", is_source, endpoint
            )
        except Exception as exc:
            raise ConnectivityError(
                f"{role} connection failed: {exc}",
                endpoint=endpoint.label,
                operation_id=op.id,
            ) from exc

    async def _check_database_selection(self, op: Operation) -> list[str]:
        if op.options.include_all:
            listed = await self._list_source_databases(op)
            if not [db for db in listed if db.name not in SYSTEM_DATABASES]:
                return ["No databases found in source instance"]
            return []

        if op.databases:
            listed = await self._list_source_databases(op)
            available = {db.name for db in listed}
            missing = [name for name in op.databases if name not in available]
            if missing:
                return [f"Databases not found: {', '.join(missing)}"]
            return []

        return [
            "Database selection required: either set include_all to true "
            "or specify databases to migrate"
        ]

    async def _list_source_databases(self, op: Operation) -> list[DatabaseInfo]:
        source = op.source
        return list(
            await self._connections.list_databases(source.project, source.instance, True, source)
        )

    async def execute(
        self,
        operation: Operation | Mapping[str, Any],
        on_progress: ProgressCallback | None = None,
    ) -> MigrationResult:
        """
        Execute an operation.

        Args:
            operation: The operation to run.
            on_progress: Optional callback receiving ProgressEvents.

        Returns:
            MigrationResult of the run (``dry_run=True`` with an estimate
            when nothing was transferred).

        Raises:
            MigratorError: The error of the failing engine phase.
        """
        op = Operation.coerce(operation)
        progress = GuardedProgressSink(
            CallbackProgressSink(on_progress) if on_progress else NullProgressSink()
        )

        with self._tracer.span(
            "cloudsql_migrator.tool.execute",
            {
                ATTR_OPERATION_ID: op.id,
                ATTR_SOURCE: op.source.label,
                ATTR_TARGET: op.target.label,
                ATTR_DRY_RUN: op.options.dry_run,
            },
        ):
            if op.options.dry_run:
                return await self._dry_run(op, progress)

            engine = ExecutionEngine(
                self._connections,
                self._exporter,
                self._importer,
                progress,
                permissions=self._permissions,
                tracer=self._tracer,
                metrics=self._metrics,
            )
            return await engine.migrate(op)

    async def _dry_run(self, op: Operation, progress: ProgressSink) -> MigrationResult:
        started = time.monotonic()
        logger.info(
            "Dry run of %s: %s -> %s",
            op.id,
            op.source.label,
            op.target.label,
            extra={"operation_id": op.id},
        )
        progress.start_phase("Discovery", 1)
        databases = select_databases(await self._list_source_databases(op), op)
        progress.update(1)
        progress.complete_phase()

        estimate = self._estimate(op, databases)
        progress.status(
            f"Dry run: {len(databases)} databases, "
            f"about {estimate.estimated_duration_minutes:g} minutes",
            "info",
        )

        return MigrationResult(
            success=True,
            migration_id=f"dryrun_{uuid4().hex[:12]}",
            duration_ms=int((time.monotonic() - started) * 1000),
            metrics=TransferMetrics(
                total_databases=len(databases),
                total_size_bytes=estimate.total_size_bytes,
            ),
            migrated_databases=(),
            source=op.source.label,
            target=op.target.label,
            dry_run=True,
            estimate=estimate,
        )

    async def get_estimate(self, operation: Operation | Mapping[str, Any]) -> MigrationEstimate:
        """
        Estimate size and duration of an operation from the source listing.
        """
        op = Operation.coerce(operation)
        databases = select_databases(await self._list_source_databases(op), op)
        return self._estimate(op, databases)

    def _estimate(self, op: Operation, databases: list[DatabaseInfo]) -> MigrationEstimate:
        total_bytes = sum(db.size_bytes for db in databases)
        size_mb = total_bytes / 1024 / 1024
        factors: list[str] = []

        if op.options.schema_only:
            speed: float = SPEED_SCHEMA_ONLY
            factors.append("Schema-only migration (faster)")
        elif op.options.data_only:
            speed = SPEED_DATA_ONLY
            factors.append("Data-only migration")
        else:
            speed = min(SPEED_FULL, SPEED_WITH_INDEXES)
            factors.append("Full migration (schema + data + indexes)")

        if op.source.project != op.target.project:
            speed *= CROSS_PROJECT_FACTOR
            factors.append("Cross-region migration (network latency)")

        if size_mb > LARGE_DATASET_MB:
            speed *= LARGE_DATASET_FACTOR
            factors.append("Large dataset (reduced throughput)")

        factors.append("Estimates based on typical Cloud SQL performance")

        minutes = math.ceil(size_mb / speed)
        overhead = min(max(2.0, minutes * 0.15), 30.0)

        return MigrationEstimate(
            databases=tuple(databases),
            total_size_bytes=total_bytes,
            estimated_duration_minutes=round(minutes + overhead, 1),
            estimated_speed=f"{round(speed, 1):g} MB/min",
            factors=tuple(factors),
        )


__all__ = ["CloudSQLMigrationTool"]
