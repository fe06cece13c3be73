"""
ExecutionEngine - Drives one migration operation through its phases.

Phases run strictly in order:

    Validation -> Discovery -> Pre-flight Checks -> [Users & Roles Setup]
    -> Export -> Import -> [Apply Permissions] -> Post-migration Validation
    -> Cleanup

Every phase is wrapped the same way: the phase is started on the progress
sink, its body runs, and completion is reported. When a body raises, the
phase is reported as failed and the error propagates, aborting the
remaining phases of this task only.

Failure Policy:
    - Users & Roles Setup never fails the task: statement failures and
      failures of the phase as a whole become warnings, and a failed setup
      disables Apply Permissions.
    - Every other phase is fatal.
    - Cleanup never fails: errors are logged and counted. It also runs when
      another phase failed or the task was cancelled, and the original
      error is always the one re-raised.

Progress sinks are observational: every sink call goes through a
GuardedProgressSink, so a raising sink is logged and ignored.

Export and Import iterate databases sequentially so that one endpoint pair
only ever sees one dump or restore at a time.

Usage:
    >>> engine = ExecutionEngine(connections, exporter, importer, progress)
    >>> result = await engine.migrate(operation)
    >>> result.migrated_databases
    ('orders', 'billing')
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any, TypeVar
from uuid import uuid4

from cloudsql_migrator.exceptions import (
    CleanupWarning,
    ConfigurationError,
    ConnectivityError,
    MigratorError,
    PermissionApplyError,
    TransferError,
)
from cloudsql_migrator.metrics import MigrationMetrics
from cloudsql_migrator.models import (
    BackupArtifact,
    DatabaseDetail,
    DatabaseInfo,
    ExecutionState,
    MigrationResult,
    Operation,
    ScriptApplyResult,
    TransferMetrics,
    UsersRolesSummary,
)
from cloudsql_migrator.observability import (
    ATTR_DATABASE_COUNT,
    ATTR_DB_NAME,
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_ID,
    ATTR_OPERATION_ID,
    ATTR_PHASE,
    ATTR_SIZE_BYTES,
    ATTR_SOURCE,
    ATTR_TARGET,
    Tracer,
    create_tracer,
)
from cloudsql_migrator.protocols import (
    ConnectionProvider,
    ExportPrimitive,
    GuardedProgressSink,
    ImportPrimitive,
    NullProgressSink,
    PermissionsCollaborator,
    ProgressSink,
    SupportsCleanup,
)
from cloudsql_migrator.types import SYSTEM_DATABASES, TOOL_NAME

logger = logging.getLogger(__name__)

T = TypeVar("T")

PHASE_VALIDATION = "Validation"
PHASE_DISCOVERY = "Discovery"
PHASE_PREFLIGHT = "Pre-flight Checks"
PHASE_USERS_ROLES = "Users & Roles Setup"
PHASE_EXPORT = "Export"
PHASE_IMPORT = "Import"
PHASE_APPLY_PERMISSIONS = "Apply Permissions"
PHASE_POST_VALIDATION = "Post-migration Validation"
PHASE_CLEANUP = "Cleanup"


def planned_phases(include_users_roles: bool) -> list[str]:
    """Return the ordered phase names of a migration."""
    phases = [PHASE_VALIDATION, PHASE_DISCOVERY, PHASE_PREFLIGHT]
    if include_users_roles:
        phases.append(PHASE_USERS_ROLES)
    phases.extend([PHASE_EXPORT, PHASE_IMPORT])
    if include_users_roles:
        phases.append(PHASE_APPLY_PERMISSIONS)
    phases.extend([PHASE_POST_VALIDATION, PHASE_CLEANUP])
    return phases


def select_databases(
    databases: Sequence[DatabaseInfo], operation: Operation
) -> list[DatabaseInfo]:
    """
    Apply the operation selection to a database listing.

    The explicit selection is honoured unless ``include_all`` is set, and
    system databases are always excluded.
    """
    selected = list(databases)
    if not operation.options.include_all and operation.databases:
        wanted = set(operation.databases)
        selected = [db for db in selected if db.name in wanted]
    return [db for db in selected if db.name not in SYSTEM_DATABASES]


@dataclass(frozen=True)
class _UsersRolesOutcome:
    permissions: Any
    applied: ScriptApplyResult


class ExecutionEngine:
    """
    Runs a single Operation through the fixed phase sequence.

    An engine holds the state of exactly one migration and must not be
    reused: calling :meth:`migrate` twice raises ExecutionStateError.

    Example:
        >>> engine = ExecutionEngine(
        ...     connections,
        ...     exporter,
        ...     importer,
        ...     CallbackProgressSink(print),
        ...     permissions=users_roles,
        ... )
        >>> result = await engine.migrate(operation)
    """

    def __init__(
        self,
        connections: ConnectionProvider,
        exporter: ExportPrimitive,
        importer: ImportPrimitive,
        progress: ProgressSink | None = None,
        *,
        permissions: PermissionsCollaborator | None = None,
        tracer: Tracer | None = None,
        metrics: MigrationMetrics | None = None,
        enable_tracing: bool | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            connections: Lists databases and tests connectivity.
            exporter: Dumps source databases.
            importer: Restores dumps on the target.
            progress: Progress sink (discarding sink when omitted). Its
                exceptions are logged and ignored.
            permissions: Users/roles collaborator, required for the
                users/roles phases.
            tracer: Optional custom Tracer instance.
            metrics: Optional metrics container.
            enable_tracing: Whether to enable OpenTelemetry tracing, read
                from the settings when None. Ignored if tracer is
                explicitly provided.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._metrics = metrics or MigrationMetrics(enable_metrics=False)
        self._connections = connections
        self._exporter = exporter
        self._importer = importer
        self._permissions = permissions
        self._progress: ProgressSink = GuardedProgressSink(progress or NullProgressSink())

        self._state = ExecutionState(id=f"migration_{uuid4().hex[:12]}", name=TOOL_NAME)
        self._transfer = TransferMetrics()
        self._details: list[DatabaseDetail] = []
        self._migrated: list[str] = []
        self._warnings: list[MigratorError] = []
        self._permissions_used = False
        self._cleanup_failures = 0

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def migration_id(self) -> str:
        return self._state.id

    @property
    def warnings(self) -> list[MigratorError]:
        """Non-fatal problems (statement failures, cleanup failures)."""
        return list(self._warnings)

    @property
    def cleanup_failures(self) -> int:
        return self._cleanup_failures

    async def migrate(self, operation: Operation) -> MigrationResult:
        """
        Run every phase of the operation.

        Args:
            operation: The operation to execute.

        Returns:
            MigrationResult describing the transferred databases.

        Raises:
            MigratorError: The error of the first failing fatal phase,
                after cleanup was attempted.
        """
        include_users_roles = operation.options.include_users_roles
        if include_users_roles and self._permissions is None:
            logger.warning(
                "Users/roles migration requested for %s but no permissions "
                "collaborator is configured, skipping",
                operation.id,
                extra={"operation_id": operation.id},
            )
            include_users_roles = False

        self._state.start(planned_phases(include_users_roles))

        with self._tracer.span(
            "cloudsql_migrator.engine.migrate",
            {
                ATTR_OPERATION_ID: operation.id,
                ATTR_MIGRATION_ID: self.migration_id,
                ATTR_SOURCE: operation.source.label,
                ATTR_TARGET: operation.target.label,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ) as span:
            logger.info(
                "Migration %s started: %s -> %s",
                self.migration_id,
                operation.source.label,
                operation.target.label,
                extra={"operation_id": operation.id, "migration_id": self.migration_id},
            )
            try:
                result = await self._run(operation, include_users_roles)
            except asyncio.CancelledError:
                phase = self._state.current_phase
                self._state.fail(f"Migration cancelled during phase {phase}")
                logger.warning(
                    "Migration %s cancelled in phase %s, cleaning up",
                    self.migration_id,
                    phase,
                    extra={
                        "operation_id": operation.id,
                        "migration_id": self.migration_id,
                        "phase": phase,
                    },
                )
                await self._cleanup()
                raise
            except Exception as exc:
                self._state.fail(exc)
                logger.error(
                    "Migration %s failed in phase %s: %s",
                    self.migration_id,
                    self._state.current_phase,
                    exc,
                    extra={
                        "operation_id": operation.id,
                        "migration_id": self.migration_id,
                        "phase": self._state.current_phase,
                    },
                )
                logger.debug("Attempting cleanup after migration error")
                await self._cleanup()
                raise
            span.set_attribute(ATTR_DATABASE_COUNT, len(result.migrated_databases))

        self._state.complete(result)
        logger.info(
            "Migration %s completed in %dms: %d databases",
            self.migration_id,
            result.duration_ms,
            len(result.migrated_databases),
            extra={"operation_id": operation.id, "migration_id": self.migration_id},
        )
        return result

    async def _run(self, operation: Operation, include_users_roles: bool) -> MigrationResult:
        await self._run_phase(PHASE_VALIDATION, lambda: self._validate_configuration(operation))
        databases = await self._run_phase(
            PHASE_DISCOVERY, lambda: self._discover_databases(operation)
        )
        await self._run_phase(PHASE_PREFLIGHT, lambda: self._preflight_checks(operation))

        users_roles: _UsersRolesOutcome | None = None
        if include_users_roles:
            users_roles = await self._run_phase(
                PHASE_USERS_ROLES, lambda: self._setup_users_roles(operation, databases)
            )

        backups = await self._run_phase(
            PHASE_EXPORT, lambda: self._export_phase(operation, databases), total=len(databases)
        )
        await self._run_phase(
            PHASE_IMPORT, lambda: self._import_phase(operation, backups), total=len(backups)
        )

        if users_roles is not None:
            outcome = users_roles
            await self._run_phase(
                PHASE_APPLY_PERMISSIONS, lambda: self._apply_permissions(operation, outcome)
            )

        await self._run_phase(
            PHASE_POST_VALIDATION, lambda: self._post_validation(operation, databases)
        )
        await self._run_phase(PHASE_CLEANUP, self._cleanup)

        return MigrationResult(
            success=True,
            migration_id=self.migration_id,
            duration_ms=self._state.duration_ms,
            metrics=replace(self._transfer),
            migrated_databases=tuple(self._migrated),
            source=operation.source.label,
            target=operation.target.label,
            database_details=tuple(replace(detail) for detail in self._details),
            users_roles=(
                UsersRolesSummary(
                    success_count=users_roles.applied.success_count,
                    error_count=users_roles.applied.error_count,
                    permissions_applied=True,
                )
                if users_roles is not None
                else None
            ),
        )

    async def _run_phase(
        self, name: str, body: Callable[[], Awaitable[T]], *, total: int = 1
    ) -> T:
        self._state.set_current_phase(name)
        self._progress.start_phase(name, total)
        with (
            self._tracer.span(
                "cloudsql_migrator.engine.phase",
                {ATTR_PHASE: name, ATTR_MIGRATION_ID: self.migration_id},
            ),
            self._metrics.time_phase(name),
        ):
            try:
                result = await body()
            except Exception as exc:
                logger.error(
                    "Error in phase '%s': %s",
                    name,
                    exc,
                    extra={"phase": name, "migration_id": self.migration_id},
                )
                self._progress.complete_phase(f"Failed: {exc}")
                raise
        self._progress.update(total)
        self._progress.complete_phase()
        return result

    # -------------------------------------------------------------------------
    # Phase bodies
    # -------------------------------------------------------------------------

    async def _validate_configuration(self, operation: Operation) -> None:
        logger.debug("Validating configuration of %s", operation.id)
        if not operation.source.project or not operation.source.instance:
            raise ConfigurationError(
                "Source project and instance are required", operation_id=operation.id
            )
        if not operation.target.project or not operation.target.instance:
            raise ConfigurationError(
                "Target project and instance are required", operation_id=operation.id
            )
        self._progress.status("Configuration validated", "success")

    async def _discover_databases(self, operation: Operation) -> list[DatabaseInfo]:
        source = operation.source
        listed = await self._connections.list_databases(
            source.project, source.instance, True, source
        )

        databases = select_databases(listed, operation)

        if not databases:
            raise ConfigurationError("No databases found for migration", operation_id=operation.id)

        self._transfer.total_databases = len(databases)
        self._transfer.total_size_bytes = sum(db.size_bytes for db in databases)
        self._state.update_metrics(
            total_databases=len(databases), total_size_bytes=self._transfer.total_size_bytes
        )
        logger.debug(
            "Discovered %d databases on %s",
            len(databases),
            source.label,
            extra={"databases": [db.name for db in databases]},
        )
        self._progress.status(f"Found {len(databases)} databases", "success")
        return databases

    async def _preflight_checks(self, operation: Operation) -> None:
        for endpoint, is_source, role in (
            (operation.source, True, "Source"),
            (operation.target, False, "Target"),
        ):
            try:
                await self._connections.test_connection(
                    endpoint.project, endpoint.instance, "postgres", is_source, endpoint
                )
            except Exception as exc:
                raise ConnectivityError(
                    f"{role} connection failed: {exc}",
                    endpoint=endpoint.label,
                    operation_id=operation.id,
                ) from exc
        self._progress.status("All checks passed", "success")

    async def _setup_users_roles(
        self, operation: Operation, databases: Sequence[DatabaseInfo]
    ) -> _UsersRolesOutcome | None:
        assert self._permissions is not None
        permissions = self._permissions
        source, target = operation.source, operation.target
        self._permissions_used = True

        try:
            extracted = await permissions.extract_users_and_roles(
                source.project, source.instance, source, operation.options.selected_users
            )
            snapshot = await permissions.extract_database_permissions(
                source.project, source.instance, [db.name for db in databases], source
            )
            script = await permissions.generate_create_script(
                extracted, operation.options.password_strategy
            )
            applied = await permissions.apply_users_and_roles(
                target.project, target.instance, script, target
            )
        except Exception as exc:
            logger.warning(
                "Users/roles setup failed, continuing without it: %s",
                exc,
                exc_info=True,
                extra={"operation_id": operation.id, "migration_id": self.migration_id},
            )
            self._state.add_warning(f"Users/roles setup failed: {exc}")
            self._progress.status(f"Users/roles setup failed: {exc}", "warning")
            return None

        for failure in applied.errors:
            warning = PermissionApplyError(failure.statement, failure.error)
            self._warnings.append(warning)
            logger.warning("%s", warning, extra={"migration_id": self.migration_id})

        if applied.error_count:
            message = (
                f"Users/roles applied: {applied.success_count} successful, "
                f"{applied.error_count} failed"
            )
            self._state.add_warning(message)
            self._progress.status(message, "warning")
        else:
            self._progress.status(
                f"Users/roles applied: {applied.success_count} successful", "success"
            )
        return _UsersRolesOutcome(permissions=snapshot, applied=applied)

    async def _export_phase(
        self, operation: Operation, databases: Sequence[DatabaseInfo]
    ) -> list[BackupArtifact]:
        source = operation.source
        backups: list[BackupArtifact] = []

        for index, db in enumerate(databases):
            logger.debug("Starting export: %s", db.name)
            self._progress.update(index, f"Exporting {db.name} ({db.size_formatted})", 0)
            with self._tracer.span(
                "cloudsql_migrator.engine.export_database",
                {ATTR_DB_NAME: db.name, ATTR_SIZE_BYTES: db.size_bytes},
            ):
                try:
                    backup = await self._exporter.export_database(
                        source.project,
                        source.instance,
                        db.name,
                        schema_only=operation.options.schema_only,
                        data_only=operation.options.data_only,
                        connection=source,
                    )
                except Exception as exc:
                    logger.error("Export failed: %s", db.name, extra={"error": str(exc)})
                    raise TransferError(db.name, "export", str(exc)) from exc

            backups.append(backup)
            self._progress.update(index + 1, f"Exported {db.name}", db.size_bytes)
            self._details.append(
                DatabaseDetail(
                    name=db.name,
                    status="exported",
                    original_size=db.size_bytes,
                    backup_file=backup.backup_file,
                )
            )
            self._migrated.append(db.name)
            self._transfer.processed_databases += 1
            self._transfer.processed_size_bytes += db.size_bytes
            self._metrics.record_bytes_transferred(db.size_bytes, "export")

        self._progress.status(f"{len(backups)} databases exported", "success")
        return backups

    async def _import_phase(self, operation: Operation, backups: Sequence[BackupArtifact]) -> None:
        target = operation.target
        details = {detail.name: detail for detail in self._details}

        for index, backup in enumerate(backups):
            detail = details.get(backup.database)
            size = detail.original_size if detail else 0
            size_info = f" ({detail.size_formatted})" if detail else ""
            logger.debug("Starting import: %s", backup.database)
            self._progress.update(index, f"Importing {backup.database}{size_info}", 0)
            with self._tracer.span(
                "cloudsql_migrator.engine.import_database",
                {ATTR_DB_NAME: backup.database, ATTR_SIZE_BYTES: size},
            ):
                try:
                    await self._importer.import_database(
                        target.project,
                        target.instance,
                        backup.database,
                        backup.backup_file,
                        jobs=operation.options.jobs,
                        schema_only=operation.options.schema_only,
                        data_only=operation.options.data_only,
                        connection=target,
                    )
                except Exception as exc:
                    logger.error("Import failed: %s", backup.database, extra={"error": str(exc)})
                    raise TransferError(backup.database, "import", str(exc)) from exc

            self._progress.update(index + 1, f"Imported {backup.database}", size)
            if detail is not None:
                detail.status = "completed"
            self._metrics.record_bytes_transferred(size, "import")

        self._progress.status("All databases imported", "success")

    async def _apply_permissions(self, operation: Operation, outcome: _UsersRolesOutcome) -> None:
        assert self._permissions is not None
        target = operation.target
        script = await self._permissions.generate_permissions_script(
            outcome.permissions, list(self._migrated)
        )
        await self._permissions.apply_permissions_script(
            target.project, target.instance, script, target
        )
        self._progress.status("Permissions applied", "success")

    async def _post_validation(
        self, operation: Operation, databases: Sequence[DatabaseInfo]
    ) -> None:
        target = operation.target
        with self._tracer.span(
            "cloudsql_migrator.engine.post_validation",
            {ATTR_DATABASE_COUNT: len(databases)},
        ):
            for db in databases:
                try:
                    await self._connections.test_connection(
                        target.project, target.instance, db.name, False, target
                    )
                except Exception as exc:
                    logger.error(
                        "Post-migration validation failed for database %s: %s",
                        db.name,
                        exc,
                        extra={"database": db.name},
                    )
                    raise ConnectivityError(
                        f"Post-migration validation failed for database {db.name}: {exc}",
                        endpoint=target.label,
                        database=db.name,
                        operation_id=operation.id,
                    ) from exc
                logger.debug("Database %s is accessible on target instance", db.name)
        self._progress.status("Validation completed", "success")

    async def _cleanup(self) -> None:
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            ("connections", self._connections.close_all_connections)
        ]
        seen: set[int] = set()
        for label, collaborator in (("exporter", self._exporter), ("importer", self._importer)):
            if id(collaborator) in seen or not isinstance(collaborator, SupportsCleanup):
                continue
            seen.add(id(collaborator))
            steps.append((label, collaborator.cleanup))
        if self._permissions_used and self._permissions is not None:
            steps.append(("permissions", self._permissions.cleanup))

        for label, step in steps:
            try:
                await step()
            except Exception as exc:
                self._cleanup_failures += 1
                warning = CleanupWarning(f"Cleanup of {label} failed: {exc}")
                self._warnings.append(warning)
                logger.warning(
                    "Cleanup warning (non-critical): %s",
                    warning,
                    extra={"migration_id": self.migration_id, "step": label},
                )
        logger.debug("Cleanup finished with %d failures", self._cleanup_failures)


__all__ = [
    "ExecutionEngine",
    "planned_phases",
    "select_databases",
    "PHASE_VALIDATION",
    "PHASE_DISCOVERY",
    "PHASE_PREFLIGHT",
    "PHASE_USERS_ROLES",
    "PHASE_EXPORT",
    "PHASE_IMPORT",
    "PHASE_APPLY_PERMISSIONS",
    "PHASE_POST_VALIDATION",
    "PHASE_CLEANUP",
]
