"""
Standard span and metric attributes for cloudsql_migrator.

Attribute names shared by the orchestrator, the tool and the execution
engine so that spans and metrics can be correlated. Database attributes
follow OpenTelemetry semantic conventions.

Example:
    >>> from cloudsql_migrator.observability.attributes import ATTR_OPERATION_ID
    >>>
    >>> with tracer.span(
    ...     "cloudsql_migrator.orchestrator.task",
    ...     {ATTR_OPERATION_ID: operation.id},
    ... ):
    ...     pass
"""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_ID = "cloudsql_migrator.batch.id"
"""Identifier shared by every operation of one batch (string)."""

ATTR_STRATEGY = "cloudsql_migrator.batch.strategy"
"""Mapping strategy of the batch (simple, consolidate, ...)."""

ATTR_MAPPING_TYPE = "cloudsql_migrator.batch.mapping_type"
"""Topology of the mapping (1:1, N:1, 1:N, N:N)."""

ATTR_MAX_PARALLEL = "cloudsql_migrator.batch.max_parallel"
"""Concurrency ceiling of the batch (integer)."""

# =============================================================================
# Operation Attributes
# =============================================================================

ATTR_OPERATION_ID = "cloudsql_migrator.operation.id"
"""Identifier of a single migration operation (string)."""

ATTR_MIGRATION_ID = "cloudsql_migrator.migration.id"
"""Identifier assigned by the execution engine to one run (string)."""

ATTR_SOURCE = "cloudsql_migrator.source"
"""Source endpoint label, project:instance (string)."""

ATTR_TARGET = "cloudsql_migrator.target"
"""Target endpoint label, project:instance (string)."""

ATTR_PHASE = "cloudsql_migrator.phase"
"""Execution phase name (string)."""

ATTR_DRY_RUN = "cloudsql_migrator.dry_run"
"""Whether the operation is a dry run (boolean)."""

ATTR_RETRY = "cloudsql_migrator.retry"
"""Whether the task is executed by the retry pass (boolean)."""

# =============================================================================
# Database Attributes (OTEL semantic)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier, always 'postgresql'."""

ATTR_DB_NAME = "db.name"
"""Database name being exported, imported or validated (string)."""

ATTR_DATABASE_COUNT = "cloudsql_migrator.database.count"
"""Number of databases handled by an operation (integer)."""

ATTR_SIZE_BYTES = "cloudsql_migrator.database.size_bytes"
"""Size of a database in bytes (integer)."""

# =============================================================================
# Outcome Attributes
# =============================================================================

ATTR_TASKS_SUCCESSFUL = "cloudsql_migrator.batch.successful"
"""Tasks of the batch that succeeded, set when the batch ends (integer)."""

ATTR_TASKS_FAILED = "cloudsql_migrator.batch.failed"
"""Tasks of the batch that failed (integer)."""

ATTR_TASKS_SKIPPED = "cloudsql_migrator.batch.skipped"
"""Tasks never started because the batch stopped (integer)."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name of a failed span (OTEL semantic)."""

ATTR_ERROR_CODE = "cloudsql_migrator.error.code"
"""Migrator error code of a failed span, e.g. TRANSFER_ERROR."""
