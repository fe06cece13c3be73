"""
cloudsql_migrator - Batch migration of Cloud SQL PostgreSQL instances.

This library provides:
- Migration mappings with simple, consolidate, version-based and custom strategies
- A batch orchestrator with bounded parallelism, stop-on-error and retries
- A per-task execution engine with ordered phases and guaranteed cleanup
- Loading of instance lists from txt, json and csv files
- OpenTelemetry tracing and metrics
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cloudsql-migrator")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Configuration
from cloudsql_migrator.config import (
    BatchConfig,
    MigrationOptions,
    MigratorSettings,
    PasswordStrategy,
    get_settings,
)

# Execution
from cloudsql_migrator.engine import ExecutionEngine

# Exceptions
from cloudsql_migrator.exceptions import (
    BatchAbortError,
    CleanupWarning,
    ConfigurationError,
    ConnectivityError,
    DatabaseConflictError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    ExecutionStateError,
    MigratorError,
    PermissionApplyError,
    TransferError,
    ValidationError,
    classify_exception,
)

# File loading
from cloudsql_migrator.loader import load_mapping_file, parse_instance_file

# Mapping planner
from cloudsql_migrator.mapping import MappingValidation, MigrationMapping, ResolvedDatabase

# Metrics
from cloudsql_migrator.metrics import MigrationMetrics, MigrationMetricSnapshot

# Models
from cloudsql_migrator.models import (
    BatchProgress,
    BatchReport,
    BatchResult,
    BatchStatus,
    CancelResult,
    DatabaseInfo,
    Endpoint,
    ExecutionState,
    MigrationEstimate,
    MigrationResult,
    MigrationTask,
    Operation,
    ToolValidation,
    format_bytes,
    format_duration,
)
from cloudsql_migrator.orchestrator import BatchOrchestrator

# Collaborator protocols
from cloudsql_migrator.protocols import (
    CallbackProgressSink,
    ConnectionProvider,
    ExportPrimitive,
    GuardedProgressSink,
    ImportPrimitive,
    NullProgressSink,
    PermissionsCollaborator,
    ProgressEvent,
    ProgressSink,
    Tool,
)
from cloudsql_migrator.tool import CloudSQLMigrationTool

# Enums
from cloudsql_migrator.types import (
    ConflictResolution,
    ExecutionStatus,
    MappingStrategy,
    MappingType,
)

__all__ = [
    "__version__",
    # Configuration
    "BatchConfig",
    "MigrationOptions",
    "MigratorSettings",
    "PasswordStrategy",
    "get_settings",
    # Execution
    "BatchOrchestrator",
    "CloudSQLMigrationTool",
    "ExecutionEngine",
    # Exceptions
    "MigratorError",
    "ConfigurationError",
    "DatabaseConflictError",
    "ValidationError",
    "ExecutionStateError",
    "ConnectivityError",
    "TransferError",
    "PermissionApplyError",
    "BatchAbortError",
    "CleanupWarning",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "classify_exception",
    # File loading
    "load_mapping_file",
    "parse_instance_file",
    # Mapping planner
    "MigrationMapping",
    "MappingValidation",
    "ResolvedDatabase",
    # Metrics
    "MigrationMetrics",
    "MigrationMetricSnapshot",
    # Models
    "Endpoint",
    "MigrationTask",
    "Operation",
    "ExecutionState",
    "DatabaseInfo",
    "MigrationEstimate",
    "MigrationResult",
    "ToolValidation",
    "BatchProgress",
    "BatchReport",
    "BatchResult",
    "BatchStatus",
    "CancelResult",
    "format_bytes",
    "format_duration",
    # Protocols
    "Tool",
    "ConnectionProvider",
    "ExportPrimitive",
    "ImportPrimitive",
    "PermissionsCollaborator",
    "ProgressSink",
    "ProgressEvent",
    "NullProgressSink",
    "CallbackProgressSink",
    "GuardedProgressSink",
    # Enums
    "ConflictResolution",
    "ExecutionStatus",
    "MappingStrategy",
    "MappingType",
]
