"""
Data models for the batch migration system.

This module defines the values that flow between the mapping planner, the
batch orchestrator and the per-task execution engine.

Models in this module:

Endpoints and Tasks:
    - Endpoint: A Cloud SQL instance plus connection credentials
    - MigrationTask: One source -> target unit produced by the planner
    - Operation: A task bound with resolved options and run metadata

Execution Tracking:
    - ExecutionState: Forward-only status and phase tracking
    - TransferMetrics: Database counts and byte totals of one task
    - DatabaseDetail: Per-database transfer status

Collaborator Values:
    - DatabaseInfo, BackupArtifact, StatementFailure, ScriptApplyResult
    - ToolValidation, MigrationEstimate

Results and Reporting:
    - MigrationResult: Outcome of one task
    - TaskSuccess, TaskFailure, BatchResult: Batch bookkeeping
    - BatchProgress, BatchStatus, CancelResult: Progress and status snapshots
    - BatchReport: Read-only summary of a finished batch
"""

from __future__ import annotations

import math
import time
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_snake

from cloudsql_migrator.config import MigrationOptions
from cloudsql_migrator.exceptions import ConfigurationError, ExecutionStateError
from cloudsql_migrator.types import (
    TOOL_NAME,
    ConflictResolution,
    DatabaseSelection,
    ExecutionStatus,
    MappingStrategy,
    MappingType,
)

SKIPPED_REASON = "Skipped due to previous failure"

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_duration(ms: int) -> str:
    """
    Format a duration in milliseconds for humans.

    Example:
        >>> format_duration(950), format_duration(1500), format_duration(125000)
        ('950ms', '1.5s', '2m 5s')
        >>> format_duration(3_900_000)
        '1h 5m'
    """
    ms = int(ms)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    if ms < 3_600_000:
        return f"{ms // 60_000}m {(ms % 60_000) // 1000}s"
    return f"{ms // 3_600_000}h {(ms % 3_600_000) // 60_000}m"


def format_bytes(size: int | None) -> str:
    """
    Format a byte count using 1024-based units and one decimal.

    Example:
        >>> format_bytes(0), format_bytes(1536), format_bytes(1024 ** 3)
        ('0 B', '1.5 KB', '1 GB')
    """
    if not size:
        return "0 B"
    value = float(size)
    index = 0
    while value >= 1024 and index < len(_BYTE_UNITS) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 1):g} {_BYTE_UNITS[index]}"


def format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


# =============================================================================
# Endpoints, tasks and operations
# =============================================================================


class Endpoint(BaseModel):
    """
    A Cloud SQL PostgreSQL instance and the credentials used to reach it.

    Accepts a bare string (``"instance"`` or ``"project:instance"``), a
    mapping with camelCase or snake_case keys, or another Endpoint.

    Example:
        >>> Endpoint.parse("acme-prod:orders-db").key
        'acme-prod:orders-db'
        >>> Endpoint.parse({"instance": "orders-db"}).key
        'default:orders-db'
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    project: str | None = Field(default=None, description="GCP project id")
    instance: str = Field(default="", description="Cloud SQL instance name")
    user: str = Field(default="postgres", description="Database user")
    password: str | None = Field(default=None, repr=False)
    ip: str | None = Field(default=None, description="Instance IP address")
    databases: tuple[str, ...] | None = Field(
        default=None,
        description="Databases selected on this endpoint (None means all)",
    )
    version: str | None = Field(default=None, description="PostgreSQL version")

    @model_validator(mode="before")
    @classmethod
    def _coerce_input(cls, data: Any) -> Any:
        if isinstance(data, str):
            project, _, instance = data.strip().rpartition(":")
            return {"project": project or None, "instance": instance}
        if isinstance(data, Mapping):
            normalized = {to_snake(key): value for key, value in data.items()}
            if normalized.get("user") is None:
                normalized.pop("user", None)
            return normalized
        return data

    @field_validator("instance", mode="before")
    @classmethod
    def _instance_or_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("databases", mode="before")
    @classmethod
    def _split_databases(cls, value: Any) -> Any:
        return parse_database_selection(value)

    @classmethod
    def parse(cls, value: Any) -> Endpoint:
        """Build an Endpoint from any accepted input shape."""
        if isinstance(value, Endpoint):
            return value
        return cls.model_validate(value)

    @property
    def key(self) -> str:
        """Identity key, ``project:instance`` with ``default`` for a missing project."""
        return f"{self.project or 'default'}:{self.instance}"

    @property
    def label(self) -> str:
        """Display label used in reports."""
        if self.project:
            return f"{self.project}:{self.instance}"
        return self.instance

    def with_defaults(
        self, *, user: str | None = None, password: str | None = None
    ) -> Endpoint:
        """
        Return a copy whose unset user and missing password fall back to
        ``user`` and ``password``.

        A user given explicitly, even ``postgres``, is kept.
        """
        update: dict[str, Any] = {}
        if user and "user" not in self.model_fields_set and user != self.user:
            update["user"] = user
        if password and not self.password:
            update["password"] = password
        if not update:
            return self
        return self.model_copy(update=update)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form without the password."""
        return self.model_dump(exclude={"password"}, mode="json")


def parse_database_selection(value: Any) -> DatabaseSelection:
    """
    Normalize a database selection.

    ``None``, ``"all"`` and empty values mean every database; a
    comma-separated string is split and trimmed.
    """
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() == "all":
            return None
        value = value.split(",")
    names = tuple(str(name).strip() for name in value if str(name).strip())
    return names or None


@dataclass(frozen=True)
class MigrationTask:
    """
    One concrete source -> target unit produced by planning a mapping.

    Attributes:
        source: Source endpoint (user defaulted to ``postgres``).
        target: Target endpoint (password falls back to the source one).
        databases: Selected database names, None meaning all.
        conflict_resolution: Naming policy inherited from the mapping.
        prefix_with: Database name prefix (consolidate + prefix).
        version: PostgreSQL version group (version-based strategy).
        include_all: Explicit include-all flag from a custom mapping entry.
        options: Per-task option overrides from a custom mapping entry.
    """

    source: Endpoint
    target: Endpoint
    databases: DatabaseSelection = None
    conflict_resolution: ConflictResolution | None = None
    prefix_with: str | None = None
    version: str | None = None
    include_all: bool | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def includes_all(self) -> bool:
        return self.databases is None or bool(self.include_all)

    @property
    def path_key(self) -> str:
        """``source_key->target_key`` used for duplicate path detection."""
        return f"{self.source.key}->{self.target.key}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "databases": list(self.databases) if self.databases is not None else "all",
            "conflict_resolution": (
                self.conflict_resolution.value if self.conflict_resolution else None
            ),
            "prefix_with": self.prefix_with,
            "version": self.version,
            "options": dict(self.options),
        }


@dataclass(frozen=True)
class OperationMetadata:
    """
    Run metadata stamped on every operation of a batch.

    Attributes:
        tool_name: Tool that executes the operation.
        batch_id: Identifier shared by every operation of the batch.
        task_index: Position of the task in the execution plan.
        total_tasks: Number of tasks in the batch.
        strategy: Mapping strategy the task came from.
        mapping_type: Mapping topology (``1:1``, ``N:1``...).
        execution_id: Unique identifier of this operation instance.
        created_at: When the operation was created.
    """

    tool_name: str = TOOL_NAME
    batch_id: str | None = None
    task_index: int = 0
    total_tasks: int = 1
    strategy: str | None = None
    mapping_type: str | None = None
    execution_id: str = field(default_factory=lambda: f"exec_{uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> OperationMetadata:
        normalized = {to_snake(k): v for k, v in (data or {}).items() if v is not None}
        known = {
            "tool_name",
            "batch_id",
            "task_index",
            "total_tasks",
            "strategy",
            "mapping_type",
            "execution_id",
        }
        return cls(**{k: v for k, v in normalized.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "batch_id": self.batch_id,
            "task_index": self.task_index,
            "total_tasks": self.total_tasks,
            "strategy": self.strategy,
            "mapping_type": self.mapping_type,
            "execution_id": self.execution_id,
            "created_at": self.created_at.isoformat(),
        }


def _resolve_options(data: Mapping[str, Any] | None, operation_id: str) -> MigrationOptions:
    try:
        return MigrationOptions.from_dict(data)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid options for {operation_id}: {exc}",
            [str(exc)],
            operation_id=operation_id,
        ) from exc


@dataclass(frozen=True)
class Operation:
    """
    A migration task bound with fully resolved configuration.

    Operations are created once per batch at initialization and are the
    only input the tool and the execution engine accept; plain dictionaries
    are normalized through :meth:`coerce` at the boundary.

    Attributes:
        id: ``migration_{index}_{source}_to_{target}``.
        source: Source endpoint.
        target: Target endpoint.
        databases: Explicit selection, None meaning all databases.
        options: Resolved migration options.
        metadata: Batch run metadata.
    """

    id: str
    source: Endpoint
    target: Endpoint
    databases: DatabaseSelection = None
    options: MigrationOptions = field(default_factory=MigrationOptions)
    metadata: OperationMetadata = field(default_factory=OperationMetadata)

    @staticmethod
    def make_id(index: int, source: Endpoint, target: Endpoint) -> str:
        return f"migration_{index}_{source.instance}_to_{target.instance}"

    @classmethod
    def from_task(
        cls,
        task: MigrationTask,
        *,
        index: int,
        total: int,
        batch_id: str | None = None,
        strategy: MappingStrategy | str | None = None,
        mapping_type: MappingType | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Operation:
        """
        Bind a planned task with the mapping-wide options.

        Task level settings (per-task options, include-all, conflict policy,
        prefix and version) override the mapping options of the same name.
        """
        merged: dict[str, Any] = dict(options or {})
        merged.update(task.options)
        merged["include_all"] = task.includes_all
        if task.conflict_resolution is not None:
            merged["conflict_resolution"] = task.conflict_resolution
        if task.prefix_with is not None:
            merged["prefix_with"] = task.prefix_with
        if task.version is not None:
            merged["version"] = task.version

        op_id = cls.make_id(index, task.source, task.target)
        return cls(
            id=op_id,
            source=task.source,
            target=task.target,
            databases=task.databases,
            options=_resolve_options(merged, op_id),
            metadata=OperationMetadata(
                batch_id=batch_id,
                task_index=index,
                total_tasks=total,
                strategy=strategy.value if isinstance(strategy, MappingStrategy) else strategy,
                mapping_type=mapping_type.value if mapping_type else None,
            ),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Operation:
        """
        Build an operation from a plain ``{source, target, options, metadata}``
        dictionary. Source ``databases`` become the operation selection.
        """
        source = Endpoint.parse(data.get("source") or {})
        target = Endpoint.parse(data.get("target") or {})
        metadata = OperationMetadata.from_dict(data.get("metadata"))
        databases = parse_database_selection(data.get("databases", source.databases))
        op_id = data.get("id") or cls.make_id(metadata.task_index, source, target)
        return cls(
            id=op_id,
            source=source,
            target=target,
            databases=databases,
            options=_resolve_options(data.get("options"), op_id),
            metadata=metadata,
        )

    @classmethod
    def coerce(cls, value: Operation | Mapping[str, Any]) -> Operation:
        if isinstance(value, Operation):
            return value
        return cls.from_dict(value)

    def with_options(self, **changes: Any) -> Operation:
        """Return a copy with some options replaced."""
        return replace(self, options=replace(self.options, **changes))

    def validate(self) -> list[str]:
        """
        Check the operation structure.

        Returns:
            Error messages, empty when the operation is well formed.
        """
        errors: list[str] = []
        if not self.source.project:
            errors.append("Source project is required")
        if not self.source.instance:
            errors.append("Source instance is required")
        if not self.target.project:
            errors.append("Target project is required")
        if not self.target.instance:
            errors.append("Target instance is required")
        if not self.options.include_all and not self.databases:
            errors.append("Either specify databases or use include_all option")
        if self.options.schema_only and self.options.data_only:
            errors.append("Cannot specify both schema_only and data_only options")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "databases": list(self.databases) if self.databases is not None else None,
            "options": self.options.to_dict(),
            "metadata": self.metadata.to_dict(),
        }


# =============================================================================
# Execution tracking
# =============================================================================


@dataclass(frozen=True)
class ExecutionError:
    """An error recorded on an ExecutionState."""

    timestamp: datetime
    message: str
    stack: str | None
    phase: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "stack": self.stack,
            "phase": self.phase,
        }


@dataclass(frozen=True)
class ExecutionWarning:
    timestamp: datetime
    message: str
    phase: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "phase": self.phase,
        }


@dataclass
class ExecutionState:
    """
    Status and phase tracking of one execution (a task or a batch).

    This is a mutable dataclass owned by exactly one component: the engine
    for a task, the orchestrator for a batch. Status only moves forward
    (pending -> running -> completed/failed); any other transition raises
    ExecutionStateError.

    Attributes:
        id: Unique state identifier.
        name: What is being executed (tool name or ``batch-migration``).
        status: Current status.
        current_phase: Phase being executed.
        phases: Every planned phase, in order.
        completed_phases: Phases already left behind.
        errors: Recorded errors.
        warnings: Recorded warnings.
        metrics: Free-form execution metrics.
        result: Result attached on completion.
    """

    id: str = field(default_factory=lambda: f"state_{uuid4().hex[:12]}")
    name: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    current_phase: str | None = None
    phases: list[str] = field(default_factory=list)
    completed_phases: list[str] = field(default_factory=list)
    errors: list[ExecutionError] = field(default_factory=list)
    warnings: list[ExecutionWarning] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    _start_ms: int | None = field(default=None, repr=False)
    _end_ms: int | None = field(default=None, repr=False)

    def _transition(self, target: ExecutionStatus) -> None:
        if not self.status.can_transition_to(target):
            raise ExecutionStateError(self.id, self.status, target)
        self.status = target

    def start(self, phases: Sequence[str] = ()) -> None:
        self._transition(ExecutionStatus.RUNNING)
        self.started_at = _utcnow()
        self._start_ms = _monotonic_ms()
        self.phases = list(phases)
        self.completed_phases = []

    def set_current_phase(self, phase: str) -> None:
        if self.current_phase and self.current_phase not in self.completed_phases:
            self.completed_phases.append(self.current_phase)
        self.current_phase = phase

    def update_metrics(self, **metrics: Any) -> None:
        self.metrics.update(metrics)

    def add_error(self, error: BaseException | str) -> ExecutionError:
        if isinstance(error, BaseException):
            record = ExecutionError(
                timestamp=_utcnow(),
                message=str(error),
                stack=format_stack(error),
                phase=self.current_phase,
            )
        else:
            record = ExecutionError(
                timestamp=_utcnow(), message=error, stack=None, phase=self.current_phase
            )
        self.errors.append(record)
        return record

    def add_warning(self, message: str) -> ExecutionWarning:
        record = ExecutionWarning(timestamp=_utcnow(), message=message, phase=self.current_phase)
        self.warnings.append(record)
        return record

    def complete(self, result: Any = None) -> None:
        self._transition(ExecutionStatus.COMPLETED)
        self._finish()
        self.result = result
        if self.current_phase and self.current_phase not in self.completed_phases:
            self.completed_phases.append(self.current_phase)

    def fail(self, error: BaseException | str) -> ExecutionError:
        self._transition(ExecutionStatus.FAILED)
        self._finish()
        return self.add_error(error)

    def _finish(self) -> None:
        self.ended_at = _utcnow()
        self._end_ms = _monotonic_ms()
        self.metrics["actual_duration_ms"] = self.duration_ms

    @property
    def progress_percent(self) -> int:
        """Share of planned phases already completed (0-100)."""
        if not self.phases:
            return 0
        return round(len(self.completed_phases) / len(self.phases) * 100)

    @property
    def duration_ms(self) -> int:
        if self._start_ms is None:
            return 0
        end = self._end_ms if self._end_ms is not None else _monotonic_ms()
        return end - self._start_ms

    def status_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress_percent,
            "current_phase": self.current_phase,
            "duration_ms": self.duration_ms,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
        }


@dataclass
class TransferMetrics:
    """Database counts and byte totals of one task."""

    total_databases: int = 0
    processed_databases: int = 0
    total_size_bytes: int = 0
    processed_size_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class DatabaseDetail:
    """Transfer status of one database (``exported`` then ``completed``)."""

    name: str
    status: str
    original_size: int = 0
    backup_file: str | None = None

    @property
    def size_formatted(self) -> str:
        return format_bytes(self.original_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "original_size": self.original_size,
            "size_formatted": self.size_formatted,
            "backup_file": self.backup_file,
        }


# =============================================================================
# Collaborator values
# =============================================================================


@dataclass(frozen=True)
class DatabaseInfo:
    """A database listed on an instance."""

    name: str
    size_bytes: int = 0

    @property
    def size_formatted(self) -> str:
        return format_bytes(self.size_bytes)


@dataclass(frozen=True)
class BackupArtifact:
    """Dump file produced by the export primitive."""

    database: str
    backup_file: str


@dataclass(frozen=True)
class StatementFailure:
    statement: str
    error: str


@dataclass(frozen=True)
class ScriptApplyResult:
    """Outcome of applying a users/roles script statement by statement."""

    success_count: int = 0
    error_count: int = 0
    errors: tuple[StatementFailure, ...] = ()


@dataclass(frozen=True)
class UsersRolesSummary:
    """What the users/roles phase did, attached to the task result."""

    success_count: int
    error_count: int
    permissions_applied: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ToolValidation:
    is_valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class MigrationEstimate:
    """
    Heuristic duration estimate of one operation.

    Attributes:
        databases: Databases that were sized.
        total_size_bytes: Sum of their sizes.
        estimated_duration_minutes: Transfer time plus setup overhead.
        estimated_speed: Assumed throughput, e.g. ``"25 MB/min"``.
        factors: Human-readable factors behind the estimate.
    """

    databases: tuple[DatabaseInfo, ...]
    total_size_bytes: int
    estimated_duration_minutes: float
    estimated_speed: str
    factors: tuple[str, ...] = ()

    @property
    def estimated_duration_ms(self) -> int:
        return int(self.estimated_duration_minutes * 60 * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "databases": [{"name": db.name, "size_bytes": db.size_bytes} for db in self.databases],
            "total_size_bytes": self.total_size_bytes,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "estimated_speed": self.estimated_speed,
            "factors": list(self.factors),
        }


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class MigrationResult:
    """
    Outcome of one executed (or dry-run) operation.

    Attributes:
        success: Always True; failures are raised instead.
        migration_id: Identifier of the engine run.
        duration_ms: Wall-clock duration.
        metrics: Database counts and byte totals.
        migrated_databases: Names of databases that were transferred.
        source: Source endpoint label.
        target: Target endpoint label.
        database_details: Per-database status.
        users_roles: Users/roles summary when that phase ran.
        dry_run: True when nothing was transferred.
        estimate: Estimate computed by a dry run.
    """

    success: bool
    migration_id: str
    duration_ms: int
    metrics: TransferMetrics
    migrated_databases: tuple[str, ...]
    source: str
    target: str
    database_details: tuple[DatabaseDetail, ...] = ()
    users_roles: UsersRolesSummary | None = None
    dry_run: bool = False
    estimate: MigrationEstimate | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "migration_id": self.migration_id,
            "duration_ms": self.duration_ms,
            "metrics": self.metrics.to_dict(),
            "migrated_databases": list(self.migrated_databases),
            "source": self.source,
            "target": self.target,
            "database_details": [detail.to_dict() for detail in self.database_details],
            "users_roles": self.users_roles.to_dict() if self.users_roles else None,
            "dry_run": self.dry_run,
            "estimate": self.estimate.to_dict() if self.estimate else None,
        }


@dataclass(frozen=True)
class TaskSuccess:
    operation: Operation
    result: MigrationResult
    duration_ms: int


@dataclass(frozen=True)
class TaskFailure:
    """
    A failed task as recorded by the orchestrator.

    Attributes:
        operation: The failed operation.
        error: Error message.
        stack: Formatted traceback.
        duration_ms: Time spent before failing.
        exception: The exception itself, kept for re-raising.
    """

    operation: Operation
    error: str
    stack: str | None
    duration_ms: int
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_exception(
        cls, operation: Operation, error: BaseException, duration_ms: int
    ) -> TaskFailure:
        return cls(
            operation=operation,
            error=str(error),
            stack=format_stack(error),
            duration_ms=duration_ms,
            exception=error,
        )


@dataclass
class BatchResult:
    """
    Successful, failed and skipped tasks of a batch.

    Only the orchestrator's completion handling appends to these lists.
    """

    successful: list[TaskSuccess] = field(default_factory=list)
    failed: list[TaskFailure] = field(default_factory=list)
    skipped: list[Operation] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed) + len(self.skipped)

    def executed_ids(self) -> set[str]:
        return {s.operation.id for s in self.successful} | {f.operation.id for f in self.failed}


@dataclass(frozen=True)
class BatchProgress:
    """
    A progress event emitted by the orchestrator.

    Attributes:
        phase: Initialization, Validation, Execution, Retry,
            Consolidation or Complete.
        current: Units done.
        total: Units planned.
        status: Human-readable status line.
        details: Extra counters (successful/failed).
    """

    phase: str
    current: int = 0
    total: int = 0
    status: str = ""
    details: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class ActiveTask:
    id: str
    started_at: datetime
    elapsed_ms: int


@dataclass(frozen=True)
class BatchStatus:
    """Point-in-time snapshot of a running batch."""

    active: int
    completed: int
    failed: int
    pending: int
    active_migrations: tuple[ActiveTask, ...] = ()


@dataclass(frozen=True)
class CancelResult:
    cancelled: bool
    completed: int
    failed: int


# =============================================================================
# Reporting
# =============================================================================


@dataclass(frozen=True)
class BatchSummary:
    strategy: str
    mapping_type: str
    total_tasks: int
    successful: int
    failed: int
    skipped: int
    duration_ms: int
    duration_formatted: str
    success_rate: str


@dataclass(frozen=True)
class SuccessRecord:
    id: str
    source: str
    target: str
    databases: tuple[str, ...]
    duration_ms: int
    duration_formatted: str


@dataclass(frozen=True)
class FailureRecord:
    id: str
    source: str
    target: str
    error: str
    duration_ms: int


@dataclass(frozen=True)
class SkippedRecord:
    id: str
    source: str
    target: str
    reason: str = SKIPPED_REASON


@dataclass(frozen=True)
class ReportMetadata:
    executed_at: datetime
    coordinator: str
    max_parallel: int
    stop_on_error: bool
    retry_failed: bool


@dataclass(frozen=True)
class PerformanceStats:
    """Duration aggregates over successful tasks."""

    avg_duration_ms: int
    min_duration_ms: int
    max_duration_ms: int
    total_duration_ms: int


@dataclass(frozen=True)
class BatchReport:
    """
    Read-only summary of a finished batch, built once at reporting time.

    ``performance`` is only present when at least one task succeeded.
    """

    summary: BatchSummary
    successful: tuple[SuccessRecord, ...]
    failed: tuple[FailureRecord, ...]
    skipped: tuple[SkippedRecord, ...]
    metadata: ReportMetadata
    performance: PerformanceStats | None = None

    @classmethod
    def build(
        cls,
        result: BatchResult,
        *,
        strategy: str,
        mapping_type: str,
        duration_ms: int,
        metadata: ReportMetadata,
    ) -> BatchReport:
        total = result.total
        success_rate = f"{len(result.successful) / total * 100:.2f}%" if total else "0%"

        summary = BatchSummary(
            strategy=strategy,
            mapping_type=mapping_type,
            total_tasks=total,
            successful=len(result.successful),
            failed=len(result.failed),
            skipped=len(result.skipped),
            duration_ms=duration_ms,
            duration_formatted=format_duration(duration_ms),
            success_rate=success_rate,
        )

        performance = None
        if result.successful:
            durations = [s.duration_ms for s in result.successful]
            performance = PerformanceStats(
                avg_duration_ms=math.floor(sum(durations) / len(durations) + 0.5),
                min_duration_ms=min(durations),
                max_duration_ms=max(durations),
                total_duration_ms=duration_ms,
            )

        return cls(
            summary=summary,
            successful=tuple(
                SuccessRecord(
                    id=s.operation.id,
                    source=s.operation.source.label,
                    target=s.operation.target.label,
                    databases=tuple(s.result.migrated_databases),
                    duration_ms=s.duration_ms,
                    duration_formatted=format_duration(s.duration_ms),
                )
                for s in result.successful
            ),
            failed=tuple(
                FailureRecord(
                    id=f.operation.id,
                    source=f.operation.source.label,
                    target=f.operation.target.label,
                    error=f.error,
                    duration_ms=f.duration_ms,
                )
                for f in result.failed
            ),
            skipped=tuple(
                SkippedRecord(id=op.id, source=op.source.label, target=op.target.label)
                for op in result.skipped
            ),
            metadata=metadata,
            performance=performance,
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the report.
        """
        data: dict[str, Any] = {
            "summary": asdict(self.summary),
            "successful": [
                {**asdict(record), "databases": list(record.databases)}
                for record in self.successful
            ],
            "failed": [asdict(record) for record in self.failed],
            "skipped": [asdict(record) for record in self.skipped],
            "metadata": {
                **asdict(self.metadata),
                "executed_at": self.metadata.executed_at.isoformat(),
            },
        }
        if self.performance is not None:
            data["performance"] = asdict(self.performance)
        return data


__all__ = [
    "SKIPPED_REASON",
    "format_duration",
    "format_bytes",
    "format_stack",
    "parse_database_selection",
    "Endpoint",
    "MigrationTask",
    "OperationMetadata",
    "Operation",
    "ExecutionError",
    "ExecutionWarning",
    "ExecutionState",
    "TransferMetrics",
    "DatabaseDetail",
    "DatabaseInfo",
    "BackupArtifact",
    "StatementFailure",
    "ScriptApplyResult",
    "UsersRolesSummary",
    "ToolValidation",
    "MigrationEstimate",
    "MigrationResult",
    "TaskSuccess",
    "TaskFailure",
    "BatchResult",
    "BatchProgress",
    "ActiveTask",
    "BatchStatus",
    "CancelResult",
    "BatchSummary",
    "SuccessRecord",
    "FailureRecord",
    "SkippedRecord",
    "ReportMetadata",
    "PerformanceStats",
    "BatchReport",
]
