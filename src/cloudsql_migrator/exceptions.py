"""
Exceptions for the cloudsql_migrator batch migration system.

This module defines every exception raised by the planner, the batch
orchestrator and the per-task execution engine, organized by the stage that
raises them.

Exception Hierarchy:
    MigratorError (base)
    +-- ConfigurationError
    |   +-- DatabaseConflictError
    +-- ValidationError
    +-- ExecutionStateError
    +-- ConnectivityError
    +-- TransferError
    +-- PermissionApplyError
    +-- BatchAbortError
    +-- CleanupWarning

Error Classification:
    Every exception carries an ErrorClassification describing its severity,
    whether it can be recovered from, a stable error code and a suggested
    operator action. classify_exception() extends this to arbitrary
    exceptions raised by collaborators.

Propagation:
    - ConfigurationError and ValidationError abort a batch before any task
      executes.
    - ConnectivityError and TransferError are fatal to one task only.
    - PermissionApplyError and CleanupWarning are recorded and logged, never
      raised out of the execution engine.
    - BatchAbortError is raised by the orchestrator only when stop_on_error
      triggers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cloudsql_migrator.models import BatchResult
    from cloudsql_migrator.types import ExecutionStatus

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: Batch-level failure requiring immediate attention.
        ERROR: Failure of a task or of the batch setup.
        WARNING: Issue that did not stop the migration.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: Operator action (fixing the mapping, credentials...)
            lets the migration be re-run.
        TRANSIENT: May succeed when retried, e.g. by the retry pass.
        FATAL: Nothing to retry; the batch or task is over.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class MigratorError(Exception):
    """
    Base exception for all cloudsql_migrator errors.

    Attributes:
        message: Human-readable error description.
        operation_id: The operation that caused the error, if applicable.
        recoverable: Whether the error can be recovered from.
        suggested_action: Suggested action for recovery.
        classification: Error classification metadata.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATOR_ERROR",
        category="general",
        suggested_action="Review migration logs and re-run the failed operations",
    )

    def __init__(
        self,
        message: str,
        *,
        operation_id: str | None = None,
        recoverable: bool = False,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.operation_id = operation_id
        self.recoverable = recoverable
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification to provide
        specific classification metadata for their error type.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        """Severity level of this error."""
        return self.classification.severity

    @property
    def error_code(self) -> str:
        """Stable error code (e.g., "TRANSFER_ERROR")."""
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "operation_id": self.operation_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class ConfigurationError(MigratorError):
    """
    Raised for invalid or missing mapping, task or operation fields.

    Configuration errors are detected before any data is moved: unknown
    strategies, mappings failing validation, malformed instance files.

    Attributes:
        errors: Every structural issue that was found.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CONFIGURATION_ERROR",
        category="configuration",
        suggested_action="Fix the migration mapping or options and run the batch again",
    )

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        *,
        operation_id: str | None = None,
    ) -> None:
        self.errors = list(errors or [])
        super().__init__(message, operation_id=operation_id, recoverable=True)


class DatabaseConflictError(ConfigurationError):
    """
    Raised when several sources feed a database with the same name into one
    target and the conflict resolution policy is ``fail``.

    Attributes:
        database: The colliding database name.
        sources: The ``project:instance`` keys providing that database.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DATABASE_NAME_CONFLICT",
        category="configuration",
        suggested_action=(
            "Use the prefix, suffix or merge conflict resolution, or migrate "
            "the colliding databases to different targets"
        ),
    )

    def __init__(self, database: str, sources: list[str]) -> None:
        self.database = database
        self.sources = list(sources)
        super().__init__(f"Database name conflict: {database} exists in multiple sources")


class ValidationError(MigratorError):
    """
    Raised when pre-execution validation of a batch fails.

    The batch never starts executing when this is raised.

    Attributes:
        failures: ``(operation_id, error message)`` for every failing task.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BATCH_VALIDATION_FAILED",
        category="validation",
        suggested_action="Check connectivity and database selection of the listed migrations",
    )

    def __init__(self, failures: list[tuple[str, str]]) -> None:
        self.failures = list(failures)
        details = "\n".join(f"{op_id}: {error}" for op_id, error in self.failures)
        super().__init__(f"Validation failed for {len(self.failures)} migrations:\n{details}")


class ExecutionStateError(MigratorError):
    """
    Raised when an ExecutionState is asked to move backwards.

    Attributes:
        current_status: Status the state is in.
        target_status: Status that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATUS_TRANSITION",
        category="state",
        suggested_action="Execution states only move pending -> running -> completed/failed",
    )

    def __init__(
        self,
        state_id: str,
        current_status: ExecutionStatus,
        target_status: ExecutionStatus,
    ) -> None:
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid status transition for {state_id}: "
            f"{current_status.value} -> {target_status.value}"
        )


class ConnectivityError(MigratorError):
    """
    Raised when an endpoint is unreachable during pre-flight checks,
    tool validation or post-migration validation.

    Attributes:
        endpoint: ``project:instance`` label of the endpoint.
        database: Database that was being reached, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CONNECTIVITY_ERROR",
        category="connectivity",
        suggested_action="Check instance IP, credentials and network access, then retry",
    )

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        database: str | None = None,
        operation_id: str | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.database = database
        super().__init__(message, operation_id=operation_id, recoverable=True)


class TransferError(MigratorError):
    """
    Raised when an export or import primitive fails.

    Fatal to the task: the remaining databases of the phase and the
    remaining phases are not attempted.

    Attributes:
        database: Database being transferred.
        direction: ``"export"`` or ``"import"``.
        original_error: Message of the underlying failure.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="TRANSFER_ERROR",
        category="transfer",
        suggested_action="Check disk space and dump/restore tool output, then retry the task",
    )

    def __init__(self, database: str, direction: str, error: str) -> None:
        self.database = database
        self.direction = direction
        self.original_error = error
        super().__init__(
            f"{direction.capitalize()} failed for database {database}: {error}",
            recoverable=True,
        )


class PermissionApplyError(MigratorError):
    """
    A single statement of a users/roles script failed on the target.

    Never raised by the engine: collected, summarized as a warning, and the
    migration continues.

    Attributes:
        statement: The (truncated) SQL statement.
        original_error: Message returned by the target.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PERMISSION_APPLY_FAILED",
        category="permissions",
        suggested_action="Review the failed statements and apply them manually if needed",
    )

    def __init__(self, statement: str, error: str) -> None:
        self.statement = statement
        self.original_error = error
        super().__init__(f"Statement failed: {statement}: {error}", recoverable=True)


class BatchAbortError(MigratorError):
    """
    Raised by the orchestrator when ``stop_on_error`` is set and a task fails.

    Tasks already in flight were allowed to finish; tasks never started are
    listed in ``result.skipped``.

    Attributes:
        original_error: The task failure that stopped the batch.
        result: Partial batch bookkeeping at abort time.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BATCH_ABORTED",
        category="batch",
        suggested_action="Fix the failing migration and re-run the skipped ones",
    )

    stop_execution = True

    def __init__(
        self,
        operation_id: str,
        original_error: BaseException,
        result: BatchResult | None = None,
    ) -> None:
        self.original_error = original_error
        self.result = result
        super().__init__(
            f"Stopping batch execution due to failure in {operation_id}: {original_error}",
            operation_id=operation_id,
        )


class CleanupWarning(MigratorError):
    """
    A cleanup step failed. Always caught and logged, never raised.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CLEANUP_FAILED",
        category="cleanup",
        suggested_action="Close leftover connections and remove temporary dump files manually",
    )


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    For MigratorError subclasses, returns their specific classification.
    For other exceptions, returns a generic classification.

    Example:
        >>> try:
        ...     await tool.execute(operation)
        ... except Exception as e:
        ...     if classify_exception(e).severity.should_alert:
        ...         notify(e)
    """
    if isinstance(exc, MigratorError):
        return exc.classification
    if isinstance(exc, asyncio.CancelledError):
        return ErrorClassification(
            severity=ErrorSeverity.WARNING,
            recoverability=ErrorRecoverability.TRANSIENT,
            error_code="CANCELLED",
            category="cancellation",
            suggested_action="The task was cancelled before it finished; run it again",
        )

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs for details.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
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
    "classify_exception",
]
