"""
Collaborator protocols for the orchestrator and the execution engine.

The core never talks to Cloud SQL, pg_dump/pg_restore or the terminal
directly. It consumes these contracts instead:

Protocols:
- Tool: Validates, executes and estimates one operation
- ConnectionProvider: Lists databases, tests connectivity, owns the pool
- ExportPrimitive / ImportPrimitive: Dump and restore one database
- PermissionsCollaborator: Users, roles and grants (flag-gated)
- SupportsCleanup: Optional ``cleanup()`` on any collaborator
- ProgressSink: Observational progress reporting

Progress sinks:
- NullProgressSink: Discards everything
- CallbackProgressSink: Turns sink calls into ProgressEvent callbacks
- GuardedProgressSink: Logs and ignores the exceptions of another sink

Example:
    >>> class StdoutSink:
    ...     def start_phase(self, name: str, total: int) -> None:
    ...         print(f"> {name} ({total})")
    ...     def update(self, current, status=None, size_bytes=0) -> None: ...
    ...     def complete_phase(self, summary=None) -> None: ...
    ...     def status(self, message, level="info") -> None:
    ...         print(f"[{level}] {message}")
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from cloudsql_migrator.config import PasswordStrategy
    from cloudsql_migrator.models import (
        BackupArtifact,
        BatchProgress,
        DatabaseInfo,
        Endpoint,
        MigrationEstimate,
        MigrationResult,
        Operation,
        ScriptApplyResult,
        ToolValidation,
    )

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """
    A progress notification from the execution engine.

    Attributes:
        kind: ``start_phase``, ``update``, ``complete_phase`` or ``status``.
        phase: Phase the event belongs to.
        current: Units done (``update``).
        total: Units planned (``start_phase``).
        message: Status text, phase summary or status message.
        size_bytes: Bytes transferred by the unit that just finished.
        level: ``info``, ``success``, ``warning`` or ``error`` (``status``).
    """

    kind: str
    phase: str | None = None
    current: int = 0
    total: int = 0
    message: str | None = None
    size_bytes: int = 0
    level: str = "info"


ProgressCallback = Callable[[ProgressEvent], None]
BatchProgressCallback = Callable[["BatchProgress"], None]


@runtime_checkable
class ProgressSink(Protocol):
    """
    Receives progress from the execution engine.

    Sinks are observational only: nothing they do changes control flow.
    """

    def start_phase(self, name: str, total: int) -> None:
        """Start a phase with ``total`` units of work."""
        ...

    def update(self, current: int, status: str | None = None, size_bytes: int = 0) -> None:
        """Report ``current`` units done."""
        ...

    def complete_phase(self, summary: str | None = None) -> None:
        """Finish the current phase, with a failure summary if it failed."""
        ...

    def status(self, message: str, level: str = "info") -> None:
        """Report a status line."""
        ...


class NullProgressSink:
    """Progress sink that discards every notification."""

    def start_phase(self, name: str, total: int) -> None:
        pass

    def update(self, current: int, status: str | None = None, size_bytes: int = 0) -> None:
        pass

    def complete_phase(self, summary: str | None = None) -> None:
        pass

    def status(self, message: str, level: str = "info") -> None:
        pass


class CallbackProgressSink:
    """
    Progress sink forwarding every notification to a callback as a
    ProgressEvent.

    Exceptions raised by the callback are logged and ignored.

    Example:
        >>> events = []
        >>> sink = CallbackProgressSink(events.append)
        >>> sink.start_phase("Export", 2)
        >>> events[0].kind, events[0].phase, events[0].total
        ('start_phase', 'Export', 2)
    """

    def __init__(self, callback: ProgressCallback) -> None:
        self._callback = callback
        self._phase: str | None = None

    @property
    def current_phase(self) -> str | None:
        return self._phase

    def _emit(self, event: ProgressEvent) -> None:
        try:
            self._callback(event)
        except Exception:
            logger.warning(
                "Progress callback failed for %s event",
                event.kind,
                exc_info=True,
                extra={"phase": event.phase},
            )

    def start_phase(self, name: str, total: int) -> None:
        self._phase = name
        self._emit(ProgressEvent(kind="start_phase", phase=name, total=total))

    def update(self, current: int, status: str | None = None, size_bytes: int = 0) -> None:
        self._emit(
            ProgressEvent(
                kind="update",
                phase=self._phase,
                current=current,
                message=status,
                size_bytes=size_bytes,
            )
        )

    def complete_phase(self, summary: str | None = None) -> None:
        self._emit(ProgressEvent(kind="complete_phase", phase=self._phase, message=summary))

    def status(self, message: str, level: str = "info") -> None:
        self._emit(ProgressEvent(kind="status", phase=self._phase, message=message, level=level))


class GuardedProgressSink:
    """
    Wraps any ProgressSink so that its exceptions are logged and ignored.

    The execution engine reports through this wrapper, so a failing sink
    never fails a migration.

    Example:
        >>> sink = GuardedProgressSink(terminal_renderer)
        >>> sink.start_phase("Export", 3)  # never raises
    """

    def __init__(self, sink: ProgressSink) -> None:
        self._sink = sink

    @property
    def sink(self) -> ProgressSink:
        return self._sink

    def _call(self, method: Callable[..., None], *args: Any) -> None:
        try:
            method(*args)
        except Exception:
            logger.warning(
                "Progress sink %s failed in %s",
                type(self._sink).__name__,
                method.__name__,
                exc_info=True,
            )

    def start_phase(self, name: str, total: int) -> None:
        self._call(self._sink.start_phase, name, total)

    def update(self, current: int, status: str | None = None, size_bytes: int = 0) -> None:
        self._call(self._sink.update, current, status, size_bytes)

    def complete_phase(self, summary: str | None = None) -> None:
        self._call(self._sink.complete_phase, summary)

    def status(self, message: str, level: str = "info") -> None:
        self._call(self._sink.status, message, level)


@runtime_checkable
class Tool(Protocol):
    """
    A tool able to run one migration operation.

    The orchestrator depends only on this contract; CloudSQLMigrationTool
    is the production implementation.
    """

    @property
    def name(self) -> str:
        """Tool name, e.g. ``gcp.cloudsql.migrate``."""
        ...

    async def validate(self, operation: Operation) -> ToolValidation:
        """
        Check that the operation can run.

        Raises:
            MigratorError: If it cannot.
        """
        ...

    async def execute(
        self,
        operation: Operation,
        on_progress: ProgressCallback | None = None,
    ) -> MigrationResult:
        """Run the operation, raising on failure."""
        ...

    async def get_estimate(self, operation: Operation) -> MigrationEstimate:
        """Estimate size and duration of the operation."""
        ...


@runtime_checkable
class ConnectionProvider(Protocol):
    """
    Access to Cloud SQL instances.

    Timeouts and retries of individual calls are the provider's concern.
    """

    async def list_databases(
        self,
        project: str | None,
        instance: str,
        is_source: bool,
        connection: Endpoint,
    ) -> Sequence[DatabaseInfo]:
        """List the databases of an instance with their sizes."""
        ...

    async def test_connection(
        self,
        project: str | None,
        instance: str,
        database: str,
        is_source: bool,
        connection: Endpoint,
    ) -> None:
        """
        Connect to ``database`` on the instance.

        Raises:
            Exception: If the database cannot be reached.
        """
        ...

    async def close_all_connections(self) -> None:
        """Release every pooled connection."""
        ...


@runtime_checkable
class ExportPrimitive(Protocol):
    """Dumps one database of the source instance."""

    async def export_database(
        self,
        project: str | None,
        instance: str,
        database: str,
        *,
        schema_only: bool,
        data_only: bool,
        connection: Endpoint,
    ) -> BackupArtifact:
        ...


@runtime_checkable
class ImportPrimitive(Protocol):
    """Restores one dump into the target instance."""

    async def import_database(
        self,
        project: str | None,
        instance: str,
        database: str,
        backup_file: str,
        *,
        jobs: int,
        schema_only: bool,
        data_only: bool,
        connection: Endpoint,
    ) -> None:
        ...


@runtime_checkable
class PermissionsCollaborator(Protocol):
    """
    Extracts users, roles and grants from the source and recreates them on
    the target. Only used when ``include_users_roles`` is set.
    """

    async def extract_users_and_roles(
        self,
        project: str | None,
        instance: str,
        connection: Endpoint,
        selected_users: Sequence[str] | None,
    ) -> Any:
        ...

    async def extract_database_permissions(
        self,
        project: str | None,
        instance: str,
        databases: Sequence[str],
        connection: Endpoint,
    ) -> Any:
        ...

    async def generate_create_script(
        self,
        extracted: Any,
        password_strategy: PasswordStrategy | None,
    ) -> str:
        """Return the path (or body) of the CREATE ROLE script."""
        ...

    async def apply_users_and_roles(
        self,
        project: str | None,
        instance: str,
        script: str,
        connection: Endpoint,
    ) -> ScriptApplyResult:
        """Apply the script statement by statement, collecting failures."""
        ...

    async def generate_permissions_script(
        self,
        permissions: Any,
        databases: Sequence[str],
    ) -> str:
        ...

    async def apply_permissions_script(
        self,
        project: str | None,
        instance: str,
        script: str,
        connection: Endpoint,
    ) -> Any:
        ...

    async def cleanup(self) -> None:
        ...


@runtime_checkable
class SupportsCleanup(Protocol):
    """Collaborator owning temporary artifacts that must be removed."""

    async def cleanup(self) -> None:
        ...


__all__ = [
    "ProgressEvent",
    "ProgressCallback",
    "BatchProgressCallback",
    "ProgressSink",
    "NullProgressSink",
    "CallbackProgressSink",
    "GuardedProgressSink",
    "Tool",
    "ConnectionProvider",
    "ExportPrimitive",
    "ImportPrimitive",
    "PermissionsCollaborator",
    "SupportsCleanup",
]
