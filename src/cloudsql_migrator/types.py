"""Enumerations and type aliases shared by the planner, orchestrator and engine."""

from __future__ import annotations

from enum import Enum

# "project:instance" (project falls back to "default")
EndpointKey = str

# Database names selected for a task; None means every database of the source
DatabaseSelection = tuple[str, ...] | None

TOOL_NAME = "gcp.cloudsql.migrate"

SYSTEM_DATABASES = frozenset({"postgres", "template0", "template1"})


class MappingStrategy(Enum):
    """
    How a mapping turns sources and targets into migration tasks.

    Attributes:
        SIMPLE: One target takes every source, otherwise sources and
            targets are paired by index.
        CONSOLIDATE: Every source goes to the first target.
        VERSION_BASED: Sources grouped per PostgreSQL version, one target
            per version.
        CUSTOM_MAPPING: Explicit list of source(s) -> target entries.
    """

    SIMPLE = "simple"
    CONSOLIDATE = "consolidate"
    VERSION_BASED = "version-based"
    CUSTOM_MAPPING = "custom-mapping"


class ConflictResolution(Enum):
    """
    Naming policy for databases with the same name coming from several
    sources into one target.
    """

    FAIL = "fail"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    MERGE = "merge"


class MappingType(Enum):
    """Topology of a mapping, derived from distinct source/target counts."""

    ONE_TO_ONE = "1:1"
    MANY_TO_ONE = "N:1"
    ONE_TO_MANY = "1:N"
    MANY_TO_MANY = "N:N"

    @classmethod
    def from_counts(cls, sources: int, targets: int) -> MappingType:
        """
        Classify a mapping by its distinct endpoint counts.

        Anything that is not N:1, N:N or 1:N (including empty mappings)
        is reported as 1:1.

        Example:
            >>> MappingType.from_counts(3, 1)
            <MappingType.MANY_TO_ONE: 'N:1'>
        """
        if sources > 1 and targets == 1:
            return cls.MANY_TO_ONE
        if sources > 1 and targets > 1:
            return cls.MANY_TO_MANY
        if sources == 1 and targets > 1:
            return cls.ONE_TO_MANY
        return cls.ONE_TO_ONE


class ExecutionStatus(Enum):
    """
    Status of a task-level or batch-level execution.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                          \\-> FAILED

    A PENDING execution may also fail directly (e.g. when setup raises
    before it starts). Terminal statuses never change again.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """True for COMPLETED and FAILED."""
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)

    def can_transition_to(self, target: ExecutionStatus) -> bool:
        """
        Check if transition to target status is valid.

        Args:
            target: The status to transition to.

        Returns:
            True if the transition moves strictly forward.
        """
        valid_transitions: dict[ExecutionStatus, tuple[ExecutionStatus, ...]] = {
            ExecutionStatus.PENDING: (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
            ExecutionStatus.RUNNING: (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED),
        }
        return target in valid_transitions.get(self, ())


__all__ = [
    "EndpointKey",
    "DatabaseSelection",
    "TOOL_NAME",
    "SYSTEM_DATABASES",
    "MappingStrategy",
    "ConflictResolution",
    "MappingType",
    "ExecutionStatus",
]
