"""
Migration mappings and the mapping planner.

A MigrationMapping is the declarative description of which source instances
migrate to which targets. Planning is pure and synchronous: the same mapping
always yields the same tasks in the same order, and no I/O happens here.

Strategies:
    - simple: one target takes every source; otherwise sources and targets
      are paired by index (sources without a target at their index are
      dropped)
    - consolidate: every source goes to the first target, prefixed by its
      instance name when the conflict policy is ``prefix``
    - version-based: one task per source of every version group
    - custom-mapping: explicit ``source(s) -> target`` entries

Example:
    >>> mapping = MigrationMapping.from_dict({
    ...     "strategy": "consolidate",
    ...     "sources": [{"project": "p", "instance": "a"}, {"project": "p", "instance": "b"}],
    ...     "target": {"project": "p", "instance": "t"},
    ...     "conflictResolution": "prefix",
    ... })
    >>> [task.prefix_with for task in mapping.generate_execution_plan()]
    ['a', 'b']
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_snake

from cloudsql_migrator.config import get_settings
from cloudsql_migrator.exceptions import ConfigurationError, DatabaseConflictError
from cloudsql_migrator.models import (
    Endpoint,
    MigrationTask,
    Operation,
    parse_database_selection,
)
from cloudsql_migrator.types import ConflictResolution, MappingStrategy, MappingType

logger = logging.getLogger(__name__)


def _normalize(data: Any) -> Any:
    if not isinstance(data, Mapping):
        return data
    return {to_snake(key): value for key, value in data.items() if value is not None}


class CustomMigration(BaseModel):
    """One entry of a custom mapping: ``sources`` (or ``source``) -> ``target``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    sources: tuple[Endpoint, ...] | None = None
    source: Endpoint | None = None
    target: Endpoint | None = None
    databases: tuple[str, ...] | None = None
    include_all: bool | None = None
    conflict_resolution: ConflictResolution | None = None
    version: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        data = _normalize(data)
        if isinstance(data, dict):
            options = _normalize(data.pop("options", None) or {})
            if "include_all" not in data and "include_all" in options:
                data["include_all"] = options.pop("include_all")
            data["options"] = options
        return data

    @field_validator("databases", mode="before")
    @classmethod
    def _split_databases(cls, value: Any) -> Any:
        return parse_database_selection(value)


class VersionGroup(BaseModel):
    """Sources of one PostgreSQL version and the target they migrate to."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    sources: tuple[Endpoint, ...] = ()
    target: Endpoint | None = None


@dataclass(frozen=True)
class MappingMetadata:
    """
    Derived facts about a mapping.

    Attributes:
        mapping_type: Topology from distinct source/target counts.
        total_sources: Distinct source endpoints.
        total_targets: Distinct target endpoints.
        created_at: When the mapping was created.
    """

    mapping_type: MappingType
    total_sources: int
    total_targets: int
    created_at: datetime


@dataclass(frozen=True)
class MappingValidation:
    """Result of :meth:`MigrationMapping.validate`."""

    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class SourcedDatabase:
    """A database name and the source endpoint it comes from."""

    name: str
    source: Endpoint

    @classmethod
    def coerce(cls, value: SourcedDatabase | Mapping[str, Any]) -> SourcedDatabase:
        if isinstance(value, SourcedDatabase):
            return value
        return cls(name=value["name"], source=Endpoint.parse(value["source"]))


@dataclass(frozen=True)
class ResolvedDatabase:
    """
    A database name after conflict resolution.

    Attributes:
        name: Name to use on the target.
        source: ``project:instance`` key of the source (None when merged).
        original_name: Name on the source when it was renamed.
        sources: Every contributing source key (merged records only).
        merged: True when several sources share this name on the target.
    """

    name: str
    source: str | None = None
    original_name: str | None = None
    sources: tuple[str, ...] = ()
    merged: bool = False


class MigrationMapping(BaseModel):
    """
    Declarative description of a batch migration.

    Built once per batch request and never mutated: derive variants with
    :meth:`clone`. ``metadata`` is recomputed from the current fields on
    every access.

    Attributes:
        strategy: Planning strategy (unknown values are kept as strings so
            that :meth:`validate` can report them).
        sources: Source endpoints (simple and consolidate strategies).
        targets: Target endpoints; ``target`` is accepted as shorthand.
        migrations: Entries of the custom-mapping strategy.
        version_mapping: Version -> group, for the version-based strategy.
        conflict_resolution: Policy for colliding database names.
        auto_detect_version: Whether versions may be detected by callers.
        options: Mapping-wide options (``dryRun``, ``maxParallel``...).
        created_at: Creation timestamp.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    strategy: MappingStrategy | str = MappingStrategy.SIMPLE
    sources: tuple[Endpoint, ...] = ()
    targets: tuple[Endpoint, ...] = ()
    migrations: tuple[CustomMigration, ...] = ()
    version_mapping: dict[str, VersionGroup] = Field(default_factory=dict)
    conflict_resolution: ConflictResolution = ConflictResolution.FAIL
    auto_detect_version: bool = True
    options: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="before")
    @classmethod
    def _normalize_input(cls, data: Any) -> Any:
        data = _normalize(data)
        if not isinstance(data, dict):
            return data
        target = data.pop("target", None)
        if not data.get("targets") and target is not None:
            data["targets"] = [target]
        metadata = _normalize(data.pop("metadata", None) or {})
        if "created_at" not in data and metadata.get("created_at"):
            data["created_at"] = metadata["created_at"]
        return data

    @field_validator("strategy", mode="before")
    @classmethod
    def _parse_strategy(cls, value: Any) -> Any:
        try:
            return MappingStrategy(value)
        except ValueError:
            return str(value)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationMapping:
        """
        Build a mapping from a plain dictionary (camelCase or snake_case).

        Raises:
            ConfigurationError: If the data cannot be interpreted, e.g. an
                unknown conflict resolution value.
        """
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            errors = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            ]
            raise ConfigurationError(
                f"Invalid migration mapping: {', '.join(errors)}", errors
            ) from exc

    @classmethod
    def from_parser_output(cls, parsed: Mapping[str, Any], **options: Any) -> MigrationMapping:
        """Build a mapping from instance file loader output plus overrides."""
        return cls.from_dict({**parsed, **options})

    # -------------------------------------------------------------------------
    # Derived metadata
    # -------------------------------------------------------------------------

    def _source_endpoints(self) -> list[Endpoint]:
        endpoints = list(self.sources)
        for migration in self.migrations:
            if migration.sources:
                endpoints.extend(migration.sources)
            elif migration.source is not None:
                endpoints.append(migration.source)
        for group in self.version_mapping.values():
            endpoints.extend(group.sources)
        return endpoints

    def _target_endpoints(self) -> list[Endpoint]:
        endpoints = list(self.targets)
        endpoints.extend(m.target for m in self.migrations if m.target is not None)
        endpoints.extend(g.target for g in self.version_mapping.values() if g.target is not None)
        return endpoints

    @property
    def metadata(self) -> MappingMetadata:
        total_sources = len({endpoint.key for endpoint in self._source_endpoints()})
        total_targets = len({endpoint.key for endpoint in self._target_endpoints()})
        return MappingMetadata(
            mapping_type=MappingType.from_counts(total_sources, total_targets),
            total_sources=total_sources,
            total_targets=total_targets,
            created_at=self.created_at,
        )

    @property
    def mapping_type(self) -> MappingType:
        return self.metadata.mapping_type

    @property
    def strategy_name(self) -> str:
        if isinstance(self.strategy, MappingStrategy):
            return self.strategy.value
        return self.strategy

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def generate_execution_plan(self) -> list[MigrationTask]:
        """
        Turn the mapping into an ordered list of migration tasks.

        Raises:
            ConfigurationError: If the strategy is unknown or a strategy
                specific target is missing.
        """
        if not isinstance(self.strategy, MappingStrategy):
            raise ConfigurationError(f"Unknown strategy: {self.strategy}")
        return _PLANNERS[self.strategy](self)

    def validate(self) -> MappingValidation:  # type: ignore[override]
        """
        Check the mapping structure.

        Structural problems are errors; an N:1 mapping with the ``fail``
        policy and duplicate source -> target paths are warnings.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not isinstance(self.strategy, MappingStrategy):
            errors.append(f"Invalid strategy: {self.strategy}")
        elif self.strategy in (MappingStrategy.SIMPLE, MappingStrategy.CONSOLIDATE):
            if not self.sources:
                errors.append("At least one source instance is required")
            if not self.targets:
                errors.append("At least one target instance is required")
        elif self.strategy is MappingStrategy.VERSION_BASED:
            if not self.version_mapping:
                errors.append("Version mapping is required for version-based strategy")
        elif self.strategy is MappingStrategy.CUSTOM_MAPPING:
            if not self.migrations:
                errors.append("At least one migration mapping is required")

        if (
            self.mapping_type is MappingType.MANY_TO_ONE
            and self.conflict_resolution is ConflictResolution.FAIL
        ):
            warnings.append(
                'N:1 mapping with "fail" conflict resolution may cause issues '
                "with duplicate database names"
            )

        for endpoint in self._source_endpoints():
            if not endpoint.instance:
                errors.append("Source instance name is required")
        for endpoint in self._target_endpoints():
            if not endpoint.instance:
                errors.append("Target instance name is required")

        if isinstance(self.strategy, MappingStrategy):
            try:
                tasks = self.generate_execution_plan()
            except ConfigurationError as exc:
                # already covered by the structural errors above
                logger.debug("Skipping duplicate path check: %s", exc)
            else:
                seen: set[str] = set()
                for task in tasks:
                    if task.path_key in seen:
                        warnings.append(f"Duplicate migration path: {task.path_key}")
                    seen.add(task.path_key)

        return MappingValidation(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def resolve_database_conflicts(
        self,
        databases: Iterable[SourcedDatabase | Mapping[str, Any]],
    ) -> list[ResolvedDatabase]:
        """
        Apply the conflict resolution policy to databases from several
        sources feeding one target.

        Names seen from a single source pass through unchanged. Colliding
        names are renamed (``prefix``: ``{instance}_{name}``; ``suffix``:
        ``name``, ``name_2``...), merged into one record (``merge``), or
        rejected (``fail``).

        Raises:
            DatabaseConflictError: On a collision under the ``fail`` policy.
        """
        by_name: dict[str, list[str]] = {}
        for entry in databases:
            database = SourcedDatabase.coerce(entry)
            by_name.setdefault(database.name, []).append(database.source.key)

        resolved: list[ResolvedDatabase] = []
        for name, sources in by_name.items():
            if len(sources) == 1:
                resolved.append(ResolvedDatabase(name=name, source=sources[0]))
                continue

            policy = self.conflict_resolution
            if policy is ConflictResolution.PREFIX:
                for source in sources:
                    instance = source.split(":", 1)[1]
                    resolved.append(
                        ResolvedDatabase(
                            name=f"{instance}_{name}", source=source, original_name=name
                        )
                    )
            elif policy is ConflictResolution.SUFFIX:
                for index, source in enumerate(sources):
                    resolved.append(
                        ResolvedDatabase(
                            name=name if index == 0 else f"{name}_{index + 1}",
                            source=source,
                            original_name=name,
                        )
                    )
            elif policy is ConflictResolution.MERGE:
                resolved.append(ResolvedDatabase(name=name, sources=tuple(sources), merged=True))
            else:
                raise DatabaseConflictError(name, sources)

        return resolved

    def to_operations(self, batch_id: str | None = None) -> list[Operation]:
        """
        Plan the mapping and bind every task into an Operation stamped with
        ``batch_id``, its index and the total task count.
        """
        tasks = self.generate_execution_plan()
        mapping_type = self.mapping_type
        return [
            Operation.from_task(
                task,
                index=index,
                total=len(tasks),
                batch_id=batch_id,
                strategy=self.strategy,
                mapping_type=mapping_type,
                options=self.options,
            )
            for index, task in enumerate(tasks)
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def group_by_version(
        instances: Iterable[Endpoint | Mapping[str, Any]],
    ) -> dict[str, list[Endpoint]]:
        """Group instances by PostgreSQL version (``unknown`` when absent)."""
        grouped: dict[str, list[Endpoint]] = {}
        for value in instances:
            endpoint = Endpoint.parse(value)
            grouped.setdefault(endpoint.version or "unknown", []).append(endpoint)
        return grouped

    def get_summary(self) -> dict[str, Any]:
        tasks = self.generate_execution_plan()
        metadata = self.metadata
        return {
            "strategy": self.strategy_name,
            "mapping_type": metadata.mapping_type.value,
            "total_sources": metadata.total_sources,
            "total_targets": metadata.total_targets,
            "total_migrations": len(tasks),
            "conflict_resolution": self.conflict_resolution.value,
            "tasks": [
                {
                    "from": task.source.key,
                    "to": task.target.key,
                    "databases": list(task.databases) if task.databases is not None else "all",
                }
                for task in tasks
            ],
        }

    def clone(self, **changes: Any) -> MigrationMapping:
        """Return a new mapping with ``changes`` applied (either key style)."""
        data = self.model_dump()
        updates = _normalize(changes)
        if "target" in updates and "targets" not in updates:
            updates["targets"] = [updates.pop("target")]
        data.update(updates)
        return type(self).from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation including derived metadata.
        """
        data = self.model_dump(mode="json")
        metadata = self.metadata
        data["metadata"] = {
            "mapping_type": metadata.mapping_type.value,
            "total_sources": metadata.total_sources,
            "total_targets": metadata.total_targets,
            "created_at": metadata.created_at.isoformat(),
        }
        return data


# =============================================================================
# Planning functions, one per strategy
# =============================================================================


def _bind(source: Endpoint, target: Endpoint, **kwargs: Any) -> MigrationTask:
    # unset credentials come from PGUSER/PGPASSWORD, the target also reuses the source password
    settings = get_settings()
    source = source.with_defaults(user=settings.default_user, password=settings.default_password)
    return MigrationTask(
        source=source,
        target=target.with_defaults(user=settings.default_user, password=source.password),
        **kwargs,
    )


def _plan_simple(mapping: MigrationMapping) -> list[MigrationTask]:
    if len(mapping.targets) == 1:
        target = mapping.targets[0]
        return [
            _bind(
                source,
                target,
                databases=source.databases,
                conflict_resolution=mapping.conflict_resolution,
            )
            for source in mapping.sources
        ]

    tasks = []
    for index, source in enumerate(mapping.sources):
        if index >= len(mapping.targets):
            logger.warning(
                "No target at index %d for source %s, source not planned",
                index,
                source.key,
                extra={"source": source.key, "index": index},
            )
            continue
        tasks.append(_bind(source, mapping.targets[index], databases=source.databases))
    return tasks


def _plan_consolidate(mapping: MigrationMapping) -> list[MigrationTask]:
    if not mapping.targets:
        raise ConfigurationError("Consolidate strategy requires a target instance")
    target = mapping.targets[0]
    prefix = mapping.conflict_resolution is ConflictResolution.PREFIX
    return [
        _bind(
            source,
            target,
            databases=source.databases,
            conflict_resolution=mapping.conflict_resolution,
            prefix_with=source.instance if prefix else None,
        )
        for source in mapping.sources
    ]


def _plan_version_based(mapping: MigrationMapping) -> list[MigrationTask]:
    tasks = []
    for version, group in mapping.version_mapping.items():
        if group.target is None:
            raise ConfigurationError(f"Version {version} has no target instance")
        for source in group.sources:
            tasks.append(
                _bind(
                    source,
                    group.target,
                    databases=source.databases,
                    version=version,
                    conflict_resolution=mapping.conflict_resolution,
                )
            )
    return tasks


def _plan_custom_mapping(mapping: MigrationMapping) -> list[MigrationTask]:
    tasks = []
    for position, migration in enumerate(mapping.migrations):
        if migration.target is None:
            raise ConfigurationError(f"Migration entry {position} has no target instance")
        if migration.sources:
            for source in migration.sources:
                tasks.append(
                    _bind(
                        source,
                        migration.target,
                        databases=(
                            migration.databases
                            if migration.databases is not None
                            else source.databases
                        ),
                        include_all=migration.include_all,
                        options=dict(migration.options),
                        conflict_resolution=(
                            migration.conflict_resolution or mapping.conflict_resolution
                        ),
                    )
                )
        elif migration.source is not None:
            tasks.append(
                _bind(
                    migration.source,
                    migration.target,
                    databases=(
                        migration.databases
                        if migration.databases is not None
                        else migration.source.databases
                    ),
                    include_all=migration.include_all,
                    options=dict(migration.options),
                )
            )
    return tasks


_PLANNERS: dict[MappingStrategy, Callable[[MigrationMapping], list[MigrationTask]]] = {
    MappingStrategy.SIMPLE: _plan_simple,
    MappingStrategy.CONSOLIDATE: _plan_consolidate,
    MappingStrategy.VERSION_BASED: _plan_version_based,
    MappingStrategy.CUSTOM_MAPPING: _plan_custom_mapping,
}


__all__ = [
    "CustomMigration",
    "VersionGroup",
    "MappingMetadata",
    "MappingValidation",
    "SourcedDatabase",
    "ResolvedDatabase",
    "MigrationMapping",
]
