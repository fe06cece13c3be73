"""
Configuration for migration operations and batch execution.

This module provides:
- PasswordStrategy: How passwords are set on roles recreated on the target
- MigrationOptions: Per-operation options resolved from a mapping
- BatchConfig: Concurrency, stop and retry policy of one batch
- MigratorSettings: Environment-driven defaults (pydantic-settings)

Option dictionaries coming from mapping files use camelCase keys
(``includeAll``, ``maxParallel``); snake_case keys are accepted as well.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic.alias_generators import to_snake
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloudsql_migrator.types import ConflictResolution

PASSWORD_STRATEGY_TYPES = ("same", "default", "individual")


def _normalize_keys(data: Mapping[str, Any] | None) -> dict[str, Any]:
    """Convert camelCase option keys to snake_case."""
    return {to_snake(key): value for key, value in (data or {}).items()}


_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off"})


def _as_bool(value: Any) -> bool:
    """Read a flag given as a bool, 0/1 or a string such as ``"false"``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"expected a boolean, got {value!r}")


_FLAG_OPTIONS = (
    "include_all",
    "dry_run",
    "verbose",
    "force_compatibility",
    "schema_only",
    "data_only",
    "include_users_roles",
)


@dataclass(frozen=True)
class PasswordStrategy:
    """
    Password policy for roles recreated on the target instance.

    Attributes:
        type: ``same`` (reuse ``password``), ``default`` (one password for
            every role) or ``individual`` (per-role ``passwords``).
        password: Password used by the ``same`` strategy.
        default_password: Password used by the ``default`` strategy.
        passwords: Role name to password, used by ``individual``.
    """

    type: str
    password: str | None = None
    default_password: str | None = None
    passwords: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in PASSWORD_STRATEGY_TYPES:
            raise ValueError(
                f"password strategy must be one of {', '.join(PASSWORD_STRATEGY_TYPES)}, "
                f"got {self.type!r}"
            )

    @classmethod
    def from_value(cls, value: Any) -> PasswordStrategy | None:
        if value is None or isinstance(value, PasswordStrategy):
            return value
        if isinstance(value, str):
            return cls(type=value)
        data = _normalize_keys(value)
        return cls(
            type=data["type"],
            password=data.get("password"),
            default_password=data.get("default_password"),
            passwords=dict(data.get("passwords") or {}),
        )


@dataclass(frozen=True)
class MigrationOptions:
    """
    Resolved options of one migration operation.

    Attributes:
        include_all: Migrate every non-system database of the source.
        retry_attempts: Attempts allowed to connection collaborators.
        jobs: Parallel jobs passed to the import primitive.
        dry_run: Stop after discovery and estimation.
        verbose: Ask collaborators for verbose output.
        force_compatibility: Skip version compatibility checks.
        schema_only: Transfer schema only.
        data_only: Transfer data only.
        include_users_roles: Run the users/roles and permissions phases.
        selected_users: Restrict users/roles extraction to these names.
        password_strategy: Password policy for recreated roles.
        conflict_resolution: Naming policy inherited from the mapping.
        prefix_with: Prefix for database names (consolidate + prefix).
        version: PostgreSQL version group (version-based strategy).
        extra: Unrecognised options, passed through untouched.

    Example:
        >>> options = MigrationOptions.from_dict({"includeAll": True, "jobs": 4})
        >>> options.include_all, options.jobs
        (True, 4)
    """

    include_all: bool = False
    retry_attempts: int = 3
    jobs: int = 1
    dry_run: bool = False
    verbose: bool = False
    force_compatibility: bool = False
    schema_only: bool = False
    data_only: bool = False
    include_users_roles: bool = False
    selected_users: tuple[str, ...] | None = None
    password_strategy: PasswordStrategy | None = None
    conflict_resolution: ConflictResolution | None = None
    prefix_with: str | None = None
    version: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.jobs < 1:
            raise ValueError(f"jobs must be >= 1, got {self.jobs}")
        if self.retry_attempts < 0:
            raise ValueError(f"retry_attempts must be >= 0, got {self.retry_attempts}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> MigrationOptions:
        """
        Build options from a plain (camelCase or snake_case) dictionary.

        Unknown keys are kept in ``extra``; ``None`` values fall back to
        the defaults.
        """
        normalized = {k: v for k, v in _normalize_keys(data).items() if v is not None}
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs: dict[str, Any] = {k: v for k, v in normalized.items() if k in known}
        extra = {k: v for k, v in normalized.items() if k not in known}

        if "selected_users" in kwargs:
            kwargs["selected_users"] = _as_user_list(kwargs["selected_users"])
        if "password_strategy" in kwargs:
            kwargs["password_strategy"] = PasswordStrategy.from_value(kwargs["password_strategy"])
        if "conflict_resolution" in kwargs:
            kwargs["conflict_resolution"] = ConflictResolution(kwargs["conflict_resolution"])
        for name in ("jobs", "retry_attempts"):
            if name in kwargs:
                kwargs[name] = int(kwargs[name])
        for name in _FLAG_OPTIONS:
            if name in kwargs:
                kwargs[name] = _as_bool(kwargs[name])
        return cls(**kwargs, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the options.
        """
        return {
            "include_all": self.include_all,
            "retry_attempts": self.retry_attempts,
            "jobs": self.jobs,
            "dry_run": self.dry_run,
            "verbose": self.verbose,
            "force_compatibility": self.force_compatibility,
            "schema_only": self.schema_only,
            "data_only": self.data_only,
            "include_users_roles": self.include_users_roles,
            "selected_users": list(self.selected_users) if self.selected_users else None,
            "password_strategy": self.password_strategy.type if self.password_strategy else None,
            "conflict_resolution": (
                self.conflict_resolution.value if self.conflict_resolution else None
            ),
            "prefix_with": self.prefix_with,
            "version": self.version,
            **self.extra,
        }


def _as_user_list(value: Any) -> tuple[str, ...] | None:
    # {"all": [...]} is the shape produced by the interactive user selector
    if isinstance(value, Mapping):
        value = value.get("all")
    if isinstance(value, str):
        value = value.split(",")
    if not value:
        return None
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class BatchConfig:
    """
    Execution policy of a batch.

    Attributes:
        max_parallel: Maximum number of tasks in flight at once.
        stop_on_error: Stop admitting tasks after the first failure and
            raise BatchAbortError.
        retry_failed: Run one sequential retry pass over failed tasks.

    Example:
        >>> config = BatchConfig(max_parallel=5, stop_on_error=False)
        >>> config.retry_failed
        True
    """

    max_parallel: int = 3
    stop_on_error: bool = True
    retry_failed: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_parallel < 1:
            raise ValueError(
                f"max_parallel must be >= 1, got {self.max_parallel}. "
                "Use 1 to run the batch sequentially."
            )

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any] | None,
        defaults: BatchConfig | None = None,
    ) -> BatchConfig:
        """
        Read ``maxParallel``, ``stopOnError`` and ``retryFailed`` from
        mapping options, falling back to ``defaults``.
        """
        base = defaults or cls()
        data = {k: v for k, v in _normalize_keys(options).items() if v is not None}
        return cls(
            max_parallel=int(data.get("max_parallel", base.max_parallel)),
            stop_on_error=_as_bool(data.get("stop_on_error", base.stop_on_error)),
            retry_failed=_as_bool(data.get("retry_failed", base.retry_failed)),
        )

    @classmethod
    def from_settings(cls, settings: MigratorSettings) -> BatchConfig:
        return cls(
            max_parallel=settings.max_parallel,
            stop_on_error=settings.stop_on_error,
            retry_failed=settings.retry_failed,
        )


class MigratorSettings(BaseSettings):
    """
    Process-wide defaults loaded from the environment.

    Variables use the ``CLOUDSQL_MIGRATOR_`` prefix, e.g.
    ``CLOUDSQL_MIGRATOR_MAX_PARALLEL=5``. The default database credentials
    also honour the standard PostgreSQL ``PGUSER``/``PGPASSWORD`` variables
    and the default project ``GOOGLE_CLOUD_PROJECT``.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLOUDSQL_MIGRATOR_",
        extra="ignore",
        populate_by_name=True,
    )

    max_parallel: int = Field(default=3, ge=1)
    stop_on_error: bool = True
    retry_failed: bool = True
    enable_tracing: bool = True

    default_user: str = Field(
        default="postgres",
        validation_alias=AliasChoices("CLOUDSQL_MIGRATOR_DEFAULT_USER", "PGUSER"),
    )
    default_password: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CLOUDSQL_MIGRATOR_DEFAULT_PASSWORD", "PGPASSWORD"),
    )
    default_project: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CLOUDSQL_MIGRATOR_DEFAULT_PROJECT",
            "GOOGLE_CLOUD_PROJECT",
            "GCLOUD_PROJECT",
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> MigratorSettings:
    """Return the cached process settings."""
    return MigratorSettings()


__all__ = [
    "PasswordStrategy",
    "MigrationOptions",
    "BatchConfig",
    "MigratorSettings",
    "get_settings",
]
