"""
Instance and mapping file loader.

Turns the files operators keep their instance lists in into mapping input:

- ``.txt``: one ``project:instance`` (or bare ``instance``) per line, ``#``
  starts a comment. Produces a simple strategy without targets.
- ``.json``: a full mapping (``migrations``), ``{"instances": [...]}`` or a
  bare array of instances.
- ``.csv``: one migration per row. Rows are grouped into a version-based
  mapping when every row has a version and each version has a single
  target, otherwise into a custom mapping.

Example:
    >>> mapping = load_mapping_file(
    ...     "instances.txt",
    ...     target_project="acme-prod",
    ...     target_instance="consolidated",
    ... )
    >>> mapping.strategy
    <MappingStrategy.SIMPLE: 'simple'>
"""

from __future__ import annotations

import csv
import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from cloudsql_migrator.config import get_settings
from cloudsql_migrator.exceptions import ConfigurationError
from cloudsql_migrator.mapping import MappingValidation, MigrationMapping

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".txt", ".json", ".csv")


def _instance_entry(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        return {"instance": value}
    return dict(value)


def parse_txt(content: str) -> dict[str, Any]:
    """Parse a list of instances, one per line."""
    sources = []
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(":")
        if len(parts) == 2:
            sources.append({"project": parts[0], "instance": parts[1]})
        else:
            sources.append({"instance": line})
    return {"strategy": "simple", "sources": sources, "targets": None}


def parse_json(content: str) -> dict[str, Any]:
    """
    Parse a JSON mapping or instance list.

    Raises:
        ConfigurationError: If the document is not valid JSON or has none
            of the supported shapes.
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON format: {exc}") from exc

    if isinstance(data, list):
        return {
            "strategy": "simple",
            "sources": [_instance_entry(item) for item in data],
            "targets": None,
        }
    if isinstance(data, Mapping):
        if data.get("migrations"):
            return normalize_migration_mapping(data)
        if data.get("instances"):
            return {
                "strategy": data.get("strategy") or "simple",
                "sources": [_instance_entry(item) for item in data["instances"]],
                "targets": data.get("targets"),
            }
    raise ConfigurationError("Invalid JSON format")


def normalize_migration_mapping(data: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a full JSON mapping with ``migrations`` entries."""
    conflict_resolution = data.get("conflictResolution") or "fail"
    migrations = []
    for entry in data.get("migrations", []):
        sources = entry.get("sources")
        if sources is None and entry.get("source") is not None:
            sources = [entry["source"]]
        databases = entry.get("databases")
        migrations.append(
            {
                "sources": [
                    {"project": s.get("project"), "instance": s.get("instance")}
                    if isinstance(s, Mapping)
                    else {"instance": s}
                    for s in sources or []
                ],
                "target": _instance_entry(entry["target"]) if entry.get("target") else None,
                "databases": None if databases == "all" else databases,
                "include_all": databases == "all",
                "conflict_resolution": entry.get("conflictResolution") or conflict_resolution,
            }
        )
    return {
        "strategy": data.get("strategy") or "custom-mapping",
        "auto_detect_version": data.get("autoDetectVersion") is not False,
        "conflict_resolution": conflict_resolution,
        "migrations": migrations,
    }


def parse_csv(content: str) -> dict[str, Any]:
    """
    Parse one migration per CSV row.

    Recognised columns: ``source_project`` (or ``project``),
    ``source_instance`` (or ``instance``), ``target_project``,
    ``target_instance``, ``databases`` (``;`` separated or ``all``),
    ``version`` and ``mode`` (``schema`` or ``data``). Quoted fields may
    contain commas.

    Raises:
        ConfigurationError: If the file has no lines.
    """
    lines = [line.strip() for line in content.splitlines() if line.strip()]
    if not lines:
        raise ConfigurationError("Empty CSV file")

    reader = csv.reader(lines)
    headers = [header.strip().lower() for header in next(reader)]

    migrations = []
    for values in reader:
        row = {
            header: value.strip()
            for header, value in zip(headers, values, strict=False)
            if value and value.strip()
        }
        databases = row.get("databases")
        migrations.append(
            {
                "source": {
                    "project": row.get("source_project") or row.get("project"),
                    "instance": row.get("source_instance") or row.get("instance"),
                    "databases": (
                        [name.strip() for name in databases.split(";")]
                        if databases and databases != "all"
                        else None
                    ),
                },
                "target": {
                    "project": row.get("target_project"),
                    "instance": row.get("target_instance"),
                },
                "version": row.get("version"),
                "options": {
                    "include_all": databases == "all",
                    "schema_only": row.get("mode") == "schema",
                    "data_only": row.get("mode") == "data",
                },
            }
        )
    return group_migrations_by_strategy(migrations)


def group_migrations_by_strategy(migrations: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """
    Group row migrations into a version-based mapping when possible.

    Every migration needs a version, and all migrations of a version must
    share the same target; otherwise a custom mapping is returned.
    """
    migrations = list(migrations)
    by_version: dict[str, dict[str, Any]] = {}
    groupable = True

    for migration in migrations:
        version = migration.get("version")
        if not version:
            groupable = False
            break
        target = migration["target"]
        group = by_version.setdefault(version, {"sources": [], "target": target})
        if (group["target"].get("project"), group["target"].get("instance")) != (
            target.get("project"),
            target.get("instance"),
        ):
            groupable = False
            break
        group["sources"].append(migration["source"])

    if groupable and by_version:
        return {
            "strategy": "version-based",
            "auto_detect_version": False,
            "version_mapping": by_version,
        }
    return {"strategy": "custom-mapping", "migrations": migrations}


def parse_instance_file(path: str | Path) -> dict[str, Any]:
    """
    Read and parse an instance file according to its extension.

    Raises:
        ConfigurationError: If the extension is not supported or the
            content cannot be parsed.
    """
    path = Path(path)
    extension = path.suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise ConfigurationError(f"Unsupported file format: {extension or path.name}")

    content = path.read_text(encoding="utf-8")
    logger.debug("Parsing instance file %s", path, extra={"format": extension})
    if extension == ".txt":
        return parse_txt(content)
    if extension == ".json":
        return parse_json(content)
    return parse_csv(content)


def validate_parsed(parsed: Mapping[str, Any]) -> MappingValidation:
    """
    Check parser output before it becomes a mapping.

    Duplicate source instances are reported as warnings.
    """
    errors: list[str] = []
    warnings: list[str] = []
    strategy = parsed.get("strategy")

    if not strategy:
        errors.append("Migration strategy is required")
    if strategy == "simple" and not parsed.get("sources"):
        errors.append("At least one source instance is required")
    if strategy == "version-based" and not parsed.get("version_mapping"):
        errors.append("Version mapping is required for version-based strategy")
    if strategy == "custom-mapping" and not parsed.get("migrations"):
        errors.append("At least one migration mapping is required")

    sources = list(parsed.get("sources") or [])
    for migration in parsed.get("migrations") or []:
        if migration.get("sources"):
            sources.extend(migration["sources"])
        elif migration.get("source"):
            sources.append(migration["source"])

    seen: set[str] = set()
    for source in sources:
        key = f"{source.get('project') or 'default'}:{source.get('instance')}"
        if key in seen:
            warnings.append(f"Duplicate source instance: {key}")
        seen.add(key)

    return MappingValidation(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


def _with_project(endpoint: Mapping[str, Any] | None, project: str) -> dict[str, Any] | None:
    if endpoint is None:
        return None
    return {**endpoint, "project": endpoint.get("project") or project}


def build_mapping_config(
    parsed: Mapping[str, Any],
    *,
    target_project: str | None = None,
    target_instance: str | None = None,
    default_project: str | None = None,
    **options: Any,
) -> dict[str, Any]:
    """
    Complete parser output with command line options.

    ``options`` are merged under the parsed options (``dry_run``,
    ``verbose``, ``retry_attempts``, ``jobs``, ``force_compatibility``...).
    A target given here is applied to simple mappings, and
    ``default_project`` (the configured default project when omitted)
    fills in every endpoint without one.
    """
    config: dict[str, Any] = dict(parsed)
    config["options"] = {
        "dry_run": False,
        "verbose": False,
        "retry_attempts": 3,
        "jobs": 1,
        "force_compatibility": False,
        **{key: value for key, value in options.items() if value is not None},
        **(parsed.get("options") or {}),
    }

    if target_project and target_instance and config.get("strategy") == "simple":
        config["target"] = {"project": target_project, "instance": target_instance}

    project = default_project or get_settings().default_project
    if project:
        if config.get("sources"):
            config["sources"] = [_with_project(s, project) for s in config["sources"]]
        if config.get("migrations"):
            config["migrations"] = [
                {
                    **migration,
                    "sources": [_with_project(s, project) for s in migration.get("sources") or []]
                    or None,
                    "source": _with_project(migration.get("source"), project),
                    "target": _with_project(migration.get("target"), project),
                }
                for migration in config["migrations"]
            ]
        if config.get("version_mapping"):
            config["version_mapping"] = {
                version: {
                    "sources": [_with_project(s, project) for s in group.get("sources") or []],
                    "target": _with_project(group.get("target"), project),
                }
                for version, group in config["version_mapping"].items()
            }
    return config


def load_mapping_file(path: str | Path, **options: Any) -> MigrationMapping:
    """
    Load an instance file into a MigrationMapping.

    Args:
        path: ``.txt``, ``.json`` or ``.csv`` file.
        **options: Passed to :func:`build_mapping_config`.

    Raises:
        ConfigurationError: If the file cannot be parsed.
    """
    parsed = parse_instance_file(path)
    validation = validate_parsed(parsed)
    for warning in validation.warnings:
        logger.warning("%s: %s", path, warning)
    return MigrationMapping.from_parser_output(build_mapping_config(parsed, **options))


__all__ = [
    "SUPPORTED_EXTENSIONS",
    "parse_txt",
    "parse_json",
    "parse_csv",
    "normalize_migration_mapping",
    "group_migrations_by_strategy",
    "parse_instance_file",
    "validate_parsed",
    "build_mapping_config",
    "load_mapping_file",
]
