"""
Shared pytest fixtures for the cloudsql_migrator tests.

This module provides:
- Collaborator fakes (connections, exporter, importer, permissions)
- A recording progress sink and a MockTracer
- Isolation of the cached environment settings

All collaborator fixtures are function scoped.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest

from cloudsql_migrator.config import get_settings
from cloudsql_migrator.models import DatabaseInfo
from cloudsql_migrator.observability import MockTracer
from tests.fixtures import (
    MB,
    FakeExporter,
    FakeImporter,
    FakePermissions,
    InMemoryConnectionProvider,
    RecordingProgressSink,
)

_SETTINGS_ENV = (
    "CLOUDSQL_MIGRATOR_MAX_PARALLEL",
    "CLOUDSQL_MIGRATOR_STOP_ON_ERROR",
    "CLOUDSQL_MIGRATOR_RETRY_FAILED",
    "CLOUDSQL_MIGRATOR_ENABLE_TRACING",
    "CLOUDSQL_MIGRATOR_DEFAULT_USER",
    "CLOUDSQL_MIGRATOR_DEFAULT_PASSWORD",
    "CLOUDSQL_MIGRATOR_DEFAULT_PROJECT",
    "PGUSER",
    "PGPASSWORD",
    "GOOGLE_CLOUD_PROJECT",
    "GCLOUD_PROJECT",
)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """
    Run every test without migrator variables from the environment.

    The settings cache is cleared before and after the test so that
    variables set with monkeypatch are picked up.
    """
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def source_databases() -> list[DatabaseInfo]:
    """
    Databases of the ``orders-db`` source instance.

    Includes the system databases that discovery must always skip.
    """
    return [
        DatabaseInfo("postgres", 8 * MB),
        DatabaseInfo("template1", 8 * MB),
        DatabaseInfo("orders", 120 * MB),
        DatabaseInfo("billing", 40 * MB),
    ]


@pytest.fixture
def connections(source_databases: list[DatabaseInfo]) -> InMemoryConnectionProvider:
    """Connection provider knowing the ``orders-db`` source."""
    return InMemoryConnectionProvider({"orders-db": source_databases})


@pytest.fixture
def exporter() -> FakeExporter:
    return FakeExporter()


@pytest.fixture
def importer() -> FakeImporter:
    return FakeImporter()


@pytest.fixture
def permissions() -> FakePermissions:
    return FakePermissions()


@pytest.fixture
def progress() -> RecordingProgressSink:
    return RecordingProgressSink()


@pytest.fixture
def mock_tracer() -> MockTracer:
    """Provide a MockTracer recording span names and attributes."""
    return MockTracer()
