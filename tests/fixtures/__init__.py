"""
Shared test fixtures for the cloudsql_migrator library.

This module provides reusable collaborator fakes:
- InMemoryConnectionProvider: databases per instance, scripted unreachability
- FakeExporter / FakeImporter: dump and restore recorders with failure scripts
- FakePermissions: users/roles collaborator with a scripted apply result
- RecordingProgressSink: progress sink keeping every notification
- FakeTool: Tool with delays, failures and concurrency tracking

Usage:
    from tests.fixtures import (
        FakeExporter,
        FakeImporter,
        InMemoryConnectionProvider,
        make_operation,
    )
"""

from tests.fixtures.collaborators import (
    MB,
    FakeExporter,
    FakeImporter,
    FakePermissions,
    FakeTool,
    InMemoryConnectionProvider,
    RecordingProgressSink,
    endpoint_dict,
    make_operation,
)

__all__ = [
    "MB",
    "FakeExporter",
    "FakeImporter",
    "FakePermissions",
    "FakeTool",
    "InMemoryConnectionProvider",
    "RecordingProgressSink",
    "endpoint_dict",
    "make_operation",
]
