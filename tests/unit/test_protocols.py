"""
Unit tests for collaborator protocols and progress sinks.
"""

from __future__ import annotations

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
    SupportsCleanup,
    Tool,
)
from tests.fixtures import (
    FakeExporter,
    FakeImporter,
    FakePermissions,
    FakeTool,
    InMemoryConnectionProvider,
    RecordingProgressSink,
)


class TestProtocolConformance:
    """The test fakes satisfy the runtime checkable protocols."""

    def test_collaborators(self):
        assert isinstance(InMemoryConnectionProvider(), ConnectionProvider)
        assert isinstance(FakeExporter(), ExportPrimitive)
        assert isinstance(FakeImporter(), ImportPrimitive)
        assert isinstance(FakePermissions(), PermissionsCollaborator)
        assert isinstance(FakeTool(), Tool)

    def test_cleanup_is_optional(self):
        assert isinstance(FakeExporter(), SupportsCleanup)
        assert not isinstance(InMemoryConnectionProvider(), SupportsCleanup)

    def test_sinks(self):
        assert isinstance(NullProgressSink(), ProgressSink)
        assert isinstance(RecordingProgressSink(), ProgressSink)
        assert isinstance(CallbackProgressSink(print), ProgressSink)
        assert isinstance(GuardedProgressSink(NullProgressSink()), ProgressSink)


class TestCallbackProgressSink:
    """Tests for CallbackProgressSink."""

    def test_forwards_events_with_current_phase(self):
        events: list[ProgressEvent] = []
        sink = CallbackProgressSink(events.append)

        sink.start_phase("Export", 2)
        sink.update(1, "Exported orders", 1024)
        sink.status("1 databases exported", "success")
        sink.complete_phase()

        assert events == [
            ProgressEvent(kind="start_phase", phase="Export", total=2),
            ProgressEvent(
                kind="update",
                phase="Export",
                current=1,
                message="Exported orders",
                size_bytes=1024,
            ),
            ProgressEvent(
                kind="status", phase="Export", message="1 databases exported", level="success"
            ),
            ProgressEvent(kind="complete_phase", phase="Export"),
        ]
        assert sink.current_phase == "Export"

    def test_callback_errors_are_logged_and_ignored(self, caplog):
        def explode(event: ProgressEvent) -> None:
            raise RuntimeError("terminal closed")

        sink = CallbackProgressSink(explode)
        sink.start_phase("Import", 1)
        sink.complete_phase("Failed: boom")

        assert "Progress callback failed for start_phase event" in caplog.text


class FlakySink(RecordingProgressSink):
    """Sink whose status calls raise."""

    def status(self, message: str, level: str = "info") -> None:
        raise RuntimeError("renderer closed")


class TestGuardedProgressSink:
    """Tests for GuardedProgressSink."""

    def test_forwards_calls(self):
        inner = RecordingProgressSink()
        sink = GuardedProgressSink(inner)

        sink.start_phase("Export", 2)
        sink.update(1, "Exported orders", 1024)
        sink.status("1 databases exported", "success")
        sink.complete_phase("done")

        assert sink.sink is inner
        assert inner.events == [
            ("start_phase", "Export", 2),
            ("update", 1, "Exported orders", 1024),
            ("status", "1 databases exported", "success"),
            ("complete_phase", "done"),
        ]

    def test_sink_errors_are_logged_and_ignored(self, caplog):
        inner = FlakySink()
        sink = GuardedProgressSink(inner)

        sink.start_phase("Import", 1)
        sink.status("Importing", "info")
        sink.complete_phase()

        assert inner.events == [("start_phase", "Import", 1), ("complete_phase", None)]
        assert "Progress sink FlakySink failed in status" in caplog.text
