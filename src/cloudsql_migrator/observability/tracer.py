"""
Tracing for batches, tasks and engine phases.

Components receive a Tracer and open spans around the batch, each task,
each engine phase and each database transfer. A span yields a SpanHandle
so that results known only at the end (migrated database count, batch
totals) can be attached to it. When the body raises, the span records
the failure itself: the exception type, the migrator error code from
``classify_exception`` and an error status. Cancellation is recorded with
the ``CANCELLED`` code.

Implementations:
    - OpenTelemetryTracer: real spans through the OpenTelemetry API
    - NullTracer: used when tracing is disabled
    - MockTracer: keeps RecordedSpan objects for assertions in tests

Example:
    >>> tracer = create_tracer(__name__)
    >>> attributes = {ATTR_OPERATION_ID: op.id}
    >>> with tracer.span("cloudsql_migrator.engine.migrate", attributes) as span:
    ...     result = await run(op)
    ...     span.set_attribute(ATTR_DATABASE_COUNT, len(result.migrated_databases))
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Generator, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.util.types import AttributeValue

from cloudsql_migrator.config import get_settings
from cloudsql_migrator.exceptions import classify_exception
from cloudsql_migrator.observability.attributes import ATTR_ERROR_CODE, ATTR_ERROR_TYPE

SpanAttributes = Mapping[str, AttributeValue]


def failure_attributes(error: BaseException) -> dict[str, AttributeValue]:
    """Span attributes describing ``error``."""
    return {
        ATTR_ERROR_TYPE: type(error).__name__,
        ATTR_ERROR_CODE: classify_exception(error).error_code,
    }


@runtime_checkable
class SpanHandle(Protocol):
    """The span of a running ``Tracer.span`` block."""

    def set_attribute(self, key: str, value: AttributeValue) -> None: ...

    def record_failure(self, error: BaseException) -> None: ...


@runtime_checkable
class Tracer(Protocol):
    """Opens spans around migration work."""

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[SpanHandle]:
        """
        Open a span.

        Args:
            name: Span name, e.g. ``cloudsql_migrator.engine.phase``.
            attributes: Attributes known when the span starts.

        Returns:
            Context manager yielding the SpanHandle. Exceptions leaving
            the block are recorded on the span and re-raised.
        """
        ...


@contextlib.contextmanager
def _recording_failures(handle: SpanHandle) -> Generator[SpanHandle, None, None]:
    try:
        yield handle
    except (Exception, asyncio.CancelledError) as exc:
        handle.record_failure(exc)
        raise


class _NullSpan:
    def set_attribute(self, key: str, value: AttributeValue) -> None:
        pass

    def record_failure(self, error: BaseException) -> None:
        pass


_NULL_SPAN = _NullSpan()


class NullTracer:
    """Tracer used when tracing is disabled; every span is a no-op."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[SpanHandle, None, None]:
        yield _NULL_SPAN


class _OpenTelemetrySpan:
    def __init__(self, span: trace.Span) -> None:
        self._span = span

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        self._span.set_attribute(key, value)

    def record_failure(self, error: BaseException) -> None:
        self._span.set_attributes(failure_attributes(error))
        self._span.record_exception(error)
        self._span.set_status(Status(StatusCode.ERROR, str(error) or type(error).__name__))


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Spans are exported only when the application configured an SDK
    TracerProvider; otherwise the API hands out non-recording spans.
    Failures are recorded by the span handle with the migrator error
    code, and OpenTelemetry's own exception recording is turned off.

    Args:
        tracer_name: Instrumentation scope name (typically __name__).
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[SpanHandle, None, None]:
        with (
            self._tracer.start_as_current_span(
                name,
                attributes=dict(attributes or {}),
                record_exception=False,
                set_status_on_exception=False,
            ) as otel_span,
            _recording_failures(_OpenTelemetrySpan(otel_span)) as handle,
        ):
            yield handle


@dataclass
class RecordedSpan:
    """A span kept by MockTracer."""

    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        self.attributes[key] = value

    def record_failure(self, error: BaseException) -> None:
        self.error = error
        self.attributes.update(failure_attributes(error))


class MockTracer:
    """
    Tracer for tests, recording every span in opening order.

    Example:
        >>> tracer = MockTracer()
        >>> await engine.migrate(operation)
        >>> phases = tracer.find("cloudsql_migrator.engine.phase")
        >>> [span.attributes[ATTR_PHASE] for span in phases]
        ['Validation', 'Discovery', ...]
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> Generator[SpanHandle, None, None]:
        recorded = RecordedSpan(name, dict(attributes or {}))
        self.spans.append(recorded)
        with _recording_failures(recorded) as handle:
            yield handle

    @property
    def span_names(self) -> list[str]:
        return [span.name for span in self.spans]

    def find(self, name: str) -> list[RecordedSpan]:
        """Recorded spans called ``name``."""
        return [span for span in self.spans if span.name == name]


def create_tracer(name: str, enable_tracing: bool | None = None) -> Tracer:
    """
    Create the tracer of a component.

    Args:
        name: Instrumentation scope name (typically __name__).
        enable_tracing: Whether to trace. ``None`` reads
            ``CLOUDSQL_MIGRATOR_ENABLE_TRACING`` through the settings.

    Returns:
        OpenTelemetryTracer if enabled, NullTracer otherwise.
    """
    if enable_tracing is None:
        enable_tracing = get_settings().enable_tracing
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "SpanHandle",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    "failure_attributes",
]
