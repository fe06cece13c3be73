"""
Observability utilities for cloudsql_migrator.

Provides the Tracer abstraction used by the orchestrator, the tool and
the execution engine, and the attribute names set on their spans.

Example:
    >>> from cloudsql_migrator.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool | None = None):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from cloudsql_migrator.observability.attributes import (
    ATTR_BATCH_ID,
    ATTR_DATABASE_COUNT,
    ATTR_DB_NAME,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_ERROR_CODE,
    ATTR_ERROR_TYPE,
    ATTR_MAPPING_TYPE,
    ATTR_MAX_PARALLEL,
    ATTR_MIGRATION_ID,
    ATTR_OPERATION_ID,
    ATTR_PHASE,
    ATTR_RETRY,
    ATTR_SIZE_BYTES,
    ATTR_SOURCE,
    ATTR_STRATEGY,
    ATTR_TARGET,
    ATTR_TASKS_FAILED,
    ATTR_TASKS_SKIPPED,
    ATTR_TASKS_SUCCESSFUL,
)
from cloudsql_migrator.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    SpanHandle,
    Tracer,
    create_tracer,
    failure_attributes,
)

__all__ = [
    # Tracer
    "SpanHandle",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    "failure_attributes",
    # Attributes
    "ATTR_BATCH_ID",
    "ATTR_DATABASE_COUNT",
    "ATTR_DB_NAME",
    "ATTR_DB_SYSTEM",
    "ATTR_DRY_RUN",
    "ATTR_ERROR_CODE",
    "ATTR_ERROR_TYPE",
    "ATTR_MAPPING_TYPE",
    "ATTR_MAX_PARALLEL",
    "ATTR_MIGRATION_ID",
    "ATTR_OPERATION_ID",
    "ATTR_PHASE",
    "ATTR_RETRY",
    "ATTR_SIZE_BYTES",
    "ATTR_SOURCE",
    "ATTR_STRATEGY",
    "ATTR_TARGET",
    "ATTR_TASKS_FAILED",
    "ATTR_TASKS_SKIPPED",
    "ATTR_TASKS_SUCCESSFUL",
]
