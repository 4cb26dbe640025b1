"""
Span helpers that do not need an explicit span reference.
"""

from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .tracer import get_tracer


@contextmanager
def trace_operation(
    operation_name: str,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
    **attributes,
):
    """
    Run the enclosed block inside a span.

    Attribute values are stringified. Exceptions are recorded on the span
    and re-raised.

    Example:
        >>> with trace_operation("stage_table", table="dbo.Orders") as span:
        ...     rows = stage(table)
        ...     span.set_attribute("staged_rows", rows)
    """
    tracer = get_tracer()

    with tracer.start_as_current_span(
        operation_name, kind=kind, record_exception=False
    ) as span:
        for key, value in attributes.items():
            span.set_attribute(key, str(value))

        try:
            yield span
        except Exception as e:
            span.set_attribute("error.type", type(e).__name__)
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def add_span_attributes(**attributes) -> None:
    """Set attributes on the current span, if it is recording."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        for key, value in attributes.items():
            current_span.set_attribute(key, str(value))


def add_span_event(name: str, **attributes) -> None:
    """Add an event to the current span, if it is recording."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        current_span.add_event(
            name, attributes={k: str(v) for k, v in attributes.items()}
        )
