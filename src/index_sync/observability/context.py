"""Context propagation for log correlation across async boundaries."""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any
from uuid import uuid4


if TYPE_CHECKING:
    from opentelemetry.trace import Span

# Task-local context for trace propagation
trace_context: ContextVar[dict | None] = ContextVar("trace_context", default=None)

# Task-local sync fields (operation_id, index, document_id) added to log lines
sync_context: ContextVar[dict[str, Any] | None] = ContextVar("sync_context", default=None)


def generate_trace_id() -> str:
    """Generate a 32-char hex trace ID."""
    return uuid4().hex


def generate_span_id() -> str:
    """Generate a 16-char hex span ID."""
    return uuid4().hex[:16]


def get_trace_context() -> dict:
    """Get current trace context with trace_id and span_id."""
    ctx = trace_context.get()
    if ctx is None or not ctx.get("trace_id"):
        ctx = {"trace_id": generate_trace_id(), "span_id": generate_span_id()}
        trace_context.set(ctx)
    return ctx


def set_trace_context(trace_id: str, span_id: str, **extra: object) -> None:
    """Set trace context for current async context."""
    trace_context.set({"trace_id": trace_id, "span_id": span_id, **extra})


def update_span_id(span_id: str) -> None:
    """Update span_id while preserving trace_id."""
    ctx = trace_context.get() or {}
    trace_context.set({**ctx, "span_id": span_id})


def with_otel_span(span: Span) -> dict:
    """Extract trace context from OpenTelemetry span."""
    ctx = span.get_span_context()
    return {
        "trace_id": format(ctx.trace_id, "032x"),
        "span_id": format(ctx.span_id, "016x"),
    }


def get_sync_context() -> dict[str, Any]:
    return dict(sync_context.get() or {})


@contextmanager
def bind_sync_context(**fields: Any) -> Generator[dict[str, Any], None, None]:
    """Attach sync fields to every log line emitted inside the block."""
    merged = {**(sync_context.get() or {}), **{k: v for k, v in fields.items() if v is not None}}
    token = sync_context.set(merged)
    try:
        yield merged
    finally:
        sync_context.reset(token)
