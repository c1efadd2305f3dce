"""
Observability: structured logging correlated by run, graph and node.

- Trace context propagated via ContextVar (safe across asyncio tasks)
- JSON logs for production, colorized logs for development
"""

from flowengine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
