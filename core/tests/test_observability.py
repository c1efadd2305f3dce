"""Tests for structured logging and trace context."""

import json
import logging

from flowengine.observability import (
    clear_trace_context,
    get_trace_context,
    set_trace_context,
)
from flowengine.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    strip_ansi_codes,
)


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("flowengine.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_trace_context_merges_and_clears():
    clear_trace_context()
    set_trace_context(run_id="run_1", graph_id="support")
    set_trace_context(node_id="answer")
    assert get_trace_context() == {"run_id": "run_1", "graph_id": "support", "node_id": "answer"}

    clear_trace_context()
    assert get_trace_context() == {}


def test_structured_formatter_includes_context_and_extras():
    clear_trace_context()
    set_trace_context(run_id="run_1", node_id="answer")
    try:
        line = StructuredFormatter().format(
            make_record("\x1b[32mdone\x1b[0m", duration_ms=12, model="mock/model")
        )
    finally:
        clear_trace_context()

    entry = json.loads(line)
    assert entry["message"] == "done"
    assert entry["level"] == "info"
    assert entry["run_id"] == "run_1"
    assert entry["node_id"] == "answer"
    assert entry["duration_ms"] == 12
    assert entry["model"] == "mock/model"


def test_human_formatter_prefixes_context():
    clear_trace_context()
    set_trace_context(run_id="run_0123456789abcdef", graph_id="support")
    try:
        line = HumanReadableFormatter().format(make_record("hello"))
    finally:
        clear_trace_context()

    assert "[run:89abcdef | graph:support]" in line
    assert line.endswith("hello")


def test_strip_ansi_codes():
    assert strip_ansi_codes("\x1b[1;31mred\x1b[0m") == "red"
