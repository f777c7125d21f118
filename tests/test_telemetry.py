from __future__ import annotations

import logging

from opentelemetry.sdk.trace import TracerProvider

from visibility_jobs.core.config import Settings
from visibility_jobs.core.telemetry import TelemetryRuntime, TraceContextFilter, parse_headers, setup_telemetry


def make_record() -> logging.LogRecord:
    return logging.LogRecord("visibility_jobs.test", logging.INFO, __file__, 1, "message", (), None)


def test_parse_headers_skips_malformed_items() -> None:
    assert parse_headers("authorization=Bearer abc, x-team = growth,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "growth",
    }
    assert parse_headers(None) == {}


def test_trace_context_filter_uses_zero_ids_outside_spans() -> None:
    record = make_record()

    assert TraceContextFilter().filter(record) is True
    assert record.trace_id == "0" * 32
    assert record.span_id == "0" * 16


def test_trace_context_filter_stamps_active_span_ids() -> None:
    tracer = TracerProvider().get_tracer("visibility_jobs.test")
    record = make_record()

    with tracer.start_as_current_span("dispatcher.tick") as span:
        TraceContextFilter().filter(record)
        context = span.get_span_context()

    assert record.trace_id == format(context.trace_id, "032x")
    assert record.span_id == format(context.span_id, "016x")


def test_setup_telemetry_is_noop_when_disabled() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.provider is None
    runtime.shutdown()


def test_runtime_shutdown_flushes_provider_once() -> None:
    runtime = TelemetryRuntime(provider=TracerProvider())

    runtime.shutdown()
    runtime.shutdown()

    assert runtime.enabled is False
