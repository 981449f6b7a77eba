from unittest.mock import MagicMock, patch

import pytest

from nab_batch.observability import tracing


def test_phase_span_yields_none_without_tracer():
    with patch("nab_batch.observability.tracing._get_tracer", return_value=None):
        with tracing.phase_span("export", {"dry_run": True}) as span:
            assert span is None
            tracing.annotate(span, "export", {"exported": 3})


def test_attributes_are_namespaced_by_phase():
    tracer = MagicMock()
    span = tracer.start_as_current_span.return_value.__enter__.return_value

    with patch("nab_batch.observability.tracing._get_tracer", return_value=tracer):
        with tracing.phase_span("export", {"manifest_path": "m.jsonl", "limit": None}) as active:
            tracing.annotate(active, "export", {"exported": 3, "errors": ["a", "b"], "extra": {"nested": 1}})

    tracer.start_as_current_span.assert_called_once_with("nab.export")
    span.set_attribute.assert_any_call("nab.export.manifest_path", "m.jsonl")
    span.set_attribute.assert_any_call("nab.export.exported", 3)
    span.set_attribute.assert_any_call("nab.export.errors", 2)
    keys = [call.args[0] for call in span.set_attribute.call_args_list]
    assert "nab.export.limit" not in keys
    assert "nab.export.extra" not in keys


def test_exception_is_recorded_and_reraised():
    tracer = MagicMock()
    span = tracer.start_as_current_span.return_value.__enter__.return_value

    with patch("nab_batch.observability.tracing._get_tracer", return_value=tracer):
        with pytest.raises(ConnectionError):
            with tracing.phase_span("upload"):
                raise ConnectionError("reset")

    span.record_exception.assert_called_once()
    span.set_attribute.assert_any_call("nab.upload.error", "ConnectionError")


def test_endpoint_falls_back_to_phoenix_host(monkeypatch):
    monkeypatch.delenv("NAB_OTLP_ENDPOINT", raising=False)
    monkeypatch.delenv("PHOENIX_OTLP_ENDPOINT", raising=False)
    monkeypatch.setenv("PHOENIX_HOST", "phoenix")
    monkeypatch.delenv("PHOENIX_PORT", raising=False)

    assert tracing._otlp_endpoint() == "http://phoenix:6006/v1/traces"
