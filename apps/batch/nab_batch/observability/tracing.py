from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

_initialized = False
_tracer = None

logger = logging.getLogger(__name__)

_ATTRIBUTE_PREFIX = "nab"
_SCALAR_TYPES = (str, bool, int, float)


def _otlp_endpoint() -> str | None:
    endpoint = os.environ.get("NAB_OTLP_ENDPOINT") or os.environ.get("PHOENIX_OTLP_ENDPOINT")
    if endpoint:
        return endpoint
    host = os.environ.get("PHOENIX_HOST")
    if host:
        return f"http://{host}:{os.environ.get('PHOENIX_PORT') or '6006'}/v1/traces"
    return None


def _setup_tracer() -> None:
    global _initialized, _tracer
    if _initialized:
        return
    _initialized = True

    endpoint = _otlp_endpoint()
    if not endpoint:
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning("Tracing endpoint configured but the OpenTelemetry SDK is not installed (pip install nab-batch[tracing])")
        return

    service_name = os.environ.get("NAB_SERVICE_NAME", "nab-batch")
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer("nab_batch")
    logger.info("Tracing phases to %s as %s", endpoint, service_name)


def _get_tracer():
    _setup_tracer()
    return _tracer


def annotate(span: Any, phase: str, fields: Mapping[str, Any]) -> None:
    """
    Attach phase counters to `span` as `nab.<phase>.<field>`.

    Lists are recorded by length; None and nested values are dropped. A None span (tracing
    disabled) is accepted so callers never branch on it.
    """
    if span is None:
        return
    for key, value in fields.items():
        if isinstance(value, (list, tuple)):
            value = len(value)
        if value is None or not isinstance(value, _SCALAR_TYPES):
            continue
        span.set_attribute(f"{_ATTRIBUTE_PREFIX}.{phase}.{key}", value)


@contextmanager
def phase_span(phase: str, attributes: Mapping[str, Any] | None = None) -> Iterator[Any]:
    """Run one pipeline phase inside a `nab.<phase>` span; yields None when tracing is off."""
    tracer = _get_tracer()
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(f"{_ATTRIBUTE_PREFIX}.{phase}") as span:
        annotate(span, phase, attributes or {})
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_attribute(f"{_ATTRIBUTE_PREFIX}.{phase}.error", type(exc).__name__)
            raise
