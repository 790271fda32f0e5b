"""
Rental Core OpenTelemetry Setup

Production observability:
- Traces for lifecycle transitions and late-return sweeps (one span each)
- Span attributes carry reservation ids and sweep counts
- Logs correlate through the request id filter in logging_setup
"""
from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Iterator, Optional
import os


def setup_otel(
    service_name: str = "rental-engine",
    endpoint: Optional[str] = None,
):
    """Initialize OpenTelemetry with OTLP exporter."""
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource

        resource = Resource.create({"service.name": service_name})
        provider = TracerProvider(resource=resource)

        otlp_endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            provider.add_span_processor(BatchSpanProcessor(exporter))

        trace.set_tracer_provider(provider)
        return trace.get_tracer(service_name)

    except ImportError:
        # Graceful degradation if OTEL not installed
        return None


@contextmanager
def traced_span(tracer, name: str, **attributes: Any) -> Iterator[Any]:
    """Run the block inside a span, or plainly when tracing is off."""
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(
        name,
        attributes={f"rental.{k}": str(v) for k, v in attributes.items()},
    ) as span:
        yield span
