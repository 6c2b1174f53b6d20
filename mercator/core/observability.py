import os

from opentelemetry import propagate, trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


def setup_tracing(service_name: str):
    # trace.get_tracer_provider() always returns something (a ProxyTracerProvider until
    # one is set), so only install ours when no SDK provider is present
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return trace.get_tracer(service_name)

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    # OTEL_TRACES_EXPORTER=none keeps spans in-process (tests, local runs without a collector)
    if os.getenv("OTEL_TRACES_EXPORTER", "otlp").lower() != "none":
        otel_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint, insecure=True)))

    try:
        trace.set_tracer_provider(provider)
    except ValueError:
        # Already set
        pass

    return trace.get_tracer(service_name)


def inject_context(headers: dict):
    propagate.inject(headers)


def extract_context(headers: dict):
    return propagate.extract(headers or {})


def set_span_attributes(span, **attributes):
    """Set several span attributes at once, skipping None and stringifying Decimals."""
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (bool, int, float, str)):
            value = str(value)
        span.set_attribute(key.replace("__", "."), value)
