"""OpenTelemetry tracing setup."""

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from src.config import settings

SERVICE = "build-mode-engine"


def setup_tracing() -> None:
    """Setup OpenTelemetry tracing with console exporter."""
    if not settings.enable_tracing:
        return

    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: SERVICE}))
    trace.set_tracer_provider(provider)
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))


def get_tracer(name: str):
    """Get tracer instance.

    Args:
        name: Tracer name.

    Returns:
        Tracer instance.
    """
    return trace.get_tracer(name)


def get_trace_id() -> str:
    """Current trace id, empty outside a recording span."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return ""
    return format(context.trace_id, "032x")
