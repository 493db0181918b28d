"""OpenTelemetry initialization and span wrappers for MCP tool calls."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from pipeline_insights.core.logging import set_command_context

logger = logging.getLogger(__name__)

_TRACER_NAME = "pipeline_insights"
SERVICE_NAME = "pipeline-insights"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = SERVICE_NAME) -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, installs a TracerProvider with
    an OTLP gRPC exporter on the first call.  Otherwise the no-op tracer is
    returned.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.debug("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


class tool_span:
    """Create an OpenTelemetry span for an MCP tool invocation.

    Can be used as a **context manager** or as a **decorator** on async functions.

    Context manager usage::

        with tool_span("azdo_timeline"):
            ...

    Decorator usage::

        @tool_span("azdo_timeline")
        async def azdo_timeline(build_id: int) -> str:
            ...

    The span is named ``pipeline.tool.<tool_name>``.  Exceptions are recorded
    on the span and its status is set to ERROR before the exception is
    re-raised.
    """

    def __init__(self, tool_name: str) -> None:
        self._tool_name = tool_name
        self._span_name = f"pipeline.tool.{tool_name}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    # -- context manager protocol ------------------------------------------

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        self._span.set_attribute("pipeline.tool", self._tool_name)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        set_command_context(self._tool_name)
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    # -- decorator protocol ------------------------------------------------

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each invocation gets a fresh instance so concurrent calls do not
        # share _span/_token state.
        tool_name = self._tool_name

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with tool_span(tool_name):
                return await func(*args, **kwargs)

        return _wrapper
