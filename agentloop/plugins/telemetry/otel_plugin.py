"""OpenTelemetry implementation of TelemetryPlugin.

Each audit record becomes one short span named after the record
(``agentloop.tool_call``, ``agentloop.api_response``, ...) carrying the
record's fields as attributes.

Requires:
    opentelemetry-api>=1.20.0
    opentelemetry-sdk>=1.20.0
    opentelemetry-exporter-otlp>=1.20.0 (for OTLP export)
"""

import os
from typing import Any, Dict, Optional

from .events import ApiErrorEvent, TelemetryEvent

# Lazy imports - only loaded when plugin is initialized
_trace = None
_Status = None
_StatusCode = None


def _ensure_imports():
    """Lazily import OpenTelemetry modules."""
    global _trace, _Status, _StatusCode
    if _trace is None:
        from opentelemetry import trace as otel_trace
        from opentelemetry.trace import Status, StatusCode
        _trace = otel_trace
        _Status = Status
        _StatusCode = StatusCode


# Attributes that may contain prompt or tool content
_SENSITIVE_ATTRS = frozenset({
    "request_text",
    "response_text",
    "function_args",
})


def _redact(value: Any) -> str:
    if isinstance(value, str):
        return f"[REDACTED: {len(value)} chars]"
    return "[REDACTED]"


class OTelPlugin:
    """OpenTelemetry implementation of TelemetryPlugin."""

    __slots__ = ("_enabled", "_tracer", "_redact_content", "_provider")

    def __init__(self):
        self._enabled = False
        self._tracer = None
        self._redact_content = True
        self._provider = None

    def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize OpenTelemetry with the given configuration.

        Args:
            config: Configuration dict with keys:
                - enabled: bool (default True)
                - service_name: str (default "agentloop")
                - exporter: str ("otlp", "console", "none")
                - endpoint: str (OTLP endpoint URL)
                - redact_content: bool (default True)
        """
        self._enabled = config.get("enabled", True)
        if not self._enabled:
            return

        _ensure_imports()

        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME

        self._redact_content = config.get("redact_content", True)

        service_name = config.get(
            "service_name",
            os.environ.get("OTEL_SERVICE_NAME", "agentloop")
        )
        self._provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))

        exporter = self._create_exporter(config.get("exporter", "otlp"), config)
        if exporter:
            self._provider.add_span_processor(BatchSpanProcessor(exporter))

        self._tracer = self._provider.get_tracer("agentloop")

    def _create_exporter(self, exporter_type: str, config: Dict[str, Any]):
        """Create the appropriate span exporter, or None."""
        if exporter_type == "console":
            from opentelemetry.sdk.trace.export import ConsoleSpanExporter
            return ConsoleSpanExporter()

        if exporter_type == "otlp":
            endpoint = config.get("endpoint") or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
            if not endpoint:
                return None
            # gRPC exporter first, HTTP exporter second; whichever is installed
            try:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            except ImportError:
                try:
                    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
                except ImportError:
                    return None
            return OTLPSpanExporter(endpoint=endpoint)

        return None

    def shutdown(self) -> None:
        """Flush pending spans and shutdown."""
        if self._provider:
            self._provider.shutdown()
            self._provider = None
            self._tracer = None
            self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled and self._tracer is not None

    def emit(self, event: TelemetryEvent) -> None:
        if not self.enabled:
            return

        attrs: Dict[str, Any] = {}
        for key, value in event.to_attributes().items():
            if key == "name":
                continue
            if self._redact_content and key in _SENSITIVE_ATTRS:
                value = _redact(value)
            attrs[f"agentloop.{key}"] = value

        span = self._tracer.start_span(event.name, attributes=attrs)
        error: Optional[str] = None
        if isinstance(event, ApiErrorEvent):
            error = event.error
        elif getattr(event, "success", True) is False:
            error = getattr(event, "error", None) or "failed"
        if error:
            span.set_status(_Status(_StatusCode.ERROR, error))
        else:
            span.set_status(_Status(_StatusCode.OK))
        span.end()
