"""Telemetry plugin protocol definition.

A telemetry plugin is the external sink for audit records. The engine never
calls a plugin directly from the hot path: records go through
``TelemetryQueue``, which hands them to the plugin on a background thread.
"""

from typing import Any, Dict, Protocol, runtime_checkable

from .events import TelemetryEvent


@runtime_checkable
class TelemetryPlugin(Protocol):
    """Protocol for telemetry sinks."""

    def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the telemetry system.

        Args:
            config: Configuration dict with keys:
                - enabled: bool (default True)
                - service_name: str (default "agentloop")
                - exporter: str ("otlp", "console", "none")
                - endpoint: str (OTLP endpoint URL)
                - redact_content: bool (redact prompts/responses, default True)
        """
        ...

    def shutdown(self) -> None:
        """Flush pending records and shut down the exporter."""
        ...

    @property
    def enabled(self) -> bool:
        """Check if telemetry is enabled."""
        ...

    def emit(self, event: TelemetryEvent) -> None:
        """Export one record."""
        ...
