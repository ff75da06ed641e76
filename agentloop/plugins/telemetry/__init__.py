"""Telemetry plugins and the background record queue.

Usage:
    from agentloop.plugins.telemetry import create_telemetry_plugin, TelemetryQueue

    queue = TelemetryQueue(create_telemetry_plugin(config.telemetry.to_dict()))
    queue.log_event(ToolCallEvent(function_name="read_file", success=True))
    ...
    queue.shutdown()  # flushes first
"""

from typing import Any, Dict, Optional

from .events import (
    ApiErrorEvent,
    ApiRequestEvent,
    ApiResponseEvent,
    TelemetryEvent,
    ToolCallDecision,
    ToolCallEvent,
)
from .null_plugin import NullTelemetryPlugin
from .plugin import TelemetryPlugin
from .record_queue import TelemetryQueue


def create_telemetry_plugin(config: Optional[Dict[str, Any]] = None) -> TelemetryPlugin:
    """Return an initialized OTelPlugin when enabled, else the null plugin."""
    config = config or {}
    if not config.get("enabled", False):
        return NullTelemetryPlugin()

    from .otel_plugin import OTelPlugin
    plugin = OTelPlugin()
    plugin.initialize(config)
    return plugin


__all__ = [
    "ApiErrorEvent",
    "ApiRequestEvent",
    "ApiResponseEvent",
    "NullTelemetryPlugin",
    "TelemetryEvent",
    "TelemetryPlugin",
    "TelemetryQueue",
    "ToolCallDecision",
    "ToolCallEvent",
    "create_telemetry_plugin",
]
