"""Null (no-op) telemetry plugin.

The default when telemetry is disabled: no OpenTelemetry imports, no work.
"""

from typing import Any, Dict

from .events import TelemetryEvent


class NullTelemetryPlugin:
    """No-op telemetry plugin with zero overhead."""

    __slots__ = ()

    def initialize(self, config: Dict[str, Any]) -> None:
        pass

    def shutdown(self) -> None:
        pass

    @property
    def enabled(self) -> bool:
        return False

    def emit(self, event: TelemetryEvent) -> None:
        pass
