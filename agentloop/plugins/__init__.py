"""Swappable backends: model providers and telemetry sinks."""
