"""Observability -- OpenTelemetry tracing for dispatch turns."""

from capdispatch.telemetry.otel import DispatchTracer, OTelConfig

__all__ = ["DispatchTracer", "OTelConfig"]
