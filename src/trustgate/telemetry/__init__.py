"""OpenTelemetry integration for distributed tracing."""

from trustgate.telemetry.setup import (
    get_tracer,
    instrument_app,
    setup_telemetry,
    shutdown_telemetry,
)

__all__ = ["get_tracer", "instrument_app", "setup_telemetry", "shutdown_telemetry"]
