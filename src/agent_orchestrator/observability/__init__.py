"""
Observability adapters for the orchestration core.

This module provides:
- OpenTelemetrySink: an EventSink that turns lifecycle events into spans
- FanOutSink: publishes each event to several sinks
"""

from .otel import OTEL_AVAILABLE, FanOutSink, OpenTelemetrySink, OTelConfig

__all__ = [
    "OpenTelemetrySink",
    "OTelConfig",
    "FanOutSink",
    "OTEL_AVAILABLE",
]
