"""
Client side of combat-keeper: the Action Gateway and its transport,
retry and telemetry helpers.
"""

from .gateway import ActionGateway, Notification, make_idempotency_key
from .retry import with_retry
from .telemetry import InMemoryTelemetrySink, LoggingTelemetrySink, Telemetry, TelemetryEvent
from .transport import HttpTransport, LocalTransport, Transport

__all__ = [
    "ActionGateway",
    "Notification",
    "make_idempotency_key",
    "with_retry",
    "InMemoryTelemetrySink",
    "LoggingTelemetrySink",
    "Telemetry",
    "TelemetryEvent",
    "HttpTransport",
    "LocalTransport",
    "Transport",
]
