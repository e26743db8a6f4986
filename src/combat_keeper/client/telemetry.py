"""
Combat telemetry events and sinks.

A sink that raises is logged and skipped; telemetry never fails an action.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger("combat-keeper.telemetry")

EVENT_TYPES = frozenset({
    "encounter_start",
    "encounter_end",
    "combatants_added",
    "initiative_rolled",
    "turn_advance",
    "round_start",
    "damage_applied",
    "healing_applied",
    "temp_hp_granted",
    "effect_created",
    "effect_deleted",
    "resource_spent",
    "rest_taken",
    "arcanum_selected",
    "save_prompt_created",
    "save_result_submitted",
    "save_prompt_closed",
    "contest_resolved",
    "grapple_escape_attempted",
    "action_undone",
    "combat_action_error",
})


class TelemetryEvent(BaseModel):
    encounter_id: str | None = None
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    latency_ms: float | None = None
    error_message: str | None = None
    client_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TelemetrySink(Protocol):
    def record(self, event: TelemetryEvent) -> None:
        ...


class LoggingTelemetrySink:
    """Writes each event as one INFO line."""

    def record(self, event: TelemetryEvent) -> None:
        latency = f" latency={event.latency_ms:.1f}ms" if event.latency_ms is not None else ""
        error = f" error={event.error_message}" if event.error_message else ""
        logger.info(
            f"[{event.event_type}] encounter={event.encounter_id}{latency}{error} data={event.event_data}"
        )


class InMemoryTelemetrySink:
    def __init__(self) -> None:
        self.events: list[TelemetryEvent] = []

    def record(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[TelemetryEvent]:
        return [e for e in self.events if e.event_type == event_type]


class Telemetry:
    """Fans events out to sinks, tagging them with the client id."""

    def __init__(self, sinks: list[TelemetrySink] | None = None, client_id: str | None = None) -> None:
        self.sinks = sinks if sinks is not None else [LoggingTelemetrySink()]
        self.client_id = client_id

    def emit(
        self,
        event_type: str,
        *,
        encounter_id: str | None = None,
        event_data: dict[str, Any] | None = None,
        latency_ms: float | None = None,
        error_message: str | None = None,
    ) -> TelemetryEvent:
        if event_type not in EVENT_TYPES:
            logger.debug(f"Unregistered telemetry event type: {event_type}")
        event = TelemetryEvent(
            encounter_id=encounter_id,
            event_type=event_type,
            event_data=event_data or {},
            latency_ms=latency_ms,
            error_message=error_message,
            client_id=self.client_id,
        )
        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception as e:
                logger.warning(f"Telemetry sink {type(sink).__name__} failed: {e}")
        return event
