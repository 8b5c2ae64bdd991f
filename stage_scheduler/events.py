"""Audit event sinks.

The engine publishes a :class:`StageEvent` for every lifecycle change. Sinks
are fire-and-forget: :class:`EventPublisher` logs a failing sink and lets the
triggering transition finish.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from .domain import StageEvent, StageEventType, StageExecution, StageStatus

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def publish(self, event: StageEvent) -> None:
        ...


class InMemoryEventLog:
    """Keeps published events in memory, newest last."""

    def __init__(self) -> None:
        self.events: List[StageEvent] = []

    def publish(self, event: StageEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: StageEventType) -> List[StageEvent]:
        return [event for event in self.events if event.event_type == event_type]

    def for_stage(self, stage_id: str) -> List[StageEvent]:
        return [event for event in self.events if event.stage_id == stage_id]


class LoggingEventSink:
    """Writes events to the ``stage_scheduler.audit`` logger."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None) -> None:
        self._logger = audit_logger or logging.getLogger("stage_scheduler.audit")

    def publish(self, event: StageEvent) -> None:
        self._logger.info(
            "%s stage=%s %s->%s machine=%s operator=%s %s",
            event.event_type.value,
            event.stage_id,
            event.previous_status.value if event.previous_status else "-",
            event.new_status.value if event.new_status else "-",
            event.machine_id,
            event.operator_id,
            event.note,
        )


class EventPublisher:
    """Builds events and hands them to the sink on a best-effort basis."""

    def __init__(self, sink: EventSink, clock: Callable[[], datetime]) -> None:
        self.sink = sink
        self._clock = clock

    def stage_event(
        self,
        event_type: StageEventType,
        stage: StageExecution,
        *,
        previous_status: Optional[StageStatus] = None,
        note: str = "",
    ) -> None:
        self.publish(
            StageEvent(
                event_type=event_type,
                stage_id=stage.id,
                occurred_at=self._clock(),
                previous_status=previous_status,
                new_status=stage.status,
                machine_id=stage.machine_id,
                operator_id=stage.operator_id,
                device_id=stage.device_id,
                note=note,
                sub_lot_id=stage.sub_lot_id,
            )
        )

    def lot_event(
        self,
        event_type: StageEventType,
        *,
        lot_id: str,
        sub_lot_id: Optional[str] = None,
        note: str = "",
    ) -> None:
        self.publish(
            StageEvent(
                event_type=event_type,
                stage_id=None,
                occurred_at=self._clock(),
                lot_id=lot_id,
                sub_lot_id=sub_lot_id,
                note=note,
            )
        )

    def publish(self, event: StageEvent) -> None:
        try:
            self.sink.publish(event)
        except Exception:
            logger.exception(
                "Event sink failed for %s on stage %s", event.event_type.value, event.stage_id
            )


__all__ = ["EventSink", "InMemoryEventLog", "LoggingEventSink", "EventPublisher"]
