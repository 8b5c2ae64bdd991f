"""Transition table and transition application for stage executions."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

from .domain import StageExecution, StageStatus
from .errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class StageTrigger(str, Enum):
    """Events that move a stage between states."""

    ASSIGN = "assign"
    BLOCK = "block"
    RELEASE = "release"
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    CANCEL = "cancel"
    REVOKE = "revoke"


_OPEN_STATES = (
    StageStatus.PENDING,
    StageStatus.WAITING,
    StageStatus.IN_PROGRESS,
    StageStatus.PAUSED,
)

TRANSITIONS: Mapping[Tuple[StageStatus, StageTrigger], StageStatus] = MappingProxyType(
    {
        (StageStatus.PENDING, StageTrigger.ASSIGN): StageStatus.PENDING,
        (StageStatus.PENDING, StageTrigger.BLOCK): StageStatus.WAITING,
        (StageStatus.WAITING, StageTrigger.RELEASE): StageStatus.PENDING,
        (StageStatus.PENDING, StageTrigger.START): StageStatus.IN_PROGRESS,
        (StageStatus.IN_PROGRESS, StageTrigger.PAUSE): StageStatus.PAUSED,
        (StageStatus.PAUSED, StageTrigger.RESUME): StageStatus.IN_PROGRESS,
        (StageStatus.IN_PROGRESS, StageTrigger.COMPLETE): StageStatus.COMPLETED,
        (StageStatus.PAUSED, StageTrigger.COMPLETE): StageStatus.COMPLETED,
        (StageStatus.IN_PROGRESS, StageTrigger.REVOKE): StageStatus.PENDING,
        **{(state, StageTrigger.CANCEL): StageStatus.ERROR for state in _OPEN_STATES},
    }
)


def next_status(status: StageStatus, trigger: StageTrigger) -> Optional[StageStatus]:
    return TRANSITIONS.get((status, trigger))


def allowed_triggers(status: StageStatus) -> List[StageTrigger]:
    return [trigger for (state, trigger) in TRANSITIONS if state == status]


def can_fire(stage: StageExecution, trigger: StageTrigger) -> bool:
    return next_status(stage.status, trigger) is not None


def fire(
    stage: StageExecution,
    trigger: StageTrigger,
    at: datetime,
    *,
    operator_id: Optional[str] = None,
    device_id: Optional[str] = None,
    note: Optional[str] = None,
) -> StageStatus:
    """Apply ``trigger`` to ``stage`` and return the previous status.

    Raises :class:`InvalidTransitionError` and leaves the stage untouched when
    the table has no entry for the current status.
    """

    previous = stage.status
    target = next_status(previous, trigger)
    if target is None:
        raise InvalidTransitionError(
            stage.id,
            trigger.value,
            f"not allowed from status {previous.value}",
            status=previous.value,
        )
    if trigger == StageTrigger.CANCEL and not (note and note.strip()):
        raise InvalidTransitionError(
            stage.id, trigger.value, "a cancellation reason is required", status=previous.value
        )

    if trigger == StageTrigger.START:
        stage.started_at = at
        stage.paused_at = None
        stage.resumed_at = None
        stage.paused_seconds = 0.0
        stage.ended_at = None
        stage.start_attempts += 1
        stage.last_error = None
    elif trigger == StageTrigger.PAUSE:
        stage.paused_at = at
    elif trigger == StageTrigger.RESUME:
        if stage.paused_at is not None:
            stage.paused_seconds += max((at - stage.paused_at).total_seconds(), 0.0)
        stage.resumed_at = at
    elif trigger == StageTrigger.COMPLETE:
        if previous == StageStatus.PAUSED and stage.paused_at is not None:
            stage.paused_seconds += max((at - stage.paused_at).total_seconds(), 0.0)
        stage.ended_at = at
    elif trigger == StageTrigger.CANCEL:
        if previous in {StageStatus.IN_PROGRESS, StageStatus.PAUSED}:
            stage.ended_at = at
        stage.last_error = note
    elif trigger == StageTrigger.REVOKE:
        stage.started_at = None
        stage.paused_at = None
        stage.resumed_at = None
        stage.paused_seconds = 0.0

    stage.status = target
    stage.status_changed_at = at
    if operator_id is not None:
        stage.operator_id = operator_id
    if device_id is not None:
        stage.device_id = device_id
    if note is not None:
        stage.reason_note = note
    logger.debug(
        "Stage %s: %s -> %s (%s)", stage.id, previous.value, target.value, trigger.value
    )
    return previous


__all__ = [
    "StageTrigger",
    "TRANSITIONS",
    "next_status",
    "allowed_triggers",
    "can_fire",
    "fire",
]
