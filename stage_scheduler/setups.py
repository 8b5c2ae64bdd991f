"""Changeover detection and setup stage synthesis."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union
from uuid import uuid4

from .context import SchedulingContext
from .domain import (
    Machine,
    RouteStep,
    SetupTimeRecord,
    StageEventType,
    StageExecution,
    StageStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NoSetup:
    reason: str


@dataclass(frozen=True, slots=True)
class SetupCreated:
    stage_id: str
    duration_hours: float
    from_part_id: str
    to_part_id: str


SetupResolution = Union[NoSetup, SetupCreated]


class SetupResolver:
    """Decides whether a machine needs a changeover before running a stage."""

    def __init__(self, context: SchedulingContext) -> None:
        self._context = context

    def previous_part(self, machine_id: str) -> Optional[str]:
        """Part of the last productive stage completed on ``machine_id``."""

        last = self._context.stages.last_completed_on_machine(machine_id)
        if last is None:
            return None
        return self._context.part_id_for(last)

    def known_changeover(self, machine_id: str, to_part_id: str) -> Optional[float]:
        """Recorded changeover hours onto ``to_part_id``, without creating records."""

        from_part_id = self.previous_part(machine_id)
        if from_part_id is None or from_part_id == to_part_id:
            return None
        record = self._context.setup_times.lookup(machine_id, from_part_id, to_part_id)
        return record.hours if record else None

    def changeover_hours(
        self, machine_id: str, from_part_id: str, to_part_id: str, step: RouteStep
    ) -> float:
        record = self._context.setup_times.lookup(machine_id, from_part_id, to_part_id)
        if record is not None:
            return record.hours
        record = self._context.setup_times.record(
            SetupTimeRecord(
                id=str(uuid4()),
                machine_id=machine_id,
                from_part_id=from_part_id,
                to_part_id=to_part_id,
                hours=step.setup_time_hours,
            )
        )
        logger.info(
            "Recorded changeover %s -> %s on machine %s: %.2fh",
            from_part_id,
            to_part_id,
            machine_id,
            record.hours,
        )
        return record.hours

    def resolve(self, stage: StageExecution, machine: Machine) -> SetupResolution:
        if stage.is_setup:
            return NoSetup("setup stages need no changeover")
        to_part_id = self._context.part_id_for(stage)
        from_part_id = self.previous_part(machine.id)
        if from_part_id is None:
            return NoSetup("no previous part on machine")
        if from_part_id == to_part_id:
            return NoSetup("same part as previous")

        step = self._context.step_for(stage)
        hours = self.changeover_hours(machine.id, from_part_id, to_part_id, step)
        options = self._context.options
        now = self._context.now()
        setup = StageExecution(
            id=str(uuid4()),
            sub_lot_id=stage.sub_lot_id,
            route_step_id=stage.route_step_id,
            status=StageStatus.PENDING,
            is_setup=True,
            machine_id=machine.id,
            priority=min(stage.priority + options.setup_priority_boost, options.max_priority),
            setup_hours=hours,
            created_at=now,
            status_changed_at=now,
            operator_id=stage.operator_id,
            device_id=stage.device_id,
        )
        self._context.stages.add(setup.id, setup)
        self._context.setup_links.link(setup.id, stage.id)
        self._context.events.stage_event(
            StageEventType.SETUP_CREATED,
            setup,
            note=f"changeover {from_part_id} -> {to_part_id} for stage {stage.id}",
        )
        logger.info(
            "Setup stage %s (%.2fh) created ahead of stage %s on machine %s",
            setup.id,
            hours,
            stage.id,
            machine.id,
        )
        return SetupCreated(
            stage_id=setup.id,
            duration_hours=hours,
            from_part_id=from_part_id,
            to_part_id=to_part_id,
        )


__all__ = ["NoSetup", "SetupCreated", "SetupResolution", "SetupResolver"]
