"""Score-based machine selection for stages awaiting assignment."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from .context import SchedulingContext
from .domain import Machine, RouteStep, StageEventType, StageExecution, StageStatus
from .errors import InvalidTransitionError
from .setups import SetupCreated, SetupResolution, SetupResolver
from .state_machine import StageTrigger, can_fire, fire

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MachineScore:
    """Score of one candidate machine and the terms that produced it."""

    machine_id: str
    score: float
    same_part: bool
    changeover_hours: Optional[float]
    queued_stages: int
    hours_until_release: float


@dataclass(frozen=True, slots=True)
class Assignment:
    machine_id: str
    status: StageStatus
    setup: SetupResolution
    machine_busy: bool


class MachineSelector:
    """Picks the best free machine for a stage and assigns it."""

    def __init__(self, context: SchedulingContext, setups: SetupResolver) -> None:
        self._context = context
        self._setups = setups

    def eligible_machines(self, step: RouteStep) -> List[Machine]:
        stages = self._context.stages
        return [
            machine
            for machine in self._context.machines.by_type(step.machine_type)
            if stages.current_on_machine(machine.id) is None
        ]

    def release_time(self, machine_id: str, now: Optional[datetime] = None) -> datetime:
        """Estimated moment the machine has worked off its current and queued stages."""

        now = now or self._context.now()
        stages = self._context.stages
        current = stages.current_on_machine(machine_id)
        if current is None:
            return now
        floor = self._context.options.min_remaining_minutes / 60
        worked = current.actual_working_hours(now) or 0.0
        remaining = max(self._context.planned_hours(current) - worked, floor)
        queued = sum(
            self._context.planned_hours(stage) for stage in stages.queued_for_machine(machine_id)
        )
        return now + timedelta(hours=remaining + queued)

    def score(self, stage: StageExecution, machine: Machine) -> MachineScore:
        weights = self._context.options.weights
        now = self._context.now()
        part_id = self._context.part_id_for(stage)

        score = weights.machine_priority * machine.priority
        same_part = self._setups.previous_part(machine.id) == part_id
        changeover = None
        if same_part:
            score += weights.same_part_bonus
        else:
            changeover = self._setups.known_changeover(machine.id, part_id)
            if changeover is not None:
                score -= weights.setup_hours * changeover
        queued = len(self._context.stages.queued_for_machine(machine.id))
        score -= weights.queued_stage * queued
        release_hours = (self.release_time(machine.id, now) - now).total_seconds() / 3600
        score -= weights.release_hours * max(release_hours, 0.0)

        logger.debug(
            "Machine %s scores %.2f for stage %s (same_part=%s queued=%d release=%.2fh)",
            machine.id,
            score,
            stage.id,
            same_part,
            queued,
            release_hours,
        )
        return MachineScore(
            machine_id=machine.id,
            score=score,
            same_part=same_part,
            changeover_hours=changeover,
            queued_stages=queued,
            hours_until_release=max(release_hours, 0.0),
        )

    def rank(self, stage: StageExecution, machines: Sequence[Machine]) -> List[MachineScore]:
        return [self.score(stage, machine) for machine in machines]

    def select(self, stage: StageExecution, machines: Sequence[Machine]) -> Optional[MachineScore]:
        best: Optional[MachineScore] = None
        for candidate in self.rank(stage, machines):
            # strictly greater keeps the earlier machine on ties
            if best is None or candidate.score > best.score:
                best = candidate
        return best

    def assign(self, stage: StageExecution, machine: Machine) -> Assignment:
        """Put a Pending stage on ``machine``.

        The stage ends up Waiting when a setup stage was synthesized ahead of
        it or another stage is running on the machine, otherwise Pending.
        """

        if not can_fire(stage, StageTrigger.ASSIGN):
            raise InvalidTransitionError(
                stage.id,
                StageTrigger.ASSIGN.value,
                f"not allowed from status {stage.status.value}",
                status=stage.status.value,
            )
        context = self._context
        now = context.now()
        stage.machine_id = machine.id
        stage.queue_position = None
        resolution = self._setups.resolve(stage, machine)
        running = context.stages.current_on_machine(machine.id)
        busy = running is not None and running.id != stage.id
        trigger = (
            StageTrigger.BLOCK if isinstance(resolution, SetupCreated) or busy else StageTrigger.ASSIGN
        )
        previous = fire(stage, trigger, now)
        context.save(stage)
        context.events.stage_event(
            StageEventType.ASSIGNED,
            stage,
            previous_status=previous,
            note=f"machine {machine.id}",
        )
        logger.info(
            "Stage %s assigned to machine %s (%s)", stage.id, machine.id, stage.status.value
        )
        return Assignment(
            machine_id=machine.id,
            status=stage.status,
            setup=resolution,
            machine_busy=busy,
        )


__all__ = ["MachineScore", "Assignment", "MachineSelector"]
