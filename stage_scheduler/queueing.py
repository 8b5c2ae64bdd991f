"""Wait queues: position, ordering and re-prioritization."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from .context import SchedulingContext
from .domain import Machine, StageEventType, StageExecution, StageStatus
from .errors import NotInQueueError
from .state_machine import StageTrigger, fire

logger = logging.getLogger(__name__)


class QueueManager:
    """Orders Waiting stages and decides which one a freed machine takes next."""

    def __init__(self, context: SchedulingContext) -> None:
        self._context = context

    def sort_key(self, stage: StageExecution) -> Tuple[int, datetime, datetime]:
        lot = self._context.lot_for(stage)
        return (-stage.priority, lot.created_at, stage.created_at)

    def ordered(self, stages: Iterable[StageExecution]) -> List[StageExecution]:
        # sorted() is stable, so arrival order settles any remaining tie
        return sorted(stages, key=self.sort_key)

    def waiting_for_type(self, machine_type: str) -> List[StageExecution]:
        return [
            stage
            for stage in self._context.stages.all_in_queue()
            if self._context.step_for(stage).machine_type == machine_type
        ]

    def position_for(self, stage: StageExecution) -> int:
        machine_type = self._context.step_for(stage).machine_type
        others = [other for other in self.waiting_for_type(machine_type) if other.id != stage.id]
        return len(others) + 1

    def enqueue(self, stage: StageExecution) -> int:
        """Park a Pending stage in its machine-type queue."""

        position = self.position_for(stage)
        previous = fire(stage, StageTrigger.BLOCK, self._context.now())
        stage.machine_id = None
        stage.queue_position = position
        self._context.save(stage)
        self._context.events.stage_event(
            StageEventType.QUEUED,
            stage,
            previous_status=previous,
            note=f"queue position {position}",
        )
        logger.info("Stage %s queued at position %d", stage.id, position)
        return position

    def park_on_machine(self, stage: StageExecution) -> int:
        """Record the queue position of a stage Waiting on a busy machine."""

        position = self.position_for(stage)
        stage.queue_position = position
        self._context.save(stage)
        return position

    def is_setup_blocked(self, stage: StageExecution) -> bool:
        setup_id = self._context.setup_links.setup_for(stage.id)
        if setup_id is None:
            return False
        return self._context.stage(setup_id).status != StageStatus.COMPLETED

    def wait_set(self, machine: Machine) -> List[StageExecution]:
        """Waiting stages assigned to ``machine`` and unassigned ones of its type."""

        members = [
            stage
            for stage in self._context.stages.all_in_queue()
            if stage.machine_id == machine.id
            or (
                stage.machine_id is None
                and self._context.step_for(stage).machine_type == machine.machine_type
            )
        ]
        return self.ordered(members)

    def next_in_queue(self, machine: Machine) -> Optional[StageExecution]:
        for stage in self.wait_set(machine):
            if not self.is_setup_blocked(stage):
                return stage
        return None

    def release(self, stage: StageExecution, note: str = "") -> StageStatus:
        """Move a Waiting stage back to Pending."""

        previous = fire(stage, StageTrigger.RELEASE, self._context.now(), note=note or None)
        stage.queue_position = None
        self._context.save(stage)
        self._context.events.stage_event(
            StageEventType.RELEASED, stage, previous_status=previous, note=note
        )
        return previous

    def reprioritize(self, machine: Machine, stage_id: str) -> StageExecution:
        """Move a waiting stage in front of the current head of ``machine``'s queue."""

        members = self.wait_set(machine)
        stage = next((member for member in members if member.id == stage_id), None)
        if stage is None:
            raise NotInQueueError(stage_id, machine.id)
        head_priority = max((member.priority for member in members), default=stage.priority)
        previous_priority = stage.priority
        stage.priority = min(head_priority + 1, self._context.options.max_priority)
        stage.priority = max(stage.priority, previous_priority)
        self._context.save(stage)
        self._context.events.stage_event(
            StageEventType.REPRIORITIZED,
            stage,
            previous_status=stage.status,
            note=f"priority {previous_priority} -> {stage.priority}",
        )
        logger.info(
            "Stage %s re-prioritized on machine %s: %d -> %d",
            stage.id,
            machine.id,
            previous_priority,
            stage.priority,
        )
        return stage


__all__ = ["QueueManager"]
