"""Routing order within a sub-lot."""

from __future__ import annotations

from typing import List, Optional

from .context import SchedulingContext
from .domain import Lot, RouteStep, StageExecution, StageStatus


class Sequencer:
    """Answers ordering questions about the productive stages of a sub-lot."""

    def __init__(self, context: SchedulingContext) -> None:
        self._context = context

    def productive_stages(self, sub_lot_id: str) -> List[StageExecution]:
        return [
            stage
            for stage in self._context.stages_for_sub_lot(sub_lot_id)
            if not stage.is_setup
        ]

    def stage_for_step(self, sub_lot_id: str, step_id: str) -> Optional[StageExecution]:
        for stage in self.productive_stages(sub_lot_id):
            if stage.route_step_id == step_id:
                return stage
        return None

    def blocking_step(self, stage: StageExecution) -> Optional[RouteStep]:
        """First earlier step whose stage in the sub-lot is not Completed."""

        if stage.is_setup:
            return None
        route, step = self._context.route_and_step(stage)
        for earlier in route.previous_steps(step):
            previous = self.stage_for_step(stage.sub_lot_id, earlier.id)
            if previous is None or previous.status != StageStatus.COMPLETED:
                return earlier
        return None

    def first_stage(self, sub_lot_id: str) -> Optional[StageExecution]:
        stages = self.productive_stages(sub_lot_id)
        if not stages:
            return None
        return min(stages, key=lambda stage: self._context.step_for(stage).order)

    def next_stage(self, stage: StageExecution) -> Optional[StageExecution]:
        route, step = self._context.route_and_step(stage)
        following = route.next_step(step)
        if following is None:
            return None
        return self.stage_for_step(stage.sub_lot_id, following.id)

    def sub_lot_finished(self, sub_lot_id: str) -> bool:
        stages = self.productive_stages(sub_lot_id)
        return bool(stages) and all(stage.status == StageStatus.COMPLETED for stage in stages)

    def lot_finished(self, lot: Lot) -> bool:
        return all(
            self._context.sub_lot(sub_lot_id).completed_at is not None
            for sub_lot_id in lot.sub_lot_ids
        )


__all__ = ["Sequencer"]
