"""Shared access to stores, options and the clock for scheduler components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Tuple

from .config import SchedulerOptions
from .domain import (
    Lot,
    Machine,
    Part,
    Route,
    RouteStep,
    StageExecution,
    SubLot,
)
from .events import EventPublisher
from .repository import (
    InMemoryRepository,
    MachineRepository,
    RecordNotFoundError,
    RouteRepository,
    SetupLinks,
    SetupTimeRepository,
    StageRepository,
)


@dataclass
class SchedulingContext:
    """Bundles the collaborator stores the engine reads and writes."""

    parts: InMemoryRepository[Part]
    machines: MachineRepository
    routes: RouteRepository
    lots: InMemoryRepository[Lot]
    sub_lots: InMemoryRepository[SubLot]
    stages: StageRepository
    setup_times: SetupTimeRepository
    setup_links: SetupLinks
    options: SchedulerOptions
    clock: Callable[[], datetime]
    events: EventPublisher

    def now(self) -> datetime:
        return self.clock()

    # ------------------------------------------------------------------
    # Lookups that fail fast with a descriptive NotFound
    # ------------------------------------------------------------------
    def stage(self, stage_id: str) -> StageExecution:
        if stage_id not in self.stages:
            raise RecordNotFoundError(f"Stage {stage_id!r} not found")
        return self.stages.get(stage_id)

    def machine(self, machine_id: str) -> Machine:
        if machine_id not in self.machines:
            raise RecordNotFoundError(f"Machine {machine_id!r} not found")
        return self.machines.get(machine_id)

    def sub_lot(self, sub_lot_id: str) -> SubLot:
        if sub_lot_id not in self.sub_lots:
            raise RecordNotFoundError(f"Sub-lot {sub_lot_id!r} not found")
        return self.sub_lots.get(sub_lot_id)

    def lot(self, lot_id: str) -> Lot:
        if lot_id not in self.lots:
            raise RecordNotFoundError(f"Lot {lot_id!r} not found")
        return self.lots.get(lot_id)

    def lot_for(self, stage: StageExecution) -> Lot:
        return self.lot(self.sub_lot(stage.sub_lot_id).lot_id)

    def part_id_for(self, stage: StageExecution) -> str:
        return self.lot_for(stage).part_id

    def route_and_step(self, stage: StageExecution) -> Tuple[Route, RouteStep]:
        return self.routes.find_step(stage.route_step_id)

    def step_for(self, stage: StageExecution) -> RouteStep:
        return self.route_and_step(stage)[1]

    def planned_hours(self, stage: StageExecution) -> float:
        quantity = self.sub_lot(stage.sub_lot_id).quantity
        return stage.planned_hours(self.step_for(stage), quantity)

    def save(self, *stages: StageExecution) -> None:
        for stage in stages:
            self.stages.upsert(stage.id, stage)

    def stages_for_sub_lot(self, sub_lot_id: str) -> List[StageExecution]:
        return self.stages.for_sub_lot(sub_lot_id)


__all__ = ["SchedulingContext"]
