"""Service layer that coordinates stage scheduling and execution."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from .config import SchedulerOptions, ScoringWeights
from .context import SchedulingContext
from .domain import (
    Lot,
    Machine,
    Part,
    Route,
    RouteStep,
    SetupTimeRecord,
    StageEventType,
    StageExecution,
    StageStatus,
    SubLot,
    utcnow,
)
from .errors import (
    ConcurrencyConflictError,
    DependencyNotSatisfiedError,
    InvalidTransitionError,
    MachineTypeMismatchError,
    SchedulingError,
)
from .events import EventPublisher, EventSink, LoggingEventSink
from .queueing import QueueManager
from .repository import (
    DuplicateRecordError,
    InMemoryRepository,
    MachineRepository,
    RecordNotFoundError,
    RouteRepository,
    SetupLinks,
    SetupTimeRepository,
    StageRepository,
)
from .selector import MachineSelector
from .sequencer import Sequencer
from .setups import SetupCreated, SetupResolver
from .state_machine import StageTrigger, can_fire, fire

if TYPE_CHECKING:  # pragma: no cover
    from .storage import SchedulerDatabase

logger = logging.getLogger(__name__)

SYSTEM_OPERATOR = "SYSTEM"
AUTO_SCHEDULER_DEVICE = "AUTO_SCHEDULER"

_HOLDING_MACHINE = (StageStatus.IN_PROGRESS, StageStatus.PAUSED)


class ScheduleOutcome(str, Enum):
    ASSIGNED = "assigned"
    QUEUED = "queued"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


@dataclass(slots=True)
class ScheduleResult:
    """What happened when a stage was offered to the machine pool."""

    stage_id: str
    outcome: ScheduleOutcome
    status: StageStatus
    machine_id: Optional[str] = None
    setup_stage_id: Optional[str] = None
    queue_position: Optional[int] = None
    score: Optional[float] = None
    reason: str = ""


@dataclass(slots=True)
class CompletionResult:
    """Follow-up work triggered by completing a stage."""

    stage: StageExecution
    released_stage_id: Optional[str] = None
    next_stage: Optional[ScheduleResult] = None
    promoted_stage_id: Optional[str] = None
    sub_lot_completed: bool = False
    lot_completed: bool = False


@dataclass(slots=True)
class ConflictReport:
    conflicts: List[ConcurrencyConflictError] = field(default_factory=list)
    kept: Dict[str, str] = field(default_factory=dict)
    rescheduled: List[ScheduleResult] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class OptimizationReport:
    examined: int = 0
    promoted: List[str] = field(default_factory=list)
    reassigned: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CycleReport:
    scheduled: List[ScheduleResult] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class QueueForecastItem:
    """Expected start and end of an open stage on its (expected) machine."""

    stage_id: str
    lot_id: str
    sub_lot_id: str
    part_id: str
    step_name: str
    status: StageStatus
    is_setup: bool
    priority: int
    queue_position: Optional[int]
    machine_id: Optional[str]
    expected_machine_id: Optional[str]
    expected_start: Optional[datetime]
    expected_end: Optional[datetime]
    overdue: bool = False


@dataclass(slots=True)
class StepForecast:
    step_id: str
    step_name: str
    order: int
    machine_id: str
    needs_setup: bool
    setup_hours: float
    production_hours: float
    expected_start: datetime
    expected_end: datetime


@dataclass(slots=True)
class PredictedSchedule:
    """Forecast of a prospective lot across its route."""

    part_id: str
    quantity: int
    steps: List[StepForecast]
    earliest_start: datetime
    latest_end: datetime
    total_hours: float
    total_setups: int
    total_setup_hours: float


@dataclass(slots=True)
class LotStatistics:
    lot_id: str
    part_id: str
    quantity: int
    total_stages: int
    setup_stages: int
    status_counts: Dict[str, int]
    planned_hours: float
    setup_hours: float
    completion_percentage: float
    completed: bool


class SchedulerService:
    """Facade that exposes the stage scheduling use-cases to clients."""

    def __init__(
        self,
        part_repo: Optional[InMemoryRepository[Part]] = None,
        machine_repo: Optional[MachineRepository] = None,
        route_repo: Optional[RouteRepository] = None,
        lot_repo: Optional[InMemoryRepository[Lot]] = None,
        sub_lot_repo: Optional[InMemoryRepository[SubLot]] = None,
        stage_repo: Optional[StageRepository] = None,
        setup_time_repo: Optional[SetupTimeRepository] = None,
        setup_links: Optional[SetupLinks] = None,
        *,
        options: Optional[SchedulerOptions] = None,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        # empty repositories are falsy, hence the explicit None checks
        self.parts = part_repo if part_repo is not None else InMemoryRepository()
        self.machines = machine_repo if machine_repo is not None else MachineRepository()
        self.routes = route_repo if route_repo is not None else RouteRepository()
        self.lots = lot_repo if lot_repo is not None else InMemoryRepository()
        self.sub_lots = sub_lot_repo if sub_lot_repo is not None else InMemoryRepository()
        self.stages = stage_repo if stage_repo is not None else StageRepository()
        self.setup_times = (
            setup_time_repo if setup_time_repo is not None else SetupTimeRepository()
        )
        self.setup_links = setup_links if setup_links is not None else SetupLinks()
        self.event_sink = event_sink if event_sink is not None else LoggingEventSink()
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._context = SchedulingContext(
            parts=self.parts,
            machines=self.machines,
            routes=self.routes,
            lots=self.lots,
            sub_lots=self.sub_lots,
            stages=self.stages,
            setup_times=self.setup_times,
            setup_links=self.setup_links,
            options=options or SchedulerOptions(),
            clock=self._clock,
            events=EventPublisher(self.event_sink, self._clock),
        )
        self.setups = SetupResolver(self._context)
        self.selector = MachineSelector(self._context, self.setups)
        self.queue = QueueManager(self._context)
        self.sequencer = Sequencer(self._context)

    @classmethod
    def from_database(cls, database: "SchedulerDatabase", **kwargs) -> "SchedulerService":
        """Build a service over the stores of a :class:`SchedulerDatabase`."""

        return cls(
            part_repo=database.parts,
            machine_repo=database.machines,
            route_repo=database.routes,
            lot_repo=database.lots,
            sub_lot_repo=database.sub_lots,
            stage_repo=database.stages,
            setup_time_repo=database.setup_times,
            setup_links=database.setup_links,
            **kwargs,
        )

    @property
    def options(self) -> SchedulerOptions:
        return self._context.options

    def now(self) -> datetime:
        return self._clock()

    def get_stage(self, stage_id: str) -> StageExecution:
        return self._context.stage(stage_id)

    def get_machine(self, machine_id: str) -> Machine:
        return self._context.machine(machine_id)

    def step_for(self, stage: StageExecution) -> RouteStep:
        return self._context.step_for(stage)

    def planned_hours(self, stage: StageExecution) -> float:
        return self._context.planned_hours(stage)

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------
    def register_part(self, name: str, *, number: str = "") -> Part:
        part = Part(id=str(uuid4()), name=name, number=number)
        self.parts.add(part.id, part)
        return part

    def register_machine(
        self,
        name: str,
        machine_type: str,
        *,
        priority: int = 0,
        inventory_number: str = "",
        notes: str = "",
    ) -> Machine:
        if not machine_type:
            raise ValueError("A machine must have a machine type")
        machine = Machine(
            id=str(uuid4()),
            name=name,
            machine_type=machine_type,
            priority=priority,
            inventory_number=inventory_number,
            notes=notes,
        )
        self.machines.add(machine.id, machine)
        return machine

    @staticmethod
    def build_route_step(
        name: str,
        machine_type: str,
        *,
        norm_time_hours: float,
        setup_time_hours: float = 0.0,
    ) -> RouteStep:
        if norm_time_hours < 0 or setup_time_hours < 0:
            raise ValueError("Step durations must not be negative")
        return RouteStep(
            id=str(uuid4()),
            route_id="",
            order=0,
            name=name,
            machine_type=machine_type,
            norm_time_hours=norm_time_hours,
            setup_time_hours=setup_time_hours,
        )

    def define_route(self, part_id: str, steps: Sequence[RouteStep]) -> Route:
        """Store the routing of a part; steps are numbered in the given order."""

        if part_id not in self.parts:
            raise RecordNotFoundError(f"Part {part_id!r} does not exist")
        if not steps:
            raise ValueError("A route must contain at least one step")
        if self.routes.for_part(part_id) is not None:
            raise DuplicateRecordError(f"Part {part_id!r} already has a route")
        route_id = str(uuid4())
        route = Route(
            id=route_id,
            part_id=part_id,
            steps=[
                replace(step, route_id=route_id, order=index)
                for index, step in enumerate(steps, start=1)
            ],
        )
        self.routes.add(route.id, route)
        return route

    def record_setup_time(
        self, machine_id: str, from_part_id: str, to_part_id: str, hours: float
    ) -> SetupTimeRecord:
        self._context.machine(machine_id)
        if hours < 0:
            raise ValueError("Setup time must not be negative")
        return self.setup_times.record(
            SetupTimeRecord(
                id=str(uuid4()),
                machine_id=machine_id,
                from_part_id=from_part_id,
                to_part_id=to_part_id,
                hours=hours,
            )
        )

    def update_options(
        self,
        *,
        weights: Optional[ScoringWeights] = None,
        min_remaining_minutes: Optional[float] = None,
        max_priority: Optional[int] = None,
        setup_priority_boost: Optional[int] = None,
        reassign_margin: Optional[float] = None,
        auto_schedule_lots: Optional[bool] = None,
        auto_start_ready_stages: Optional[bool] = None,
        overdue_grace_hours: Optional[float] = None,
    ) -> SchedulerOptions:
        """Apply new tuning parameters; omitted values keep their current setting."""

        with self._lock:
            current = self.options
            weights = weights or current.weights
            self._context.options = SchedulerOptions(
                weights=ScoringWeights(
                    machine_priority=max(weights.machine_priority, 0.0),
                    same_part_bonus=max(weights.same_part_bonus, 0.0),
                    setup_hours=max(weights.setup_hours, 0.0),
                    queued_stage=max(weights.queued_stage, 0.0),
                    release_hours=max(weights.release_hours, 0.0),
                ),
                min_remaining_minutes=max(
                    _pick(min_remaining_minutes, current.min_remaining_minutes), 0.0
                ),
                max_priority=max(_pick(max_priority, current.max_priority), 0),
                setup_priority_boost=max(
                    _pick(setup_priority_boost, current.setup_priority_boost), 0
                ),
                reassign_margin=max(_pick(reassign_margin, current.reassign_margin), 0.0),
                auto_schedule_lots=_pick(auto_schedule_lots, current.auto_schedule_lots),
                auto_start_ready_stages=_pick(
                    auto_start_ready_stages, current.auto_start_ready_stages
                ),
                overdue_grace_hours=max(
                    _pick(overdue_grace_hours, current.overdue_grace_hours), 0.0
                ),
            )
        logger.info("Scheduler options updated: %s", self._context.options)
        return self._context.options

    # ------------------------------------------------------------------
    # Lots
    # ------------------------------------------------------------------
    def create_lot_and_schedule(
        self,
        part_id: str,
        quantity: int,
        sub_lot_quantities: Optional[Sequence[int]] = None,
        *,
        priority: int = 0,
        schedule: Optional[bool] = None,
    ) -> Lot:
        """Create a lot with its sub-lots and stages, then schedule first steps."""

        if part_id not in self.parts:
            raise RecordNotFoundError(f"Part {part_id!r} does not exist")
        if quantity <= 0:
            raise ValueError("Lot quantity must be positive")
        route = self.routes.for_part(part_id)
        if route is None:
            raise RecordNotFoundError(f"No route defined for part {part_id!r}")
        steps = route.ordered_steps()
        if not steps:
            raise ValueError(f"Route {route.id!r} has no steps")
        quantities = list(sub_lot_quantities) if sub_lot_quantities else [quantity]
        if any(value <= 0 for value in quantities):
            raise ValueError("Sub-lot quantities must be positive")
        if sum(quantities) != quantity:
            raise ValueError(
                f"Sub-lot quantities sum to {sum(quantities)}, expected {quantity}"
            )

        with self._lock:
            now = self.now()
            lot = Lot(id=str(uuid4()), part_id=part_id, quantity=quantity, created_at=now)
            sub_lots = [
                SubLot(id=str(uuid4()), lot_id=lot.id, quantity=value) for value in quantities
            ]
            lot.sub_lot_ids = [sub_lot.id for sub_lot in sub_lots]
            self.lots.add(lot.id, lot)
            stage_priority = min(max(priority, 0), self.options.max_priority)
            for sub_lot in sub_lots:
                self.sub_lots.add(sub_lot.id, sub_lot)
                for step in steps:
                    stage = StageExecution(
                        id=str(uuid4()),
                        sub_lot_id=sub_lot.id,
                        route_step_id=step.id,
                        priority=stage_priority,
                        created_at=now,
                        status_changed_at=now,
                    )
                    self.stages.add(stage.id, stage)
                    self._context.events.stage_event(
                        StageEventType.CREATED, stage, note=f"step {step.order} {step.name}"
                    )
            logger.info(
                "Lot %s created for part %s: %d unit(s) in %d sub-lot(s)",
                lot.id,
                part_id,
                quantity,
                len(sub_lots),
            )

            if self.options.auto_schedule_lots if schedule is None else schedule:
                for sub_lot in sub_lots:
                    first = self.sequencer.first_stage(sub_lot.id)
                    if first is not None:
                        self._schedule(first)
            return lot

    def stages_for_lot(self, lot_id: str) -> List[StageExecution]:
        lot = self._context.lot(lot_id)
        stages: List[StageExecution] = []
        for sub_lot_id in lot.sub_lot_ids:
            stages.extend(self.stages.for_sub_lot(sub_lot_id))
        return stages

    def lot_statistics(self, lot_id: str) -> LotStatistics:
        lot = self._context.lot(lot_id)
        stages = self.stages_for_lot(lot_id)
        counts = {status.value: 0 for status in StageStatus}
        planned = 0.0
        setup_hours = 0.0
        for stage in stages:
            counts[stage.status.value] += 1
            hours = self._context.planned_hours(stage)
            if stage.is_setup:
                setup_hours += hours
            else:
                planned += hours
        productive = [stage for stage in stages if not stage.is_setup]
        done = [stage for stage in productive if stage.status == StageStatus.COMPLETED]
        percentage = round(100.0 * len(done) / len(productive), 2) if productive else 0.0
        return LotStatistics(
            lot_id=lot.id,
            part_id=lot.part_id,
            quantity=lot.quantity,
            total_stages=len(stages),
            setup_stages=len(stages) - len(productive),
            status_counts=counts,
            planned_hours=round(planned, 4),
            setup_hours=round(setup_hours, 4),
            completion_percentage=percentage,
            completed=lot.completed_at is not None,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def schedule_stage(self, stage_id: str) -> ScheduleResult:
        """Offer a Pending unassigned stage to the machine pool."""

        with self._lock:
            return self._schedule(self._context.stage(stage_id))

    def _schedule(self, stage: StageExecution) -> ScheduleResult:
        if stage.status != StageStatus.PENDING or stage.machine_id is not None:
            return ScheduleResult(
                stage_id=stage.id,
                outcome=ScheduleOutcome.SKIPPED,
                status=stage.status,
                machine_id=stage.machine_id,
                reason=f"stage is {stage.status.value}"
                + (f" on machine {stage.machine_id}" if stage.machine_id else ""),
            )
        blocking = self.sequencer.blocking_step(stage)
        if blocking is not None:
            return ScheduleResult(
                stage_id=stage.id,
                outcome=ScheduleOutcome.BLOCKED,
                status=stage.status,
                reason=f"routing step {blocking.order} is not completed",
            )

        step = self._context.step_for(stage)
        machines = self.selector.eligible_machines(step)
        if not machines:
            position = self.queue.enqueue(stage)
            return ScheduleResult(
                stage_id=stage.id,
                outcome=ScheduleOutcome.QUEUED,
                status=stage.status,
                queue_position=position,
                reason=f"no free machine of type {step.machine_type}",
            )

        best = self.selector.select(stage, machines)
        assignment = self.selector.assign(stage, self._context.machine(best.machine_id))
        return ScheduleResult(
            stage_id=stage.id,
            outcome=ScheduleOutcome.ASSIGNED,
            status=stage.status,
            machine_id=assignment.machine_id,
            setup_stage_id=(
                assignment.setup.stage_id
                if isinstance(assignment.setup, SetupCreated)
                else None
            ),
            score=best.score,
        )

    def run_cycle(self) -> CycleReport:
        """One scheduling pass over all open stages."""

        report = CycleReport()
        with self._lock:
            pending = self.queue.ordered(
                stage
                for stage in self.stages.with_status(StageStatus.PENDING)
                if stage.machine_id is None
            )
            for stage in pending:
                try:
                    result = self._schedule(self._context.stage(stage.id))
                except Exception as exc:
                    report.failures[stage.id] = str(exc)
                    logger.warning("Scheduling stage %s failed: %s", stage.id, exc)
                    continue
                if result.outcome in {ScheduleOutcome.ASSIGNED, ScheduleOutcome.QUEUED}:
                    report.scheduled.append(result)

            if self.options.auto_start_ready_stages:
                ready = self.queue.ordered(
                    stage
                    for stage in self.stages.with_status(StageStatus.PENDING)
                    if stage.machine_id is not None
                )
                for stage in ready:
                    stage = self._context.stage(stage.id)
                    if self._start_blocker(stage) is not None:
                        continue
                    try:
                        self._start(stage, SYSTEM_OPERATOR, AUTO_SCHEDULER_DEVICE)
                    except Exception as exc:
                        report.failures[stage.id] = str(exc)
                        logger.warning("Auto-start of stage %s failed: %s", stage.id, exc)
                        continue
                    report.started.append(stage.id)
        logger.info(
            "Scheduling cycle: %d scheduled, %d started, %d failed",
            len(report.scheduled),
            len(report.started),
            len(report.failures),
        )
        return report

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def can_start(self, stage_id: str) -> bool:
        with self._lock:
            return self._start_blocker(self._context.stage(stage_id)) is None

    def start_stage(
        self,
        stage_id: str,
        *,
        operator_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> StageExecution:
        with self._lock:
            stage = self._context.stage(stage_id)
            return self._start(stage, operator_id or SYSTEM_OPERATOR, device_id)

    def _start_blocker(self, stage: StageExecution) -> Optional[SchedulingError]:
        transition = StageTrigger.START.value
        if not can_fire(stage, StageTrigger.START):
            return InvalidTransitionError(
                stage.id, transition, f"stage is {stage.status.value}", status=stage.status.value
            )
        blocking = self.sequencer.blocking_step(stage)
        if blocking is not None:
            return DependencyNotSatisfiedError(stage.id, blocking.order)
        if stage.machine_id is None:
            return InvalidTransitionError(
                stage.id, transition, "no machine assigned", status=stage.status.value
            )
        setup_id = self.setup_links.setup_for(stage.id)
        if setup_id is not None:
            setup = self._context.stage(setup_id)
            if setup.status != StageStatus.COMPLETED:
                return InvalidTransitionError(
                    stage.id,
                    transition,
                    f"setup stage {setup_id} is {setup.status.value}",
                    status=stage.status.value,
                )
        running = self.stages.current_on_machine(stage.machine_id)
        if running is not None and running.id != stage.id:
            return InvalidTransitionError(
                stage.id,
                transition,
                f"machine {stage.machine_id} is running stage {running.id}",
                status=stage.status.value,
            )
        return None

    def _start(
        self, stage: StageExecution, operator_id: str, device_id: Optional[str]
    ) -> StageExecution:
        blocker = self._start_blocker(stage)
        if blocker is not None:
            if isinstance(blocker, DependencyNotSatisfiedError):
                stage.last_error = blocker.message
                self._context.save(stage)
            raise blocker
        previous = fire(
            stage, StageTrigger.START, self.now(), operator_id=operator_id, device_id=device_id
        )
        self._context.save(stage)
        self._context.events.stage_event(
            StageEventType.STARTED, stage, previous_status=previous
        )
        logger.info("Stage %s started on machine %s by %s", stage.id, stage.machine_id, operator_id)
        return stage

    def pause_stage(
        self,
        stage_id: str,
        *,
        reason: Optional[str] = None,
        operator_id: Optional[str] = None,
    ) -> StageExecution:
        with self._lock:
            stage = self._context.stage(stage_id)
            previous = fire(
                stage, StageTrigger.PAUSE, self.now(), operator_id=operator_id, note=reason
            )
            self._context.save(stage)
            self._context.events.stage_event(
                StageEventType.PAUSED, stage, previous_status=previous, note=reason or ""
            )
            logger.info("Stage %s paused", stage.id)
            return stage

    def resume_stage(
        self, stage_id: str, *, operator_id: Optional[str] = None
    ) -> StageExecution:
        with self._lock:
            stage = self._context.stage(stage_id)
            if stage.status == StageStatus.PAUSED and stage.machine_id is not None:
                running = self.stages.current_on_machine(stage.machine_id)
                if running is not None and running.id != stage.id:
                    raise InvalidTransitionError(
                        stage.id,
                        StageTrigger.RESUME.value,
                        f"machine {stage.machine_id} is running stage {running.id}",
                        status=stage.status.value,
                    )
            previous = fire(stage, StageTrigger.RESUME, self.now(), operator_id=operator_id)
            self._context.save(stage)
            self._context.events.stage_event(
                StageEventType.RESUMED, stage, previous_status=previous
            )
            logger.info("Stage %s resumed", stage.id)
            return stage

    def complete_stage(
        self,
        stage_id: str,
        *,
        operator_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CompletionResult:
        """Complete a running stage and cascade to whatever it unblocks."""

        with self._lock:
            stage = self._context.stage(stage_id)
            now = self.now()
            previous = fire(stage, StageTrigger.COMPLETE, now, operator_id=operator_id, note=note)
            self._context.save(stage)
            self._context.events.stage_event(
                StageEventType.COMPLETED, stage, previous_status=previous, note=note or ""
            )
            planned = self._context.planned_hours(stage)
            worked = stage.actual_working_hours(now) or 0.0
            if worked > planned + self.options.overdue_grace_hours:
                logger.warning(
                    "Stage %s took %.2fh against %.2fh planned", stage.id, worked, planned
                )
            logger.info("Stage %s completed on machine %s", stage.id, stage.machine_id)

            result = CompletionResult(stage=stage)
            if stage.is_setup:
                result.released_stage_id = self._release_main(stage)
            # waiters get the freed machine before the next routing step is offered
            if stage.machine_id is not None:
                result.promoted_stage_id = self._advance_queue(stage.machine_id)
            if not stage.is_setup:
                following = self.sequencer.next_stage(stage)
                if following is not None:
                    result.next_stage = self._schedule(following)
                else:
                    self._close_sub_lot(stage, result)
            return result

    def _release_main(self, setup: StageExecution) -> Optional[str]:
        main_id = self.setup_links.main_for(setup.id)
        if main_id is None:
            return None
        main = self._context.stage(main_id)
        if main.status != StageStatus.WAITING:
            return None
        self.queue.release(main, note=f"setup stage {setup.id} completed")
        logger.info("Stage %s released after setup %s", main.id, setup.id)
        return main.id

    def _close_sub_lot(self, stage: StageExecution, result: CompletionResult) -> None:
        sub_lot = self._context.sub_lot(stage.sub_lot_id)
        if sub_lot.completed_at is not None or not self.sequencer.sub_lot_finished(sub_lot.id):
            return
        now = self.now()
        sub_lot.completed_at = now
        self.sub_lots.upsert(sub_lot.id, sub_lot)
        result.sub_lot_completed = True
        self._context.events.lot_event(
            StageEventType.SUB_LOT_COMPLETED, lot_id=sub_lot.lot_id, sub_lot_id=sub_lot.id
        )
        logger.info("Sub-lot %s completed", sub_lot.id)

        lot = self._context.lot(sub_lot.lot_id)
        if lot.completed_at is None and self.sequencer.lot_finished(lot):
            lot.completed_at = now
            self.lots.upsert(lot.id, lot)
            result.lot_completed = True
            self._context.events.lot_event(StageEventType.LOT_COMPLETED, lot_id=lot.id)
            logger.info("Lot %s completed", lot.id)

    def _advance_queue(self, machine_id: str) -> Optional[str]:
        """Promote the head of a freed machine's wait set."""

        if self.stages.current_on_machine(machine_id) is not None:
            return None
        machine = self._context.machine(machine_id)
        head = self.queue.next_in_queue(machine)
        if head is None:
            return None
        was_assigned = head.machine_id is not None
        self.queue.release(head, note=f"machine {machine_id} available")
        if not was_assigned:
            self._schedule(head)
        logger.info("Stage %s promoted from the queue of machine %s", head.id, machine_id)
        return head.id

    def cancel_stage(
        self,
        stage_id: str,
        reason: str,
        *,
        operator_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> StageExecution:
        with self._lock:
            stage = self._context.stage(stage_id)
            return self._cancel(stage, reason, operator_id=operator_id, device_id=device_id)

    def _cancel(
        self,
        stage: StageExecution,
        reason: str,
        *,
        operator_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> StageExecution:
        previous = fire(
            stage,
            StageTrigger.CANCEL,
            self.now(),
            operator_id=operator_id,
            device_id=device_id,
            note=reason,
        )
        stage.queue_position = None
        self._context.save(stage)
        self._context.events.stage_event(
            StageEventType.CANCELLED, stage, previous_status=previous, note=reason
        )
        logger.info("Stage %s cancelled: %s", stage.id, reason)

        if stage.is_setup:
            main_id = self.setup_links.main_for(stage.id)
            if main_id is not None:
                self.setup_links.unlink(stage.id)
                main = self._context.stage(main_id)
                if main.status == StageStatus.WAITING:
                    main.machine_id = None
                    self.queue.release(main, note=f"setup stage {stage.id} cancelled")
                    self._schedule(main)
        else:
            setup_id = self.setup_links.setup_for(stage.id)
            if setup_id is not None:
                setup = self._context.stage(setup_id)
                if not setup.status.is_terminal:
                    self._cancel(setup, f"main stage {stage.id} cancelled: {reason}")

        if stage.machine_id is not None:
            self._advance_queue(stage.machine_id)
        return stage

    def _detach_setup(self, stage: StageExecution, reason: str) -> Optional[str]:
        """Drop the setup paired with ``stage``.

        Returns the machine an aborted running setup was holding.
        """

        setup_id = self.setup_links.setup_for(stage.id)
        if setup_id is None:
            return None
        self.setup_links.unlink(setup_id)
        setup = self._context.stage(setup_id)
        if setup.status.is_terminal:
            return None
        previous = fire(setup, StageTrigger.CANCEL, self.now(), note=reason)
        self._context.save(setup)
        self._context.events.stage_event(
            StageEventType.CANCELLED, setup, previous_status=previous, note=reason
        )
        if previous in _HOLDING_MACHINE:
            return setup.machine_id
        return None

    # ------------------------------------------------------------------
    # Queue maintenance
    # ------------------------------------------------------------------
    def reassign_stage(self, stage_id: str, machine_id: str) -> ScheduleResult:
        """Move a Pending or Waiting stage onto a specific machine."""

        with self._lock:
            stage = self._context.stage(stage_id)
            machine = self._context.machine(machine_id)
            step = self._context.step_for(stage)
            if machine.machine_type != step.machine_type:
                raise MachineTypeMismatchError(stage.id, step.machine_type, machine.machine_type)
            if stage.is_setup:
                raise InvalidTransitionError(
                    stage.id, "reassign", "setup stages follow their main stage"
                )
            if stage.status not in {StageStatus.PENDING, StageStatus.WAITING}:
                raise InvalidTransitionError(
                    stage.id,
                    "reassign",
                    f"stage is {stage.status.value}",
                    status=stage.status.value,
                )
            if stage.machine_id == machine.id:
                return ScheduleResult(
                    stage_id=stage.id,
                    outcome=ScheduleOutcome.SKIPPED,
                    status=stage.status,
                    machine_id=machine.id,
                    queue_position=stage.queue_position,
                    reason="stage is already on this machine",
                )

            previous_machine = stage.machine_id
            freed = self._detach_setup(stage, f"stage {stage.id} reassigned")
            self._move_to(stage, machine, note=f"reassigned from {previous_machine or 'queue'}")
            if freed is not None:
                self._advance_queue(freed)
            setup_id = self.setup_links.setup_for(stage.id)
            return ScheduleResult(
                stage_id=stage.id,
                outcome=ScheduleOutcome.ASSIGNED,
                status=stage.status,
                machine_id=machine.id,
                setup_stage_id=setup_id,
                queue_position=stage.queue_position,
            )

    def _move_to(self, stage: StageExecution, machine: Machine, *, note: str) -> None:
        if stage.status == StageStatus.WAITING:
            self.queue.release(stage, note=note)
        stage.machine_id = None
        assignment = self.selector.assign(stage, machine)
        if assignment.machine_busy:
            self.queue.park_on_machine(stage)
        self._context.events.stage_event(StageEventType.REASSIGNED, stage, note=note)
        logger.info("Stage %s moved to machine %s (%s)", stage.id, machine.id, note)

    def reprioritize(self, machine_id: str, stage_id: str) -> StageExecution:
        with self._lock:
            machine = self._context.machine(machine_id)
            return self.queue.reprioritize(machine, stage_id)

    def resolve_conflicts(self) -> ConflictReport:
        """Keep the earliest started stage per machine and reschedule the rest."""

        report = ConflictReport()
        with self._lock:
            for machine in self.machines.list():
                running = self.stages.running_on_machine(machine.id)
                if len(running) < 2:
                    continue
                conflict = ConcurrencyConflictError(
                    machine.id, tuple(stage.id for stage in running)
                )
                report.conflicts.append(conflict)
                logger.warning(conflict.message)
                now = self.now()
                keep, *excess = sorted(running, key=lambda stage: stage.started_at or now)
                report.kept[machine.id] = keep.id
                for stage in excess:
                    try:
                        note = f"concurrency conflict on machine {machine.id}"
                        previous = fire(stage, StageTrigger.REVOKE, now, note=note)
                        stage.machine_id = None
                        self._detach_setup(stage, note)
                        self._context.save(stage)
                        self._context.events.stage_event(
                            StageEventType.REASSIGNED, stage, previous_status=previous, note=note
                        )
                        report.rescheduled.append(self._schedule(stage))
                    except Exception as exc:
                        report.failures[stage.id] = str(exc)
                        logger.warning("Conflict repair of stage %s failed: %s", stage.id, exc)
        return report

    def optimize_queue(self) -> OptimizationReport:
        """Sweep the wait queues and move stages onto machines that suit them better."""

        report = OptimizationReport()
        with self._lock:
            margin = self.options.reassign_margin
            for queued in self.queue.ordered(self.stages.all_in_queue()):
                report.examined += 1
                try:
                    stage = self._context.stage(queued.id)
                    if stage.status != StageStatus.WAITING or self.queue.is_setup_blocked(stage):
                        continue
                    step = self._context.step_for(stage)
                    eligible = self.selector.eligible_machines(step)
                    if not eligible:
                        continue
                    if stage.machine_id is None:
                        self.queue.release(stage, note="machine available")
                        self._schedule(stage)
                        report.promoted.append(stage.id)
                        continue
                    if any(machine.id == stage.machine_id for machine in eligible):
                        self.queue.release(stage, note=f"machine {stage.machine_id} available")
                        report.promoted.append(stage.id)
                        continue

                    current = self.selector.score(stage, self._context.machine(stage.machine_id))
                    best = self.selector.select(stage, eligible)
                    if best.score <= current.score + margin:
                        continue
                    freed = self._detach_setup(stage, "moved by queue optimization")
                    self._move_to(
                        stage,
                        self._context.machine(best.machine_id),
                        note=f"optimized from {current.machine_id}",
                    )
                    report.reassigned.append(stage.id)
                    if freed is not None:
                        self._advance_queue(freed)
                except Exception as exc:
                    report.failures[queued.id] = str(exc)
                    logger.warning("Queue optimization of stage %s failed: %s", queued.id, exc)
        logger.info(
            "Queue optimization: %d examined, %d promoted, %d reassigned",
            report.examined,
            len(report.promoted),
            len(report.reassigned),
        )
        return report

    # ------------------------------------------------------------------
    # Forecasts
    # ------------------------------------------------------------------
    def get_queue_forecast(self) -> List[QueueForecastItem]:
        """Expected timeline of every open stage, without changing any of them."""

        with self._lock:
            now = self.now()
            grace = self.options.overdue_grace_hours
            floor = timedelta(minutes=self.options.min_remaining_minutes)
            items: List[QueueForecastItem] = []
            cursors: Dict[str, datetime] = {}

            for machine in self.machines.list():
                cursor = now
                current = self.stages.current_on_machine(machine.id)
                if current is not None:
                    planned = self._context.planned_hours(current)
                    worked = current.actual_working_hours(now) or 0.0
                    cursor = now + max(timedelta(hours=planned - worked), floor)
                    items.append(
                        self._forecast_item(
                            current,
                            machine.id,
                            current.started_at,
                            cursor,
                            current.is_overdue(now, planned, grace),
                        )
                    )
                paused = self.stages.by_machine_and_status(machine.id, StageStatus.PAUSED)
                pending = self.queue.ordered(
                    self.stages.by_machine_and_status(machine.id, StageStatus.PENDING)
                )
                waiting = self.queue.ordered(self.stages.queued_for_machine(machine.id))
                for stage in [*paused, *pending, *waiting]:
                    planned = self._context.planned_hours(stage)
                    worked = stage.actual_working_hours(now) or 0.0
                    end = cursor + max(timedelta(hours=planned - worked), timedelta(0))
                    items.append(
                        self._forecast_item(
                            stage, machine.id, cursor, end, stage.is_overdue(now, planned, grace)
                        )
                    )
                    cursor = end
                cursors[machine.id] = cursor

            unassigned = self.queue.ordered(
                stage for stage in self.stages.all_in_queue() if stage.machine_id is None
            )
            for stage in unassigned:
                step = self._context.step_for(stage)
                candidates = [
                    machine.id for machine in self.machines.by_type(step.machine_type)
                ]
                if not candidates:
                    items.append(self._forecast_item(stage, None, None, None))
                    continue
                chosen = min(candidates, key=lambda machine_id: cursors[machine_id])
                start = cursors[chosen]
                end = start + timedelta(hours=self._context.planned_hours(stage))
                cursors[chosen] = end
                items.append(self._forecast_item(stage, chosen, start, end))
            return items

    def _forecast_item(
        self,
        stage: StageExecution,
        expected_machine_id: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
        overdue: bool = False,
    ) -> QueueForecastItem:
        lot = self._context.lot_for(stage)
        return QueueForecastItem(
            stage_id=stage.id,
            lot_id=lot.id,
            sub_lot_id=stage.sub_lot_id,
            part_id=lot.part_id,
            step_name=self._context.step_for(stage).name,
            status=stage.status,
            is_setup=stage.is_setup,
            priority=stage.priority,
            queue_position=stage.queue_position,
            machine_id=stage.machine_id,
            expected_machine_id=expected_machine_id,
            expected_start=start,
            expected_end=end,
            overdue=overdue,
        )

    def overdue_stages(self) -> List[StageExecution]:
        now = self.now()
        grace = self.options.overdue_grace_hours
        return [
            stage
            for stage in self.stages.with_status(StageStatus.IN_PROGRESS, StageStatus.PAUSED)
            if stage.is_overdue(now, self._context.planned_hours(stage), grace)
        ]

    def predict_schedule(self, part_id: str, quantity: int) -> PredictedSchedule:
        """Forecast a prospective lot of ``part_id`` without creating anything."""

        if part_id not in self.parts:
            raise RecordNotFoundError(f"Part {part_id!r} does not exist")
        if quantity <= 0:
            raise ValueError("Quantity must be positive")
        route = self.routes.for_part(part_id)
        if route is None or not route.steps:
            raise RecordNotFoundError(f"No route defined for part {part_id!r}")

        with self._lock:
            now = self.now()
            available: Dict[str, datetime] = {}
            last_part: Dict[str, Optional[str]] = {}
            cursor = now
            steps: List[StepForecast] = []
            for step in route.ordered_steps():
                machines = self.machines.by_type(step.machine_type)
                if not machines:
                    raise RecordNotFoundError(
                        f"No machine of type {step.machine_type!r} for step {step.name!r}"
                    )
                production = step.norm_time_hours * quantity
                best: Optional[StepForecast] = None
                for machine in machines:
                    if machine.id not in available:
                        available[machine.id] = self.selector.release_time(machine.id, now)
                        last_part[machine.id] = self.setups.previous_part(machine.id)
                    previous = last_part[machine.id]
                    needs_setup = previous is not None and previous != part_id
                    setup_hours = 0.0
                    if needs_setup:
                        record = self.setup_times.lookup(machine.id, previous, part_id)
                        setup_hours = record.hours if record else step.setup_time_hours
                    start = max(available[machine.id], cursor)
                    if best is None or start < best.expected_start:
                        best = StepForecast(
                            step_id=step.id,
                            step_name=step.name,
                            order=step.order,
                            machine_id=machine.id,
                            needs_setup=needs_setup,
                            setup_hours=setup_hours,
                            production_hours=production,
                            expected_start=start,
                            expected_end=start
                            + timedelta(hours=setup_hours + production),
                        )
                assert best is not None
                available[best.machine_id] = best.expected_end
                last_part[best.machine_id] = part_id
                cursor = best.expected_end
                steps.append(best)

        setups = [step for step in steps if step.needs_setup]
        return PredictedSchedule(
            part_id=part_id,
            quantity=quantity,
            steps=steps,
            earliest_start=steps[0].expected_start,
            latest_end=steps[-1].expected_end,
            total_hours=sum(step.setup_hours + step.production_hours for step in steps),
            total_setups=len(setups),
            total_setup_hours=sum(step.setup_hours for step in setups),
        )


def _pick(value, fallback):
    return fallback if value is None else value


__all__ = [
    "SYSTEM_OPERATOR",
    "AUTO_SCHEDULER_DEVICE",
    "ScheduleOutcome",
    "ScheduleResult",
    "CompletionResult",
    "ConflictReport",
    "OptimizationReport",
    "CycleReport",
    "QueueForecastItem",
    "StepForecast",
    "PredictedSchedule",
    "LotStatistics",
    "SchedulerService",
]
