"""Core data structures for the stage scheduling engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageStatus(str, Enum):
    """Lifecycle states of a stage execution."""

    PENDING = "Pending"
    WAITING = "Waiting"
    IN_PROGRESS = "InProgress"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self in {StageStatus.COMPLETED, StageStatus.ERROR}


class StageEventType(str, Enum):
    """Audit event kinds published to the event sink."""

    CREATED = "created"
    ASSIGNED = "assigned"
    QUEUED = "queued"
    RELEASED = "released"
    SETUP_CREATED = "setup_created"
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REASSIGNED = "reassigned"
    REPRIORITIZED = "reprioritized"
    SUB_LOT_COMPLETED = "sub_lot_completed"
    LOT_COMPLETED = "lot_completed"


@dataclass(slots=True)
class Part:
    """A part type that lots are produced for."""

    id: str
    name: str
    number: str = ""


@dataclass(slots=True)
class Machine:
    """A machine resource of a single machine type."""

    id: str
    name: str
    machine_type: str
    priority: int = 0
    inventory_number: str = ""
    notes: str = ""


@dataclass(slots=True)
class RouteStep:
    """One ordered operation template of a routing."""

    id: str
    route_id: str
    order: int
    name: str
    machine_type: str
    norm_time_hours: float
    setup_time_hours: float = 0.0


@dataclass(slots=True)
class Route:
    """The ordered steps a part passes through."""

    id: str
    part_id: str
    steps: List[RouteStep] = field(default_factory=list)

    def ordered_steps(self) -> List[RouteStep]:
        return sorted(self.steps, key=lambda step: step.order)

    def get_step(self, step_id: str) -> Optional[RouteStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def previous_steps(self, step: RouteStep) -> List[RouteStep]:
        return [other for other in self.ordered_steps() if other.order < step.order]

    def next_step(self, step: RouteStep) -> Optional[RouteStep]:
        for other in self.ordered_steps():
            if other.order > step.order:
                return other
        return None


@dataclass(slots=True)
class Lot:
    """A production order for a quantity of one part."""

    id: str
    part_id: str
    quantity: int
    created_at: datetime = field(default_factory=utcnow)
    sub_lot_ids: List[str] = field(default_factory=list)
    completed_at: Optional[datetime] = None


@dataclass(slots=True)
class SubLot:
    """A split of a lot that runs through the routing on its own."""

    id: str
    lot_id: str
    quantity: int
    completed_at: Optional[datetime] = None


@dataclass(slots=True)
class SetupTimeRecord:
    """Changeover duration on a machine from one part to another."""

    id: str
    machine_id: str
    from_part_id: str
    to_part_id: str
    hours: float


@dataclass(slots=True)
class SetupLink:
    """Pairs a synthesized setup stage with the main stage it precedes."""

    setup_stage_id: str
    main_stage_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class StageExecution:
    """One routing step applied to a sub-lot, possibly on a machine."""

    id: str
    sub_lot_id: str
    route_step_id: str
    status: StageStatus = StageStatus.PENDING
    is_setup: bool = False
    machine_id: Optional[str] = None
    priority: int = 0
    queue_position: Optional[int] = None
    setup_hours: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    status_changed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    paused_seconds: float = 0.0
    operator_id: Optional[str] = None
    device_id: Optional[str] = None
    reason_note: Optional[str] = None
    start_attempts: int = 0
    last_error: Optional[str] = None

    def planned_hours(self, step: RouteStep, quantity: int) -> float:
        """Planned duration in hours for this stage."""

        if self.is_setup:
            if self.setup_hours is not None:
                return self.setup_hours
            return step.setup_time_hours
        return step.norm_time_hours * max(quantity, 1)

    def actual_working_hours(self, now: datetime) -> Optional[float]:
        """Time spent running, excluding pauses."""

        if self.started_at is None:
            return None
        end = self.ended_at or now
        worked = end - self.started_at - timedelta(seconds=self.paused_seconds)
        if self.status == StageStatus.PAUSED and self.paused_at is not None:
            worked -= now - self.paused_at
        return max(worked.total_seconds(), 0.0) / 3600

    def is_overdue(self, now: datetime, planned_hours: float, grace_hours: float) -> bool:
        if self.started_at is None or self.status.is_terminal:
            return False
        elapsed = (now - self.started_at).total_seconds() / 3600
        return elapsed > planned_hours + grace_hours


@dataclass(slots=True)
class StageEvent:
    """Audit record of something that happened to a stage or lot."""

    event_type: StageEventType
    stage_id: Optional[str]
    occurred_at: datetime
    previous_status: Optional[StageStatus] = None
    new_status: Optional[StageStatus] = None
    machine_id: Optional[str] = None
    operator_id: Optional[str] = None
    device_id: Optional[str] = None
    note: str = ""
    sub_lot_id: Optional[str] = None
    lot_id: Optional[str] = None


__all__ = [
    "utcnow",
    "StageStatus",
    "StageEventType",
    "Part",
    "Machine",
    "RouteStep",
    "Route",
    "Lot",
    "SubLot",
    "SetupTimeRecord",
    "SetupLink",
    "StageExecution",
    "StageEvent",
]
