"""Stage scheduling engine for discrete manufacturing.

This package assigns the routing stages of production lots to machines,
inserts changeover (setup) stages when a machine switches parts, keeps wait
queues per machine type and tracks every stage through its lifecycle.
"""

from .config import SchedulerOptions, ScoringWeights
from .domain import (
    Lot,
    Machine,
    Part,
    Route,
    RouteStep,
    StageEvent,
    StageEventType,
    StageExecution,
    StageStatus,
    SubLot,
)
from .errors import (
    ConcurrencyConflictError,
    DependencyNotSatisfiedError,
    ErrorKind,
    InvalidTransitionError,
    MachineTypeMismatchError,
    NotFoundError,
    NotInQueueError,
    SchedulingError,
)
from .events import InMemoryEventLog, LoggingEventSink
from .services import (
    ScheduleOutcome,
    ScheduleResult,
    SchedulerService,
)
from .setups import NoSetup, SetupCreated
from .storage import SchedulerDatabase

__all__ = [
    "SchedulerOptions",
    "ScoringWeights",
    "Lot",
    "Machine",
    "Part",
    "Route",
    "RouteStep",
    "StageEvent",
    "StageEventType",
    "StageExecution",
    "StageStatus",
    "SubLot",
    "ErrorKind",
    "SchedulingError",
    "NotFoundError",
    "InvalidTransitionError",
    "DependencyNotSatisfiedError",
    "MachineTypeMismatchError",
    "ConcurrencyConflictError",
    "NotInQueueError",
    "InMemoryEventLog",
    "LoggingEventSink",
    "ScheduleOutcome",
    "ScheduleResult",
    "SchedulerService",
    "NoSetup",
    "SetupCreated",
    "SchedulerDatabase",
]
