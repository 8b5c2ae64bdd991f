"""Error taxonomy shared by the scheduling engine and its stores."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple


class ErrorKind(str, Enum):
    """Discriminator attached to every scheduling error."""

    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    DEPENDENCY_NOT_SATISFIED = "dependency_not_satisfied"
    MACHINE_TYPE_MISMATCH = "machine_type_mismatch"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    NOT_IN_QUEUE = "not_in_queue"


class SchedulingError(RuntimeError):
    """Base exception for failures surfaced by the scheduler."""

    kind: ErrorKind = ErrorKind.INVALID_TRANSITION
    retry_later = False

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, object] = details

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": {key: str(value) for key, value in self.details.items()},
        }


class NotFoundError(SchedulingError):
    """Raised when a stage, machine, route, part or lot is missing."""

    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(SchedulingError):
    """Raised when a state-machine precondition does not hold."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(
        self,
        stage_id: str,
        transition: str,
        condition: str,
        *,
        status: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Cannot {transition} stage {stage_id!r}: {condition}",
            stage_id=stage_id,
            transition=transition,
            status=status,
        )
        self.stage_id = stage_id
        self.transition = transition
        self.condition = condition


class DependencyNotSatisfiedError(SchedulingError):
    """A predecessor routing step is not complete yet.

    The caller is expected to try again later; this is not a fatal error.
    """

    kind = ErrorKind.DEPENDENCY_NOT_SATISFIED
    retry_later = True

    def __init__(self, stage_id: str, blocking_step_order: int) -> None:
        super().__init__(
            f"Stage {stage_id!r} waits for routing step {blocking_step_order} to complete",
            stage_id=stage_id,
            blocking_step_order=blocking_step_order,
        )
        self.stage_id = stage_id
        self.blocking_step_order = blocking_step_order


class MachineTypeMismatchError(SchedulingError):
    """Raised when a stage is reassigned to an incompatible machine."""

    kind = ErrorKind.MACHINE_TYPE_MISMATCH

    def __init__(self, stage_id: str, required: str, provided: str) -> None:
        super().__init__(
            f"Stage {stage_id!r} requires machine type {required!r}, got {provided!r}",
            stage_id=stage_id,
            required=required,
            provided=provided,
        )


class ConcurrencyConflictError(SchedulingError):
    """A machine holds more than one running stage."""

    kind = ErrorKind.CONCURRENCY_CONFLICT

    def __init__(self, machine_id: str, stage_ids: Tuple[str, ...]) -> None:
        super().__init__(
            f"Machine {machine_id!r} is running {len(stage_ids)} stages at once",
            machine_id=machine_id,
            stage_ids=",".join(stage_ids),
        )
        self.machine_id = machine_id
        self.stage_ids = stage_ids


class NotInQueueError(SchedulingError):
    """Raised when re-prioritizing a stage outside the machine's wait set."""

    kind = ErrorKind.NOT_IN_QUEUE

    def __init__(self, stage_id: str, machine_id: str) -> None:
        super().__init__(
            f"Stage {stage_id!r} is not waiting for machine {machine_id!r}",
            stage_id=stage_id,
            machine_id=machine_id,
        )


__all__ = [
    "ErrorKind",
    "SchedulingError",
    "NotFoundError",
    "InvalidTransitionError",
    "DependencyNotSatisfiedError",
    "MachineTypeMismatchError",
    "ConcurrencyConflictError",
    "NotInQueueError",
]
