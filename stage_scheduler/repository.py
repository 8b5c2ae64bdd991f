"""In-memory repositories and the store queries used by the scheduler."""

from __future__ import annotations

from typing import (
    Dict,
    Generic,
    Iterator,
    List,
    MutableMapping,
    Optional,
    Tuple,
    TypeVar,
)

from .domain import (
    Machine,
    Route,
    RouteStep,
    SetupLink,
    SetupTimeRecord,
    StageExecution,
    StageStatus,
)
from .errors import NotFoundError

T = TypeVar("T")


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError, NotFoundError):
    """Raised when a requested record is missing."""

    def __init__(self, message: str) -> None:
        NotFoundError.__init__(self, message)


class InMemoryRepository(Generic[T]):
    """Generic repository backed by a simple dictionary."""

    def __init__(self) -> None:
        self._items: MutableMapping[str, T] = {}

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, item_id: str, item: T) -> None:
        if item_id in self._items:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._items[item_id] = item

    def upsert(self, item_id: str, item: T) -> None:
        self._items[item_id] = item

    def get(self, item_id: str) -> T:
        try:
            return self._items[item_id]
        except KeyError as exc:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc

    def remove(self, item_id: str) -> None:
        if item_id not in self._items:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        del self._items[item_id]

    def list(self) -> List[T]:
        return list(self._items.values())

    def __iter__(self) -> Iterator[T]:
        return iter(self._items.values())


# ----------------------------------------------------------------------
# Store queries shared by the in-memory and SQLite backends
# ----------------------------------------------------------------------
class StageQueries:
    """Lookups over stage executions.

    Mixed into a repository that provides ``list()``.
    """

    def with_status(self, *statuses: StageStatus) -> List[StageExecution]:
        return [stage for stage in self.list() if stage.status in statuses]

    def by_machine_and_status(
        self, machine_id: str, *statuses: StageStatus
    ) -> List[StageExecution]:
        return [
            stage
            for stage in self.list()
            if stage.machine_id == machine_id and stage.status in statuses
        ]

    def running_on_machine(self, machine_id: str) -> List[StageExecution]:
        return self.by_machine_and_status(machine_id, StageStatus.IN_PROGRESS)

    def current_on_machine(self, machine_id: str) -> Optional[StageExecution]:
        running = self.running_on_machine(machine_id)
        return running[0] if running else None

    def queued_for_machine(self, machine_id: str) -> List[StageExecution]:
        return self.by_machine_and_status(machine_id, StageStatus.WAITING)

    def all_in_queue(self) -> List[StageExecution]:
        return self.with_status(StageStatus.WAITING)

    def last_completed_on_machine(self, machine_id: str) -> Optional[StageExecution]:
        completed = [
            stage
            for stage in self.by_machine_and_status(machine_id, StageStatus.COMPLETED)
            if not stage.is_setup and stage.ended_at is not None
        ]
        if not completed:
            return None
        return max(completed, key=lambda stage: stage.ended_at)

    def for_sub_lot(self, sub_lot_id: str) -> List[StageExecution]:
        return [stage for stage in self.list() if stage.sub_lot_id == sub_lot_id]


class MachineQueries:
    """Lookups over machines, in registration order."""

    def by_type(self, machine_type: str) -> List[Machine]:
        return [machine for machine in self.list() if machine.machine_type == machine_type]


class RouteQueries:
    """Lookups over routes and their steps."""

    def for_part(self, part_id: str) -> Optional[Route]:
        for route in self.list():
            if route.part_id == part_id:
                return route
        return None

    def find_step(self, step_id: str) -> Tuple[Route, RouteStep]:
        for route in self.list():
            step = route.get_step(step_id)
            if step is not None:
                return route, step
        raise RecordNotFoundError(f"Route step {step_id!r} not found")


def setup_time_key(machine_id: str, from_part_id: str, to_part_id: str) -> str:
    return f"{machine_id}|{from_part_id}|{to_part_id}"


class SetupTimeQueries:
    """Setup-time records keyed by (machine, from part, to part)."""

    def lookup(
        self, machine_id: str, from_part_id: str, to_part_id: str
    ) -> Optional[SetupTimeRecord]:
        key = setup_time_key(machine_id, from_part_id, to_part_id)
        if key not in self:
            return None
        return self.get(key)

    def record(self, record: SetupTimeRecord) -> SetupTimeRecord:
        key = setup_time_key(record.machine_id, record.from_part_id, record.to_part_id)
        self.add(key, record)
        return record

    def for_machine(self, machine_id: str) -> List[SetupTimeRecord]:
        return [record for record in self.list() if record.machine_id == machine_id]


class StageRepository(StageQueries, InMemoryRepository[StageExecution]):
    """In-memory stage store."""


class MachineRepository(MachineQueries, InMemoryRepository[Machine]):
    """In-memory machine store."""


class RouteRepository(RouteQueries, InMemoryRepository[Route]):
    """In-memory route store."""


class SetupTimeRepository(SetupTimeQueries, InMemoryRepository[SetupTimeRecord]):
    """In-memory setup-time store."""


class SetupLinks:
    """The setup/main stage relation with lookups in both directions.

    Each pair is stored once, keyed by the setup stage; the reverse index is
    derived from the stored records.
    """

    def __init__(self, repository: Optional[InMemoryRepository[SetupLink]] = None) -> None:
        self._links = repository if repository is not None else InMemoryRepository()
        self._by_main: Dict[str, str] = {
            link.main_stage_id: link.setup_stage_id for link in self._links
        }

    def __len__(self) -> int:
        return len(self._links)

    def link(self, setup_stage_id: str, main_stage_id: str) -> SetupLink:
        if main_stage_id in self._by_main:
            raise DuplicateRecordError(
                f"Stage {main_stage_id!r} already has setup stage "
                f"{self._by_main[main_stage_id]!r}"
            )
        link = SetupLink(setup_stage_id=setup_stage_id, main_stage_id=main_stage_id)
        self._links.add(setup_stage_id, link)
        self._by_main[main_stage_id] = setup_stage_id
        return link

    def unlink(self, setup_stage_id: str) -> None:
        link = self._links.get(setup_stage_id)
        self._links.remove(setup_stage_id)
        self._by_main.pop(link.main_stage_id, None)

    def setup_for(self, main_stage_id: str) -> Optional[str]:
        return self._by_main.get(main_stage_id)

    def main_for(self, setup_stage_id: str) -> Optional[str]:
        if setup_stage_id not in self._links:
            return None
        return self._links.get(setup_stage_id).main_stage_id


__all__ = [
    "InMemoryRepository",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "StageQueries",
    "MachineQueries",
    "RouteQueries",
    "SetupTimeQueries",
    "StageRepository",
    "MachineRepository",
    "RouteRepository",
    "SetupTimeRepository",
    "SetupLinks",
    "setup_time_key",
]
