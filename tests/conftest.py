"""Shared test fixtures for the stage scheduler tests."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from stage_scheduler import InMemoryEventLog, SchedulerService

T0 = datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)  # a Monday, early shift


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, hours=0.0, minutes=0.0):
        self.now += timedelta(hours=hours, minutes=minutes)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return InMemoryEventLog()


@pytest.fixture
def scheduler(clock, events):
    return SchedulerService(event_sink=events, clock=clock)


def build_shop(service):
    """One lathe, one mill, one grinder and two parts with routes."""
    lathe = service.register_machine("Lathe 1", "TURNING", priority=1)
    mill = service.register_machine("Mill 1", "MILLING", priority=1)
    grinder = service.register_machine("Grinder 1", "GRINDING")

    shaft = service.register_part("Shaft", number="AW-4711")
    flange = service.register_part("Flange", number="LF-0815")
    service.define_route(
        shaft.id,
        [
            service.build_route_step("Turn", "TURNING", norm_time_hours=0.5, setup_time_hours=1.0),
            service.build_route_step("Mill", "MILLING", norm_time_hours=0.25, setup_time_hours=0.5),
            service.build_route_step("Grind", "GRINDING", norm_time_hours=0.2),
        ],
    )
    service.define_route(
        flange.id,
        [service.build_route_step("Turn", "TURNING", norm_time_hours=0.3, setup_time_hours=0.75)],
    )
    return SimpleNamespace(
        lathe=lathe, mill=mill, grinder=grinder, shaft=shaft, flange=flange
    )


@pytest.fixture
def shop(scheduler):
    return build_shop(scheduler)


def route_stages(service, lot, sub_lot_index=0):
    """Productive stages of one sub-lot in routing order."""
    sub_lot_id = lot.sub_lot_ids[sub_lot_index]
    stages = service.sequencer.productive_stages(sub_lot_id)
    return sorted(stages, key=lambda stage: service.step_for(stage).order)


def run_stage(service, clock, stage_id, hours=1.0):
    """Start a stage, let time pass and complete it."""
    service.start_stage(stage_id, operator_id="op-1")
    clock.advance(hours=hours)
    return service.complete_stage(stage_id, operator_id="op-1")


@pytest.fixture
def helpers():
    return SimpleNamespace(route_stages=route_stages, run_stage=run_stage, build_shop=build_shop)
