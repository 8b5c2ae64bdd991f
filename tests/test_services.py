"""Tests for the scheduler facade: lots, execution, maintenance and forecasts."""

import logging
import threading
from datetime import timedelta

import pytest

from stage_scheduler import (
    InvalidTransitionError,
    MachineTypeMismatchError,
    NotFoundError,
    ScheduleOutcome,
    SchedulerOptions,
    SchedulerService,
    ScoringWeights,
    StageEventType,
    StageStatus,
)
from stage_scheduler.repository import DuplicateRecordError
from stage_scheduler.services import AUTO_SCHEDULER_DEVICE, SYSTEM_OPERATOR

from conftest import T0


@pytest.fixture
def running_shaft(scheduler, shop, helpers):
    """First shaft stage running on the lathe since T0."""
    lot = scheduler.create_lot_and_schedule(shop.shaft.id, 1)
    stage = helpers.route_stages(scheduler, lot)[0]
    scheduler.start_stage(stage.id, operator_id="op-1")
    return scheduler.get_stage(stage.id)


def first_stage(scheduler, helpers, part_id, quantity=1, **kwargs):
    lot = scheduler.create_lot_and_schedule(part_id, quantity, **kwargs)
    return scheduler.get_stage(helpers.route_stages(scheduler, lot)[0].id)


class TestLotCreation:
    def test_creates_stages_per_sub_lot_and_step(self, scheduler, shop, events):
        lot = scheduler.create_lot_and_schedule(shop.shaft.id, 3, [2, 1])

        assert len(lot.sub_lot_ids) == 2
        assert [scheduler.sub_lots.get(sid).quantity for sid in lot.sub_lot_ids] == [2, 1]
        assert len(scheduler.stages_for_lot(lot.id)) == 6
        assert len(events.of_type(StageEventType.CREATED)) == 6

    def test_without_scheduling_stages_stay_unassigned(self, scheduler, shop):
        lot = scheduler.create_lot_and_schedule(shop.shaft.id, 1, schedule=False)
        stages = scheduler.stages_for_lot(lot.id)
        assert all(stage.status == StageStatus.PENDING for stage in stages)
        assert all(stage.machine_id is None for stage in stages)

    def test_lot_priority_is_clamped(self, scheduler, shop, helpers):
        stage = first_stage(scheduler, helpers, shop.shaft.id, priority=99)
        assert stage.priority == scheduler.options.max_priority

    @pytest.mark.parametrize(
        "quantity, sub_lots",
        [(0, None), (3, [2, 2]), (3, [3, 0])],
    )
    def test_rejects_bad_quantities(self, scheduler, shop, quantity, sub_lots):
        with pytest.raises(ValueError):
            scheduler.create_lot_and_schedule(shop.shaft.id, quantity, sub_lots)
        assert len(scheduler.lots) == 0

    def test_unknown_part(self, scheduler, shop):
        with pytest.raises(NotFoundError):
            scheduler.create_lot_and_schedule("missing", 1)

    def test_part_without_route(self, scheduler, shop):
        part = scheduler.register_part("Spacer")
        with pytest.raises(NotFoundError):
            scheduler.create_lot_and_schedule(part.id, 1)

    def test_route_cannot_be_defined_twice(self, scheduler, shop):
        with pytest.raises(DuplicateRecordError):
            scheduler.define_route(
                shop.shaft.id,
                [scheduler.build_route_step("Turn", "TURNING", norm_time_hours=0.1)],
            )

    def test_lot_statistics(self, scheduler, shop, clock, helpers):
        lot = scheduler.create_lot_and_schedule(shop.shaft.id, 2)
        helpers.run_stage(scheduler, clock, helpers.route_stages(scheduler, lot)[0].id)

        stats = scheduler.lot_statistics(lot.id)

        assert stats.total_stages == 3
        assert stats.setup_stages == 0
        assert stats.status_counts["Completed"] == 1
        assert stats.planned_hours == pytest.approx(1.9)
        assert stats.completion_percentage == pytest.approx(33.33)
        assert stats.completed is False


class TestExecution:
    def test_cancel_running_stage_promotes_queue(self, scheduler, shop, running_shaft, helpers):
        waiting = first_stage(scheduler, helpers, shop.shaft.id)
        assert waiting.status == StageStatus.WAITING

        scheduler.cancel_stage(running_shaft.id, "tool breakage", operator_id="op-1")

        assert scheduler.get_stage(running_shaft.id).status == StageStatus.ERROR
        promoted = scheduler.get_stage(waiting.id)
        assert promoted.status == StageStatus.PENDING
        assert promoted.machine_id == shop.lathe.id

    def test_cancel_needs_reason(self, scheduler, shop, running_shaft):
        with pytest.raises(InvalidTransitionError):
            scheduler.cancel_stage(running_shaft.id, "")
        assert scheduler.get_stage(running_shaft.id).status == StageStatus.IN_PROGRESS

    def test_terminal_stage_cannot_be_cancelled(self, scheduler, shop, clock, running_shaft):
        scheduler.complete_stage(running_shaft.id)
        with pytest.raises(InvalidTransitionError):
            scheduler.cancel_stage(running_shaft.id, "too late")

    def test_resume_blocked_while_machine_runs_other_stage(
        self, scheduler, shop, running_shaft, helpers
    ):
        scheduler.pause_stage(running_shaft.id, reason="shift change")
        other = first_stage(scheduler, helpers, shop.shaft.id)
        assert other.machine_id == shop.lathe.id
        scheduler.start_stage(other.id)

        with pytest.raises(InvalidTransitionError):
            scheduler.resume_stage(running_shaft.id)
        assert scheduler.get_stage(running_shaft.id).status == StageStatus.PAUSED

    def test_pause_and_resume(self, scheduler, shop, clock, running_shaft, events):
        clock.advance(minutes=20)
        scheduler.pause_stage(running_shaft.id, reason="material check")
        clock.advance(minutes=10)
        stage = scheduler.resume_stage(running_shaft.id)

        assert stage.status == StageStatus.IN_PROGRESS
        assert stage.paused_seconds == pytest.approx(600)
        assert [event.event_type for event in events.for_stage(stage.id)][-2:] == [
            StageEventType.PAUSED,
            StageEventType.RESUMED,
        ]

    def test_overrun_is_logged(self, scheduler, shop, clock, helpers, caplog):
        stage = first_stage(scheduler, helpers, shop.shaft.id)
        with caplog.at_level(logging.WARNING, logger="stage_scheduler.services"):
            helpers.run_stage(scheduler, clock, stage.id, hours=3)
        assert "planned" in caplog.text

    def test_overdue_stages(self, scheduler, shop, clock, running_shaft):
        clock.advance(hours=2.4)
        assert scheduler.overdue_stages() == []
        clock.advance(hours=0.2)
        assert [stage.id for stage in scheduler.overdue_stages()] == [running_shaft.id]

    def test_run_cycle_auto_starts_ready_stages(self, scheduler, shop, helpers):
        scheduler.update_options(auto_start_ready_stages=True)
        lot = scheduler.create_lot_and_schedule(shop.shaft.id, 1, schedule=False)
        first = helpers.route_stages(scheduler, lot)[0]

        report = scheduler.run_cycle()

        assert [result.stage_id for result in report.scheduled] == [first.id]
        assert report.started == [first.id]
        started = scheduler.get_stage(first.id)
        assert started.status == StageStatus.IN_PROGRESS
        assert started.operator_id == SYSTEM_OPERATOR
        assert started.device_id == AUTO_SCHEDULER_DEVICE

    def test_run_cycle_without_auto_start(self, scheduler, shop, helpers):
        lot = scheduler.create_lot_and_schedule(shop.shaft.id, 1, schedule=False)
        report = scheduler.run_cycle()
        assert report.started == []
        assert scheduler.can_start(helpers.route_stages(scheduler, lot)[0].id)

    def test_failing_event_sink_does_not_abort(self, clock, helpers, caplog):
        class BrokenSink:
            def publish(self, event):
                raise RuntimeError("audit store offline")

        service = SchedulerService(event_sink=BrokenSink(), clock=clock)
        shop = helpers.build_shop(service)

        with caplog.at_level(logging.ERROR, logger="stage_scheduler.events"):
            stage = first_stage(service, helpers, shop.shaft.id)

        assert stage.machine_id == shop.lathe.id
        assert "Event sink failed" in caplog.text


class TestReassign:
    def test_moves_stage_to_other_machine(self, scheduler, shop, helpers, events):
        lathe2 = scheduler.register_machine("Lathe 2", "TURNING")
        stage = first_stage(scheduler, helpers, shop.shaft.id)

        result = scheduler.reassign_stage(stage.id, lathe2.id)

        assert result.outcome == ScheduleOutcome.ASSIGNED
        assert result.status == StageStatus.PENDING
        assert scheduler.get_stage(stage.id).machine_id == lathe2.id
        assert len(events.of_type(StageEventType.REASSIGNED)) == 1

    def test_same_machine_is_skipped(self, scheduler, shop, helpers):
        stage = first_stage(scheduler, helpers, shop.shaft.id)
        result = scheduler.reassign_stage(stage.id, shop.lathe.id)
        assert result.outcome == ScheduleOutcome.SKIPPED

    def test_machine_type_must_match(self, scheduler, shop, helpers):
        stage = first_stage(scheduler, helpers, shop.shaft.id)
        with pytest.raises(MachineTypeMismatchError):
            scheduler.reassign_stage(stage.id, shop.mill.id)
        assert scheduler.get_stage(stage.id).machine_id == shop.lathe.id

    def test_busy_machine_parks_stage(self, scheduler, shop, running_shaft, helpers):
        stage = first_stage(scheduler, helpers, shop.flange.id, schedule=False)

        result = scheduler.reassign_stage(stage.id, shop.lathe.id)

        assert result.status == StageStatus.WAITING
        assert result.queue_position == 1
        assert scheduler.get_stage(stage.id).machine_id == shop.lathe.id

    def test_running_stage_cannot_be_reassigned(self, scheduler, shop, running_shaft):
        lathe2 = scheduler.register_machine("Lathe 2", "TURNING")
        with pytest.raises(InvalidTransitionError):
            scheduler.reassign_stage(running_shaft.id, lathe2.id)

    def test_unknown_machine(self, scheduler, shop, helpers):
        stage = first_stage(scheduler, helpers, shop.shaft.id)
        with pytest.raises(NotFoundError):
            scheduler.reassign_stage(stage.id, "missing")


class TestConflicts:
    def test_keeps_earliest_started_stage(self, scheduler, shop, clock, running_shaft, helpers):
        intruder = first_stage(scheduler, helpers, shop.shaft.id, schedule=False)
        intruder.machine_id = shop.lathe.id
        intruder.status = StageStatus.IN_PROGRESS
        intruder.started_at = T0 + timedelta(minutes=10)
        scheduler.stages.upsert(intruder.id, intruder)

        report = scheduler.resolve_conflicts()

        assert len(report.conflicts) == 1
        assert set(report.conflicts[0].stage_ids) == {running_shaft.id, intruder.id}
        assert report.kept == {shop.lathe.id: running_shaft.id}
        assert [result.outcome for result in report.rescheduled] == [ScheduleOutcome.QUEUED]
        revoked = scheduler.get_stage(intruder.id)
        assert revoked.status == StageStatus.WAITING
        assert revoked.started_at is None
        assert scheduler.get_stage(running_shaft.id).status == StageStatus.IN_PROGRESS

    def test_no_conflicts(self, scheduler, shop, running_shaft):
        report = scheduler.resolve_conflicts()
        assert report.conflicts == []
        assert report.rescheduled == []


class TestOptimizeQueue:
    def test_promotes_stage_when_machine_appears(self, scheduler, shop, running_shaft, helpers):
        waiting = first_stage(scheduler, helpers, shop.shaft.id)
        lathe2 = scheduler.register_machine("Lathe 2", "TURNING")

        report = scheduler.optimize_queue()

        assert report.examined == 1
        assert report.promoted == [waiting.id]
        promoted = scheduler.get_stage(waiting.id)
        assert promoted.status == StageStatus.PENDING
        assert promoted.machine_id == lathe2.id

        again = scheduler.optimize_queue()
        assert again.examined == 0
        assert again.promoted == [] and again.reassigned == []

    def test_moves_parked_stage_to_better_machine(self, scheduler, shop, running_shaft, helpers):
        parked = first_stage(scheduler, helpers, shop.shaft.id, schedule=False)
        scheduler.reassign_stage(parked.id, shop.lathe.id)
        lathe2 = scheduler.register_machine("Lathe 2", "TURNING", priority=1)

        report = scheduler.optimize_queue()

        assert report.reassigned == [parked.id]
        moved = scheduler.get_stage(parked.id)
        assert moved.machine_id == lathe2.id
        assert moved.status == StageStatus.PENDING

    def test_margin_keeps_stage_in_place(self, scheduler, shop, running_shaft, helpers):
        scheduler.update_options(reassign_margin=10.0)
        parked = first_stage(scheduler, helpers, shop.shaft.id, schedule=False)
        scheduler.reassign_stage(parked.id, shop.lathe.id)
        scheduler.register_machine("Lathe 2", "TURNING", priority=1)

        report = scheduler.optimize_queue()

        assert report.reassigned == []
        assert scheduler.get_stage(parked.id).machine_id == shop.lathe.id


class TestForecasts:
    def test_queue_forecast(self, scheduler, shop, clock, helpers):
        running = first_stage(scheduler, helpers, shop.shaft.id, quantity=2)
        scheduler.start_stage(running.id)
        clock.advance(minutes=15)
        queued = first_stage(scheduler, helpers, shop.shaft.id)

        items = {item.stage_id: item for item in scheduler.get_queue_forecast()}

        assert items[running.id].expected_start == T0
        assert items[running.id].expected_end == T0 + timedelta(hours=1)
        assert items[queued.id].machine_id is None
        assert items[queued.id].expected_machine_id == shop.lathe.id
        assert items[queued.id].expected_start == T0 + timedelta(hours=1)
        assert items[queued.id].expected_end == T0 + timedelta(hours=1.5)
        assert scheduler.get_stage(queued.id).status == StageStatus.WAITING

    def test_predict_schedule_without_setups(self, scheduler, shop, clock):
        prediction = scheduler.predict_schedule(shop.shaft.id, 4)

        assert [step.order for step in prediction.steps] == [1, 2, 3]
        assert prediction.total_setups == 0
        assert prediction.total_hours == pytest.approx(3.8)
        assert prediction.earliest_start == T0
        assert prediction.latest_end == T0 + timedelta(hours=3.8)
        assert len(scheduler.lots) == 0

    def test_predict_schedule_counts_changeover(self, scheduler, shop, clock, helpers):
        stage = first_stage(scheduler, helpers, shop.shaft.id)
        helpers.run_stage(scheduler, clock, stage.id)

        prediction = scheduler.predict_schedule(shop.flange.id, 2)

        assert prediction.total_setups == 1
        assert prediction.total_setup_hours == pytest.approx(0.75)
        assert prediction.total_hours == pytest.approx(1.35)
        assert len(scheduler.setup_times) == 0

    def test_predict_schedule_validates_input(self, scheduler, shop):
        with pytest.raises(ValueError):
            scheduler.predict_schedule(shop.shaft.id, 0)
        with pytest.raises(NotFoundError):
            scheduler.predict_schedule("missing", 1)


class TestOptions:
    def test_update_options_clamps_values(self, scheduler):
        options = scheduler.update_options(
            max_priority=-3,
            min_remaining_minutes=-1,
            weights=ScoringWeights(same_part_bonus=-10),
        )
        assert options.max_priority == 0
        assert options.min_remaining_minutes == 0.0
        assert options.weights.same_part_bonus == 0.0
        assert options.weights.machine_priority == 10.0

    def test_omitted_values_are_kept(self, scheduler):
        scheduler.update_options(overdue_grace_hours=4)
        options = scheduler.update_options(max_priority=5)
        assert options.overdue_grace_hours == 4
        assert options.max_priority == 5

    def test_concurrent_updates_are_not_lost(self, scheduler):
        updates = [
            {"overdue_grace_hours": 4},
            {"max_priority": 5},
            {"reassign_margin": 2.5},
            {"min_remaining_minutes": 20},
            {"weights": ScoringWeights(same_part_bonus=30)},
        ]
        barrier = threading.Barrier(len(updates))

        def apply(values):
            barrier.wait()
            for _ in range(50):
                scheduler.update_options(**values)

        threads = [threading.Thread(target=apply, args=(values,)) for values in updates]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        options = scheduler.options
        assert options.overdue_grace_hours == 4
        assert options.max_priority == 5
        assert options.reassign_margin == 2.5
        assert options.min_remaining_minutes == 20
        assert options.weights.same_part_bonus == 30

    def test_from_mapping(self):
        options = SchedulerOptions.from_mapping(
            {"max_priority": 5, "weights": {"same_part_bonus": "20"}, "colour": "blue"}
        )
        assert options.max_priority == 5
        assert options.weights.same_part_bonus == 20.0
        assert options.weights.machine_priority == 10.0
