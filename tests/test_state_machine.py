"""Tests for the stage transition table."""

from datetime import timedelta

import pytest

from stage_scheduler import InvalidTransitionError, StageExecution, StageStatus
from stage_scheduler.state_machine import (
    TRANSITIONS,
    StageTrigger,
    allowed_triggers,
    can_fire,
    fire,
)

from conftest import T0


def make_stage(status=StageStatus.PENDING):
    stage = StageExecution(id="st-1", sub_lot_id="sl-1", route_step_id="rs-1", status=status)
    if status in {StageStatus.IN_PROGRESS, StageStatus.PAUSED}:
        stage.machine_id = "m-1"
        stage.started_at = T0
    if status == StageStatus.PAUSED:
        stage.paused_at = T0
    return stage


class TestTransitionTable:
    """Every (status, trigger) pair either follows the table or is rejected."""

    @pytest.mark.parametrize("status", list(StageStatus))
    @pytest.mark.parametrize("trigger", list(StageTrigger))
    def test_fire_follows_table(self, status, trigger):
        stage = make_stage(status)
        expected = TRANSITIONS.get((status, trigger))
        if expected is None:
            with pytest.raises(InvalidTransitionError) as info:
                fire(stage, trigger, T0, note="operator request")
            assert stage.status == status
            assert info.value.transition == trigger.value
        else:
            previous = fire(stage, trigger, T0, note="operator request")
            assert previous == status
            assert stage.status == expected
            assert stage.status_changed_at == T0

    @pytest.mark.parametrize("status", [StageStatus.COMPLETED, StageStatus.ERROR])
    def test_terminal_states_have_no_exits(self, status):
        assert allowed_triggers(status) == []

    def test_cancel_allowed_from_every_open_state(self):
        for status in StageStatus:
            assert can_fire(make_stage(status), StageTrigger.CANCEL) == (not status.is_terminal)

    def test_waiting_cannot_start(self):
        assert not can_fire(make_stage(StageStatus.WAITING), StageTrigger.START)


class TestSideEffects:
    def test_start_records_attempt_and_clears_error(self):
        stage = make_stage()
        stage.last_error = "waits for step 1"
        fire(stage, StageTrigger.START, T0, operator_id="op-7", device_id="tablet-2")
        assert stage.started_at == T0
        assert stage.start_attempts == 1
        assert stage.last_error is None
        assert stage.operator_id == "op-7"
        assert stage.device_id == "tablet-2"

    def test_pause_and_resume_accumulate_paused_time(self):
        stage = make_stage()
        fire(stage, StageTrigger.START, T0)
        fire(stage, StageTrigger.PAUSE, T0 + timedelta(hours=1))
        fire(stage, StageTrigger.RESUME, T0 + timedelta(hours=1, minutes=30))
        fire(stage, StageTrigger.COMPLETE, T0 + timedelta(hours=3))

        assert stage.paused_seconds == pytest.approx(1800)
        assert stage.resumed_at == T0 + timedelta(hours=1, minutes=30)
        assert stage.ended_at == T0 + timedelta(hours=3)
        assert stage.actual_working_hours(T0 + timedelta(hours=5)) == pytest.approx(2.5)

    def test_working_hours_exclude_current_pause(self):
        stage = make_stage()
        fire(stage, StageTrigger.START, T0)
        fire(stage, StageTrigger.PAUSE, T0 + timedelta(hours=1))
        assert stage.actual_working_hours(T0 + timedelta(hours=4)) == pytest.approx(1.0)

    def test_cancel_requires_reason(self):
        stage = make_stage(StageStatus.IN_PROGRESS)
        with pytest.raises(InvalidTransitionError):
            fire(stage, StageTrigger.CANCEL, T0, note="   ")
        assert stage.status == StageStatus.IN_PROGRESS
        assert stage.ended_at is None

    def test_cancel_of_running_stage_records_end(self):
        stage = make_stage(StageStatus.IN_PROGRESS)
        fire(stage, StageTrigger.CANCEL, T0 + timedelta(hours=2), note="tool breakage")
        assert stage.status == StageStatus.ERROR
        assert stage.ended_at == T0 + timedelta(hours=2)
        assert stage.reason_note == "tool breakage"
        assert stage.last_error == "tool breakage"

    def test_cancel_of_pending_stage_has_no_end(self):
        stage = make_stage()
        fire(stage, StageTrigger.CANCEL, T0, note="order withdrawn")
        assert stage.ended_at is None

    def test_revoke_clears_start(self):
        stage = make_stage(StageStatus.IN_PROGRESS)
        fire(stage, StageTrigger.REVOKE, T0, note="conflict")
        assert stage.status == StageStatus.PENDING
        assert stage.started_at is None


class TestOverdue:
    def test_overdue_after_planned_plus_grace(self):
        stage = make_stage()
        fire(stage, StageTrigger.START, T0)
        assert not stage.is_overdue(T0 + timedelta(hours=3), planned_hours=1.0, grace_hours=2.0)
        assert stage.is_overdue(
            T0 + timedelta(hours=3, minutes=1), planned_hours=1.0, grace_hours=2.0
        )

    def test_not_started_is_never_overdue(self):
        assert not make_stage().is_overdue(T0 + timedelta(days=3), 1.0, 2.0)


class TestServiceTransitions:
    def test_complete_pending_stage_is_rejected(self, scheduler, shop, helpers):
        lot = scheduler.create_lot_and_schedule(shop.shaft.id, 2)
        first = helpers.route_stages(scheduler, lot)[0]

        with pytest.raises(InvalidTransitionError) as info:
            scheduler.complete_stage(first.id)

        assert info.value.transition == "complete"
        assert scheduler.get_stage(first.id).status == StageStatus.PENDING
