import pytest

from stepstash.schemas import PlanStatus, StepStatus
from stepstash.state_machine import (
    PlanEvent,
    can_transition_step,
    is_terminal,
    next_plan_status,
    release_event,
)

ALLOWED = {
    (StepStatus.IN_PROGRESS, StepStatus.COMPLETED),
    (StepStatus.IN_PROGRESS, StepStatus.FAILED),
    (StepStatus.PENDING, StepStatus.DEFERRED),
    (StepStatus.DEFERRED, StepStatus.PENDING),
    (StepStatus.PENDING, StepStatus.OUTDATED),
    (StepStatus.IN_PROGRESS, StepStatus.OUTDATED),
}


@pytest.mark.parametrize("current", list(StepStatus))
@pytest.mark.parametrize("target", list(StepStatus))
def test_step_transition_table(current, target):
    assert can_transition_step(current, target) == ((current, target) in ALLOWED)


def test_claim_is_the_only_way_into_in_progress():
    assert not can_transition_step(StepStatus.PENDING, StepStatus.IN_PROGRESS)
    assert can_transition_step(StepStatus.PENDING, StepStatus.IN_PROGRESS, via_claim=True)
    assert not can_transition_step(StepStatus.DEFERRED, StepStatus.IN_PROGRESS, via_claim=True)


def test_terminal_statuses_have_no_exits():
    for status in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.OUTDATED):
        assert is_terminal(status)
        assert not any(can_transition_step(status, target) for target in StepStatus)
    assert not is_terminal(StepStatus.DEFERRED)


def test_release_event_only_from_in_progress():
    assert release_event(StepStatus.IN_PROGRESS, StepStatus.COMPLETED) == PlanEvent.RELEASE
    assert release_event(StepStatus.IN_PROGRESS, StepStatus.FAILED) == PlanEvent.FAIL
    assert release_event(StepStatus.IN_PROGRESS, StepStatus.OUTDATED) == PlanEvent.RELEASE
    assert release_event(StepStatus.PENDING, StepStatus.OUTDATED) is None
    assert release_event(StepStatus.PENDING, StepStatus.DEFERRED) is None


def test_plan_lifecycle():
    assert next_plan_status(PlanStatus.IDLE, PlanEvent.CLAIM) == PlanStatus.RUNNING
    assert next_plan_status(PlanStatus.RUNNING, PlanEvent.RELEASE) == PlanStatus.IDLE
    assert next_plan_status(PlanStatus.RUNNING, PlanEvent.FAIL) == PlanStatus.FAILED
    assert next_plan_status(PlanStatus.IDLE, PlanEvent.EXHAUST) == PlanStatus.COMPLETED
    assert next_plan_status(PlanStatus.PAUSED, PlanEvent.RESUME) == PlanStatus.IDLE
    assert next_plan_status(PlanStatus.PAUSED, PlanEvent.RESUME_HELD) == PlanStatus.RUNNING


@pytest.mark.parametrize("status", [PlanStatus.IDLE, PlanStatus.RUNNING])
def test_pause_from_active_states(status):
    assert next_plan_status(status, PlanEvent.PAUSE) == PlanStatus.PAUSED


@pytest.mark.parametrize("status", [PlanStatus.PAUSED, PlanStatus.COMPLETED, PlanStatus.FAILED])
def test_pause_rejected(status):
    assert next_plan_status(status, PlanEvent.PAUSE) is None


@pytest.mark.parametrize("status", [PlanStatus.IDLE, PlanStatus.RUNNING, PlanStatus.COMPLETED, PlanStatus.FAILED])
def test_resume_requires_paused(status):
    assert next_plan_status(status, PlanEvent.RESUME) is None


def test_claim_requires_idle():
    for status in (PlanStatus.RUNNING, PlanStatus.PAUSED, PlanStatus.COMPLETED, PlanStatus.FAILED):
        assert next_plan_status(status, PlanEvent.CLAIM) is None
