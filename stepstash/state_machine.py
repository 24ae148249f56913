"""Step and plan status transition rules.

Both machines are pure: they only answer whether a transition is legal and
what the resulting status is. The scheduler applies them inside a write
transaction.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from .schemas import PlanStatus, StepStatus

TERMINAL_STEP_STATUSES: FrozenSet[StepStatus] = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.OUTDATED}
)

# No pending -> in_progress entry; only a claim moves a step there.
STEP_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.DEFERRED, StepStatus.OUTDATED}),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.OUTDATED}),
    StepStatus.DEFERRED: frozenset({StepStatus.PENDING}),
}


class PlanEvent(str, Enum):
    CLAIM = "claim"
    EXHAUST = "exhaust"
    RELEASE = "release"
    FAIL = "fail"
    PAUSE = "pause"
    RESUME = "resume"
    RESUME_HELD = "resume_held"


PLAN_TRANSITIONS: Dict[Tuple[PlanStatus, PlanEvent], PlanStatus] = {
    (PlanStatus.IDLE, PlanEvent.CLAIM): PlanStatus.RUNNING,
    (PlanStatus.IDLE, PlanEvent.EXHAUST): PlanStatus.COMPLETED,
    (PlanStatus.RUNNING, PlanEvent.RELEASE): PlanStatus.IDLE,
    (PlanStatus.RUNNING, PlanEvent.FAIL): PlanStatus.FAILED,
    (PlanStatus.IDLE, PlanEvent.PAUSE): PlanStatus.PAUSED,
    (PlanStatus.RUNNING, PlanEvent.PAUSE): PlanStatus.PAUSED,
    (PlanStatus.PAUSED, PlanEvent.RESUME): PlanStatus.IDLE,
    # A step claimed before the pause is still held.
    (PlanStatus.PAUSED, PlanEvent.RESUME_HELD): PlanStatus.RUNNING,
    # Work finishing while paused leaves the plan paused.
    (PlanStatus.PAUSED, PlanEvent.RELEASE): PlanStatus.PAUSED,
    (PlanStatus.PAUSED, PlanEvent.FAIL): PlanStatus.FAILED,
}

# Plan side effect of a step leaving in_progress.
RELEASE_EVENTS: Dict[StepStatus, PlanEvent] = {
    StepStatus.COMPLETED: PlanEvent.RELEASE,
    StepStatus.FAILED: PlanEvent.FAIL,
    StepStatus.OUTDATED: PlanEvent.RELEASE,
}


def is_terminal(status: StepStatus) -> bool:
    return status in TERMINAL_STEP_STATUSES


def can_transition_step(current: StepStatus, target: StepStatus, *, via_claim: bool = False) -> bool:
    """Single source of truth for step status changes."""
    if via_claim:
        return current == StepStatus.PENDING and target == StepStatus.IN_PROGRESS
    return target in STEP_TRANSITIONS.get(current, frozenset())


def release_event(current: StepStatus, target: StepStatus) -> Optional[PlanEvent]:
    """Plan event caused by moving a step from ``current`` to ``target``, if any."""
    if current != StepStatus.IN_PROGRESS:
        return None
    return RELEASE_EVENTS.get(target)


def next_plan_status(current: PlanStatus, event: PlanEvent) -> Optional[PlanStatus]:
    return PLAN_TRANSITIONS.get((current, event))
