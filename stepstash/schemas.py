from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class PlanStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DEFERRED = "deferred"
    OUTDATED = "outdated"


CreatedBy = Literal["user", "agent"]
CREATED_BY_VALUES = ("user", "agent")

ErrorCode = Literal[
    "not_found",
    "invalid_status_transition",
    "step_not_in_progress",
    "cannot_mark_outdated",
    "cannot_pause",
    "not_paused",
    "can_only_defer_pending",
    "not_deferred",
    "validation_error",
]

# Non-error outcomes. Contention is reported here, never as an error.
Signal = Literal["ok", "claimed", "plan_locked", "plan_completed", "plan_not_active"]


class Project(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    inserted_at: Optional[str] = None
    updated_at: Optional[str] = None


class Plan(BaseModel):
    id: str
    project_id: str
    title: str
    body: str
    tags: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.IDLE
    inserted_at: Optional[str] = None
    updated_at: Optional[str] = None


class PlanStep(BaseModel):
    id: str
    plan_id: str
    project_id: str
    step_number: float
    description: str
    status: StepStatus = StepStatus.PENDING
    created_by: CreatedBy = "user"
    result: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    inserted_at: Optional[str] = None
    updated_at: Optional[str] = None


class EngineResult(BaseModel):
    """Outcome of an engine operation.

    ``ok`` is True for successes and for the scheduling signals
    (``plan_locked``, ``plan_completed``, ``plan_not_active``); callers may
    retry on those at their own discretion. ``ok`` is False only for the
    closed set of error atoms in ``ErrorCode``.
    """

    ok: bool
    status: str
    step: Optional[PlanStep] = None
    plan: Optional[Plan] = None
    details: Dict[str, List[str]] = Field(default_factory=dict)

    @classmethod
    def success(
        cls,
        status: Signal = "ok",
        *,
        step: Optional[PlanStep] = None,
        plan: Optional[Plan] = None,
    ) -> "EngineResult":
        return cls(ok=True, status=status, step=step, plan=plan)

    @classmethod
    def error(cls, code: ErrorCode, details: Optional[Dict[str, List[str]]] = None) -> "EngineResult":
        return cls(ok=False, status=code, details=details or {})

    @classmethod
    def invalid(cls, details: Dict[str, List[str]]) -> "EngineResult":
        return cls.error("validation_error", details)
