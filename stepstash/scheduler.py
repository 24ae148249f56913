import logging
from typing import Any, Dict, Optional, Tuple

import aiosqlite

from .db import json_dumps, record_event, utc_now
from .plan_store import PlanStore
from .schemas import EngineResult, ErrorCode, Plan, PlanStatus, PlanStep, StepStatus
from .state_machine import (
    PlanEvent,
    can_transition_step,
    is_terminal,
    next_plan_status,
    release_event,
)
from .step_store import StepStore

logger = logging.getLogger("uvicorn.error")

_UNSET: Any = object()


class Scheduler:
    """Every status change of plans and steps goes through here.

    Each operation runs as one ``BEGIN IMMEDIATE`` transaction on its own
    connection, so callers in other coroutines, threads or processes are
    serialized by SQLite rather than by anything in this process. Plan status
    writes are compare-and-swap updates on the status read in the same
    transaction.
    """

    def __init__(self, path: str, busy_timeout_s: float = 5.0):
        self.path = path
        self.busy_timeout_s = busy_timeout_s
        self.plans = PlanStore(path, busy_timeout_s)
        self.steps = StepStore(path, busy_timeout_s)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.path, timeout=self.busy_timeout_s)

    async def _swap_plan_status(
        self, db: aiosqlite.Connection, plan: Plan, event: PlanEvent
    ) -> Optional[Plan]:
        """Apply ``event`` to the plan; None if the transition is not allowed."""
        target = next_plan_status(plan.status, event)
        if target is None:
            return None
        if target == plan.status:
            return plan
        cursor = await db.execute(
            "UPDATE plans SET status=?, updated_at=? WHERE id=? AND status=?",
            (target.value, utc_now(), plan.id, plan.status.value),
        )
        if cursor.rowcount != 1:
            return None
        updated = await self.plans.fetch(db, plan.id)
        await record_event(db, plan.id, "plan_updated", updated.model_dump(mode="json"))
        return updated

    async def _write_step(
        self,
        db: aiosqlite.Connection,
        step: PlanStep,
        status: Optional[StepStatus] = None,
        result: Any = _UNSET,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PlanStep:
        new_status = status or step.status
        new_result = step.result if result is _UNSET else result
        merged = {**step.metadata, **(metadata or {})}
        await db.execute(
            "UPDATE plan_steps SET status=?, result=?, metadata_json=?, updated_at=? WHERE id=? AND status=?",
            (new_status.value, new_result, json_dumps(merged), utc_now(), step.id, step.status.value),
        )
        updated = await self.steps.fetch(db, step.id)
        await record_event(db, step.plan_id, "plan_step_updated", updated.model_dump(mode="json"))
        return updated

    async def claim_next(self, plan_id: str) -> EngineResult:
        """Claim the lowest-numbered pending step of an idle plan.

        Returns ``claimed`` with the step (plan now running), ``plan_locked``
        when a step is already in progress, ``plan_completed`` when nothing is
        pending (plan marked completed), ``plan_not_active`` for paused,
        completed or failed plans, and ``not_found`` for unknown plans.
        """
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            plan = await self.plans.fetch(db, plan_id)
            if plan is None:
                await db.execute("ROLLBACK")
                return EngineResult.error("not_found")
            if plan.status == PlanStatus.RUNNING:
                await db.execute("ROLLBACK")
                return EngineResult.success("plan_locked", plan=plan)
            if plan.status != PlanStatus.IDLE:
                await db.execute("ROLLBACK")
                return EngineResult.success("plan_not_active", plan=plan)
            if await self.steps.count_in_progress(db, plan_id):
                await db.execute("ROLLBACK")
                logger.warning("Plan %s is idle but still holds an in-progress step", plan_id)
                return EngineResult.success("plan_locked", plan=plan)
            step = await self.steps.fetch_next_pending(db, plan_id)
            if step is None:
                plan = await self._swap_plan_status(db, plan, PlanEvent.EXHAUST)
                await db.commit()
                logger.info("Plan %s has no pending steps; marked completed", plan_id)
                return EngineResult.success("plan_completed", plan=plan)
            if not can_transition_step(step.status, StepStatus.IN_PROGRESS, via_claim=True):
                await db.execute("ROLLBACK")
                return EngineResult.error("invalid_status_transition")
            running = await self._swap_plan_status(db, plan, PlanEvent.CLAIM)
            if running is None:
                await db.execute("ROLLBACK")
                return EngineResult.success("plan_locked", plan=plan)
            claimed = await self._write_step(db, step, StepStatus.IN_PROGRESS)
            await db.commit()
        logger.info("Plan %s claimed step %s (%s)", plan_id, claimed.id, claimed.step_number)
        return EngineResult.success("claimed", step=claimed, plan=running)

    async def _transition(
        self,
        step_id: str,
        target: Optional[StepStatus],
        *,
        rejection: ErrorCode,
        allowed_from: Optional[Tuple[StepStatus, ...]] = None,
        result: Any = _UNSET,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """Move one step to ``target`` and apply the matching plan event.

        ``allowed_from`` narrows the legal source statuses for the named
        operations (complete, fail, defer, ...); ``rejection`` is the atom
        returned when the step is not in an acceptable state.
        """
        if metadata is not None and not isinstance(metadata, dict):
            return EngineResult.invalid({"metadata": ["is invalid"]})
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            step = await self.steps.fetch(db, step_id)
            if step is None:
                await db.execute("ROLLBACK")
                return EngineResult.error("not_found")
            current = step.status
            unchanged = allowed_from is None and target == current and not is_terminal(current)
            if target is None or unchanged:
                updated = await self._write_step(db, step, None, result, metadata)
                await db.commit()
                return EngineResult.success(step=updated)
            if (allowed_from is not None and current not in allowed_from) or not can_transition_step(
                current, target
            ):
                await db.execute("ROLLBACK")
                logger.warning(
                    "Rejected step %s transition %s -> %s (%s)", step_id, current.value, target.value, rejection
                )
                return EngineResult.error(rejection)
            plan = None
            event = release_event(current, target)
            if event is not None:
                plan = await self.plans.fetch(db, step.plan_id)
                plan = await self._swap_plan_status(db, plan, event) if plan else None
                if plan is None:
                    await db.execute("ROLLBACK")
                    logger.warning("Plan of step %s cannot accept %s", step_id, event.value)
                    return EngineResult.error("invalid_status_transition")
            updated = await self._write_step(db, step, target, result, metadata)
            await db.commit()
        if event is not None:
            logger.info("Step %s %s; plan %s is %s", step_id, target.value, updated.plan_id, plan.status.value)
        return EngineResult.success(step=updated, plan=plan)

    async def complete_step(
        self, step_id: str, result: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> EngineResult:
        return await self._transition(
            step_id,
            StepStatus.COMPLETED,
            rejection="step_not_in_progress",
            allowed_from=(StepStatus.IN_PROGRESS,),
            result=_UNSET if result is None else result,
            metadata=metadata,
        )

    async def fail_step(
        self, step_id: str, result: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> EngineResult:
        return await self._transition(
            step_id,
            StepStatus.FAILED,
            rejection="step_not_in_progress",
            allowed_from=(StepStatus.IN_PROGRESS,),
            result=_UNSET if result is None else result,
            metadata=metadata,
        )

    async def mark_step_outdated(
        self, step_id: str, result: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> EngineResult:
        """Retire a pending or in-progress step; an in-progress one releases its plan."""
        return await self._transition(
            step_id,
            StepStatus.OUTDATED,
            rejection="cannot_mark_outdated",
            allowed_from=(StepStatus.PENDING, StepStatus.IN_PROGRESS),
            result=_UNSET if result is None else result,
            metadata=metadata,
        )

    async def defer_step(self, step_id: str) -> EngineResult:
        return await self._transition(
            step_id,
            StepStatus.DEFERRED,
            rejection="can_only_defer_pending",
            allowed_from=(StepStatus.PENDING,),
        )

    async def undefer_step(self, step_id: str) -> EngineResult:
        return await self._transition(
            step_id,
            StepStatus.PENDING,
            rejection="not_deferred",
            allowed_from=(StepStatus.DEFERRED,),
        )

    async def update_step(
        self,
        step_id: str,
        status: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """Partial update of result/metadata with an optional validated status change.

        Metadata is merged into the existing map. Leaving in_progress applies
        the same plan release as complete/fail/outdated.
        """
        if status is None and result is None and metadata is None:
            return EngineResult.invalid({"status": ["at least one of status, result or metadata is required"]})
        target: Optional[StepStatus] = None
        if status is not None:
            try:
                target = StepStatus(status)
            except ValueError:
                return EngineResult.invalid({"status": ["is invalid"]})
        return await self._transition(
            step_id,
            target,
            rejection="invalid_status_transition",
            result=_UNSET if result is None else result,
            metadata=metadata,
        )

    async def _change_plan(self, plan_id: str, event: PlanEvent, rejection: ErrorCode) -> EngineResult:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            plan = await self.plans.fetch(db, plan_id)
            if plan is None:
                await db.execute("ROLLBACK")
                return EngineResult.error("not_found")
            if event == PlanEvent.RESUME and await self.steps.count_in_progress(db, plan_id):
                event = PlanEvent.RESUME_HELD
            updated = await self._swap_plan_status(db, plan, event)
            if updated is None:
                await db.execute("ROLLBACK")
                return EngineResult.error(rejection)
            await db.commit()
        logger.info("Plan %s %s -> %s", plan_id, plan.status.value, updated.status.value)
        return EngineResult.success(plan=updated)

    async def pause_plan(self, plan_id: str) -> EngineResult:
        """Freeze scheduling. A step already in progress keeps its status."""
        return await self._change_plan(plan_id, PlanEvent.PAUSE, "cannot_pause")

    async def resume_plan(self, plan_id: str) -> EngineResult:
        return await self._change_plan(plan_id, PlanEvent.RESUME, "not_paused")
