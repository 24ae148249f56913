import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request

from .config import AppSettings, load_settings
from .db import Database
from .plan_store import PlanStore
from .project_store import ProjectStore
from .scheduler import Scheduler
from .schemas import EngineResult, Plan, PlanStep
from .step_store import StepStore

logger = logging.getLogger("uvicorn.error")

ERROR_STATUS_CODES = {
    "not_found": 404,
    "validation_error": 422,
    "invalid_status_transition": 422,
    "step_not_in_progress": 422,
    "cannot_mark_outdated": 422,
    "cannot_pause": 422,
    "not_paused": 422,
    "can_only_defer_pending": 422,
    "not_deferred": 422,
}

ERROR_MESSAGES = {
    "invalid_status_transition": "Invalid status transition",
    "step_not_in_progress": "Step must be in_progress to complete or fail",
    "cannot_mark_outdated": "Only pending or in_progress steps can be marked outdated",
    "cannot_pause": "Only idle or running plans can be paused",
    "not_paused": "Plan is not paused",
    "can_only_defer_pending": "Only pending steps can be deferred",
    "not_deferred": "Step is not deferred",
}

# Scheduling signals as reported to HTTP clients.
CLAIM_STATUSES = {
    "claimed": "next",
    "plan_completed": "complete",
    "plan_locked": "locked",
    "plan_not_active": "not_active",
}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_projects(request: Request) -> ProjectStore:
    return request.app.state.projects


def get_plans(request: Request) -> PlanStore:
    return request.app.state.plans


def get_steps(request: Request) -> StepStore:
    return request.app.state.steps


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


async def get_project_id(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    projects: ProjectStore = Depends(get_projects),
) -> str:
    header = (request.headers.get("x-project-id") or "").strip()
    if header:
        return header
    if settings.default_project_id:
        return settings.default_project_id
    available = await projects.list()
    if not available:
        raise HTTPException(status_code=400, detail={"error": "no_project", "message": "No project available"})
    return available[0].id


def raise_for_result(result: EngineResult, subject: str) -> None:
    if result.ok:
        return
    status_code = ERROR_STATUS_CODES.get(result.status, 422)
    if result.status == "not_found":
        message = f"{subject} not found"
    elif result.status == "validation_error":
        message = f"Invalid {subject.lower()} data"
    else:
        message = ERROR_MESSAGES.get(result.status, result.status)
    raise HTTPException(
        status_code=status_code,
        detail={"error": result.status, "message": message, "details": result.details},
    )


def plan_json(plan: Plan) -> Dict[str, Any]:
    return plan.model_dump(mode="json")


def step_json(step: PlanStep) -> Dict[str, Any]:
    return step.model_dump(mode="json")


def _release_args(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"result": payload.get("result"), "metadata": payload.get("metadata")}


router = APIRouter()


@router.get("/api/projects")
async def list_projects(projects: ProjectStore = Depends(get_projects)):
    items = await projects.list()
    return {"projects": [p.model_dump() for p in items]}


@router.post("/api/projects", status_code=201)
async def create_project(payload: Dict[str, Any] = Body(...), projects: ProjectStore = Depends(get_projects)):
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise HTTPException(status_code=400, detail={"error": "missing_fields", "message": "Missing required field: name"})
    project = await projects.create(name, payload.get("description"))
    return {"project": project.model_dump()}


@router.get("/api/plans")
async def list_plans(
    title: Optional[str] = None,
    limit: Optional[int] = None,
    project_id: str = Depends(get_project_id),
    settings: AppSettings = Depends(get_settings),
    plans: PlanStore = Depends(get_plans),
):
    items = await plans.list_plans(project_id, title=title, limit=limit or settings.list_limit_default)
    return {"plans": [plan_json(p) for p in items]}


@router.post("/api/plans", status_code=201)
async def create_plan(
    payload: Dict[str, Any] = Body(...),
    project_id: str = Depends(get_project_id),
    plans: PlanStore = Depends(get_plans),
):
    if "title" not in payload or "body" not in payload:
        raise HTTPException(
            status_code=400,
            detail={"error": "missing_fields", "message": "Missing required fields: title, body"},
        )
    result = await plans.create_plan(
        project_id,
        payload["title"],
        payload["body"],
        tags=payload.get("tags"),
        files=payload.get("files"),
    )
    raise_for_result(result, "Plan")
    return {"plan": plan_json(result.plan)}


@router.get("/api/plans/titles")
async def list_plan_titles(project_id: str = Depends(get_project_id), plans: PlanStore = Depends(get_plans)):
    return {"titles": await plans.list_plan_titles(project_id)}


@router.get("/api/plans/{plan_id}")
async def get_plan(plan_id: str, plans: PlanStore = Depends(get_plans)):
    plan = await plans.get_plan(plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Plan not found"})
    return {"plan": plan_json(plan)}


@router.patch("/api/plans/{plan_id}")
async def update_plan(plan_id: str, payload: Dict[str, Any] = Body(...), plans: PlanStore = Depends(get_plans)):
    if "body" not in payload:
        raise HTTPException(status_code=400, detail={"error": "missing_fields", "message": "Missing required field: body"})
    result = await plans.update_plan(plan_id, payload["body"])
    raise_for_result(result, "Plan")
    return {"plan": plan_json(result.plan)}


@router.delete("/api/plans/{plan_id}")
async def delete_plan(plan_id: str, plans: PlanStore = Depends(get_plans)):
    result = await plans.delete_plan(plan_id)
    raise_for_result(result, "Plan")
    return {"ok": True}


@router.post("/api/plans/{plan_id}/next")
async def next_step(plan_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    """Claim the next pending step; contention is a 200 with status "locked"."""
    result = await scheduler.claim_next(plan_id)
    raise_for_result(result, "Plan")
    response: Dict[str, Any] = {"status": CLAIM_STATUSES[result.status]}
    if result.step is not None:
        response["step"] = step_json(result.step)
    return response


@router.get("/api/plans/{plan_id}/peek")
async def peek_next_step(plan_id: str, steps: StepStore = Depends(get_steps)):
    step = await steps.peek_next_step(plan_id)
    return {"step": step_json(step) if step else None}


@router.post("/api/plans/{plan_id}/pause")
async def pause_plan(plan_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    result = await scheduler.pause_plan(plan_id)
    raise_for_result(result, "Plan")
    return {"plan": plan_json(result.plan)}


@router.post("/api/plans/{plan_id}/resume")
async def resume_plan(plan_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    result = await scheduler.resume_plan(plan_id)
    raise_for_result(result, "Plan")
    return {"plan": plan_json(result.plan)}


@router.get("/api/plans/{plan_id}/events")
async def list_plan_events(plan_id: str, after_id: int = 0, plans: PlanStore = Depends(get_plans)):
    return {"events": await plans.list_events(plan_id, after_id=after_id)}


@router.get("/api/plans/{plan_id}/steps")
async def list_steps(plan_id: str, status: Optional[str] = None, steps: StepStore = Depends(get_steps)):
    items = await steps.list_steps(plan_id, status=status)
    return {"steps": [step_json(s) for s in items]}


@router.post("/api/plans/{plan_id}/steps", status_code=201)
async def add_step(plan_id: str, payload: Dict[str, Any] = Body(...), steps: StepStore = Depends(get_steps)):
    if "description" not in payload:
        raise HTTPException(
            status_code=400,
            detail={"error": "missing_fields", "message": "Missing required field: description"},
        )
    result = await steps.add_step(
        plan_id,
        payload["description"],
        step_number=payload.get("step_number"),
        after_step=payload.get("after_step"),
        created_by=payload.get("created_by") or "user",
        metadata=payload.get("metadata"),
    )
    raise_for_result(result, "Plan")
    return {"step": step_json(result.step)}


@router.get("/api/steps/{step_id}")
async def get_step(step_id: str, steps: StepStore = Depends(get_steps)):
    step = await steps.get_step(step_id)
    if not step:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Step not found"})
    return {"step": step_json(step)}


@router.patch("/api/steps/{step_id}")
async def update_step(step_id: str, payload: Dict[str, Any] = Body(...), scheduler: Scheduler = Depends(get_scheduler)):
    """Update status, result or metadata.

    ``completed`` and ``failed`` go through complete/fail so the plan is
    released or failed with the step.
    """
    attrs = {k: payload.get(k) for k in ("status", "result", "metadata") if payload.get(k) is not None}
    if not attrs:
        raise HTTPException(
            status_code=400,
            detail={"error": "missing_fields", "message": "No valid fields to update (status, result, metadata)"},
        )
    status = attrs.get("status")
    if status == "completed":
        result = await scheduler.complete_step(step_id, **_release_args(attrs))
    elif status == "failed":
        result = await scheduler.fail_step(step_id, **_release_args(attrs))
    else:
        result = await scheduler.update_step(step_id, **attrs)
    raise_for_result(result, "Step")
    return {"step": step_json(result.step)}


@router.post("/api/steps/{step_id}/defer")
async def defer_step(step_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    result = await scheduler.defer_step(step_id)
    raise_for_result(result, "Step")
    return {"step": step_json(result.step)}


@router.post("/api/steps/{step_id}/undefer")
async def undefer_step(step_id: str, scheduler: Scheduler = Depends(get_scheduler)):
    result = await scheduler.undefer_step(step_id)
    raise_for_result(result, "Step")
    return {"step": step_json(result.step)}


@router.post("/api/steps/{step_id}/outdated")
async def mark_step_outdated(
    step_id: str,
    payload: Optional[Dict[str, Any]] = Body(None),
    scheduler: Scheduler = Depends(get_scheduler),
):
    result = await scheduler.mark_step_outdated(step_id, **_release_args(payload or {}))
    raise_for_result(result, "Step")
    return {"step": step_json(result.step)}


def create_app(settings: AppSettings, *, db: Optional[Database] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        logger.info("StepStash database ready at %s", app.state.settings.database_path)
        yield

    app = FastAPI(title="StepStash Plan Engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path, settings.busy_timeout_s)
    app.state.projects = ProjectStore(settings.database_path, settings.busy_timeout_s)
    app.state.plans = PlanStore(settings.database_path, settings.busy_timeout_s)
    app.state.steps = StepStore(settings.database_path, settings.busy_timeout_s)
    app.state.scheduler = Scheduler(settings.database_path, settings.busy_timeout_s)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("STEPSTASH_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "stepstash.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
