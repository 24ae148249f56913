import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import httpx

from stepstash.config import load_settings
from stepstash.db import Database
from stepstash.project_store import ProjectStore

DEFAULT_API_BASE = "http://127.0.0.1:4001"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _headers(args: argparse.Namespace) -> Dict[str, str]:
    return {"X-Project-Id": args.project} if args.project else {}


def _print_step(step: Dict[str, Any]) -> None:
    print(f"Step {step.get('step_number')} ({step.get('id')})")
    print(f"  Status: {step.get('status')}")
    print(f"  Description: {step.get('description')}")
    if step.get("result"):
        print(f"  Result: {step.get('result')}")


def _print_error(action: str, resp: httpx.Response) -> None:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        detail = None
    message = detail.get("message") if isinstance(detail, dict) else detail
    suffix = f": {message}" if message else ""
    print(f"Failed to {action}: HTTP {resp.status_code}{suffix}")


def run_plan_next(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(
            _join_url(args.base_url, f"/api/plans/{args.plan_id}/next"),
            headers=_headers(args),
            timeout=10,
        )
        if resp.status_code >= 400:
            _print_error("claim next step", resp)
            return 1
        data = resp.json()
    status = data.get("status")
    if status == "next":
        _print_step(data.get("step") or {})
        return 0
    messages = {
        "complete": "Plan complete: no pending steps.",
        "locked": "Plan is locked: another step is in progress.",
        "not_active": "Plan is not active (paused, completed or failed).",
    }
    print(messages.get(status, f"Unexpected status: {status}"))
    # Contention is not a failure; callers decide whether to retry.
    return 0 if status in ("complete", "locked") else 2


def run_plan_steps(args: argparse.Namespace) -> int:
    params = {"status": args.status} if args.status else None
    with httpx.Client() as client:
        resp = client.get(
            _join_url(args.base_url, f"/api/plans/{args.plan_id}/steps"),
            params=params,
            headers=_headers(args),
            timeout=10,
        )
        if resp.status_code >= 400:
            _print_error("list steps", resp)
            return 1
        steps = resp.json().get("steps") or []
    if not steps:
        print("No steps found.")
        return 0
    for step in steps:
        print(f"{step['step_number']} | {step['status']} | {step['created_by']} | {step['id']} | {step['description'][:60]}")
    return 0


def _finish_step(args: argparse.Namespace, status: str) -> int:
    payload: Dict[str, Any] = {"status": status}
    if args.result:
        payload["result"] = args.result
    with httpx.Client() as client:
        resp = client.patch(
            _join_url(args.base_url, f"/api/steps/{args.step_id}"),
            json=payload,
            headers=_headers(args),
            timeout=10,
        )
        if resp.status_code >= 400:
            _print_error(f"mark step {status}", resp)
            return 1
        _print_step(resp.json().get("step") or {})
    return 0


def run_plan_complete(args: argparse.Namespace) -> int:
    return _finish_step(args, "completed")


def run_plan_fail(args: argparse.Namespace) -> int:
    return _finish_step(args, "failed")


async def _project_store(database_path: str) -> ProjectStore:
    await Database(database_path).init()
    return ProjectStore(database_path)


def run_project_new(args: argparse.Namespace) -> int:
    async def _run() -> int:
        store = await _project_store(args.database)
        project = await store.create(args.name, args.description)
        print(f"Created project {project.name}")
        print(f"  ID: {project.id}")
        return 0

    return asyncio.run(_run())


def run_project_list(args: argparse.Namespace) -> int:
    async def _run() -> int:
        store = await _project_store(args.database)
        projects = await store.list()
        if not projects:
            print("No projects yet.")
            return 0
        if args.json:
            print(json.dumps([p.model_dump() for p in projects], indent=2))
            return 0
        for project in projects:
            print(f"{project.id}  {project.name}")
        return 0

    return asyncio.run(_run())


def run_project_delete(args: argparse.Namespace) -> int:
    async def _run() -> int:
        store = await _project_store(args.database)
        if not await store.delete(args.project_id):
            print(f"Project not found: {args.project_id}")
            return 1
        print(f"Deleted project {args.project_id}")
        return 0

    return asyncio.run(_run())


def run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "stepstash.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser(settings_database: str = "stepstash.db") -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="StepStash CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--project", default=None, help="Project id sent as X-Project-Id")
    parser.add_argument("--database", default=settings_database, help="SQLite database path")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    project = subparsers.add_parser("project", help="Project management")
    project_sub = project.add_subparsers(dest="project_cmd")
    new = project_sub.add_parser("new", help="Create a project")
    new.add_argument("name")
    new.add_argument("--description", default=None)
    listing = project_sub.add_parser("list", help="List projects")
    listing.add_argument("--json", action="store_true", help="Print JSON")
    delete = project_sub.add_parser("delete", help="Delete a project and its plans")
    delete.add_argument("project_id")

    plan = subparsers.add_parser("plan", help="Plan execution")
    plan_sub = plan.add_subparsers(dest="plan_cmd")
    nxt = plan_sub.add_parser("next", help="Claim the next pending step")
    nxt.add_argument("plan_id")
    steps = plan_sub.add_parser("steps", help="List plan steps")
    steps.add_argument("plan_id")
    steps.add_argument("--status", default=None)
    complete = plan_sub.add_parser("complete", help="Complete the in-progress step")
    complete.add_argument("step_id")
    complete.add_argument("--result", default=None)
    fail = plan_sub.add_parser("fail", help="Fail the in-progress step")
    fail.add_argument("step_id")
    fail.add_argument("--result", default=None)

    return parser


COMMANDS = {
    ("serve", None): run_serve,
    ("project", "new"): run_project_new,
    ("project", "list"): run_project_list,
    ("project", "delete"): run_project_delete,
    ("plan", "next"): run_plan_next,
    ("plan", "steps"): run_plan_steps,
    ("plan", "complete"): run_plan_complete,
    ("plan", "fail"): run_plan_fail,
}


def main(argv: Optional[List[str]] = None) -> int:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser(settings.database_path)
    args = parser.parse_args(argv)
    sub = getattr(args, "project_cmd", None) or getattr(args, "plan_cmd", None)
    handler = COMMANDS.get((args.command, sub))
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
