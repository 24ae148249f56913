import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from .db import json_dumps, json_loads, record_event, utc_now
from .project_store import ProjectStore
from .schemas import EngineResult, Plan, PlanStatus

TITLE_MAX_LENGTH = 255


def _coerce_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    if value is None:
        return []
    return [str(value)]


def row_to_plan(row: aiosqlite.Row) -> Plan:
    return Plan(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        body=row["body"],
        tags=json_loads(row["tags_json"], []),
        files=json_loads(row["files_json"], []),
        status=PlanStatus(row["status"] or PlanStatus.IDLE.value),
        inserted_at=row["inserted_at"],
        updated_at=row["updated_at"],
    )


def validate_plan_fields(project_id: Any, title: Any, body: Any) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    if not project_id:
        errors["project_id"] = ["can't be blank"]
    if not isinstance(title, str) or not title:
        errors["title"] = ["can't be blank"]
    elif len(title) > TITLE_MAX_LENGTH:
        errors["title"] = [f"should be at most {TITLE_MAX_LENGTH} character(s)"]
    if not isinstance(body, str) or not body:
        errors["body"] = ["can't be blank"]
    return errors


class PlanStore:
    """Plain persistence for plans. Status changes belong to the scheduler."""

    def __init__(self, path: str, busy_timeout_s: float = 5.0):
        self.path = path
        self.busy_timeout_s = busy_timeout_s
        self.projects = ProjectStore(path, busy_timeout_s)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.path, timeout=self.busy_timeout_s)

    async def fetch(self, db: aiosqlite.Connection, plan_id: str) -> Optional[Plan]:
        cursor = await db.execute("SELECT * FROM plans WHERE id=?", (plan_id,))
        row = await cursor.fetchone()
        await cursor.close()
        return row_to_plan(row) if row else None

    async def create_plan(
        self,
        project_id: str,
        title: str,
        body: str,
        tags: Optional[List[str]] = None,
        files: Optional[List[str]] = None,
    ) -> EngineResult:
        errors = validate_plan_fields(project_id, title, body)
        if errors:
            return EngineResult.invalid(errors)
        plan_id = str(uuid.uuid4())
        created_at = utc_now()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            if not await self.projects.exists(db, project_id):
                await db.execute("ROLLBACK")
                return EngineResult.invalid({"project_id": ["does not exist"]})
            await db.execute(
                "INSERT INTO plans(id, project_id, title, body, tags_json, files_json, status, inserted_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    plan_id,
                    project_id,
                    title,
                    body,
                    json_dumps(_coerce_str_list(tags)),
                    json_dumps(_coerce_str_list(files)),
                    PlanStatus.IDLE.value,
                    created_at,
                    created_at,
                ),
            )
            plan = await self.fetch(db, plan_id)
            await record_event(db, plan_id, "plan_created", plan.model_dump(mode="json"))
            await db.commit()
        return EngineResult.success(plan=plan)

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            return await self.fetch(db, plan_id)

    async def get_plan_by_title(self, project_id: str, title: str) -> Optional[Plan]:
        """Newest plan with exactly this title in the project."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM plans WHERE project_id=? AND title=? ORDER BY inserted_at DESC, rowid DESC LIMIT 1",
                (project_id, title),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return row_to_plan(row) if row else None

    async def list_plans(
        self,
        project_id: str,
        title: Optional[str] = None,
        limit: int = 50,
    ) -> List[Plan]:
        clauses = ["project_id=?"]
        params: List[Any] = [project_id]
        if title is not None:
            clauses.append("title=?")
            params.append(title)
        where = " AND ".join(clauses)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM plans WHERE {where} ORDER BY inserted_at DESC, rowid DESC LIMIT ?",
                (*params, limit),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row_to_plan(row) for row in rows]

    async def list_plan_titles(self, project_id: str) -> List[str]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT DISTINCT title FROM plans WHERE project_id=? ORDER BY title ASC",
                (project_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]

    async def update_plan(self, plan_id: str, body: str) -> EngineResult:
        if not isinstance(body, str) or not body:
            return EngineResult.invalid({"body": ["can't be blank"]})
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "UPDATE plans SET body=?, updated_at=? WHERE id=?",
                (body, utc_now(), plan_id),
            )
            if cursor.rowcount == 0:
                await db.execute("ROLLBACK")
                return EngineResult.error("not_found")
            plan = await self.fetch(db, plan_id)
            await record_event(db, plan_id, "plan_updated", plan.model_dump(mode="json"))
            await db.commit()
        return EngineResult.success(plan=plan)

    async def delete_plan(self, plan_id: str) -> EngineResult:
        """Delete a plan and every step it owns."""
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("DELETE FROM plans WHERE id=?", (plan_id,))
            if cursor.rowcount == 0:
                await db.execute("ROLLBACK")
                return EngineResult.error("not_found")
            await db.execute("DELETE FROM plan_steps WHERE plan_id=?", (plan_id,))
            await record_event(db, plan_id, "plan_deleted", {"id": plan_id})
            await db.commit()
        return EngineResult.success()

    async def list_events(self, plan_id: str, after_id: int = 0, limit: int = 200) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT id, plan_id, event_type, payload_json, created_at FROM plan_events "
                "WHERE plan_id=? AND id>? ORDER BY id ASC LIMIT ?",
                (plan_id, after_id, limit),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [
            {
                "id": row["id"],
                "plan_id": row["plan_id"],
                "event_type": row["event_type"],
                "payload": json_loads(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
