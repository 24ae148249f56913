import math
import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from .db import json_dumps, json_loads, record_event, utc_now
from .plan_store import PlanStore
from .schemas import CREATED_BY_VALUES, EngineResult, PlanStep, StepStatus


def row_to_step(row: aiosqlite.Row) -> PlanStep:
    return PlanStep(
        id=row["id"],
        plan_id=row["plan_id"],
        project_id=row["project_id"],
        step_number=float(row["step_number"]),
        description=row["description"],
        status=StepStatus(row["status"] or StepStatus.PENDING.value),
        created_by=row["created_by"] or "user",
        result=row["result"],
        metadata=json_loads(row["metadata_json"], {}),
        inserted_at=row["inserted_at"],
        updated_at=row["updated_at"],
    )


def _coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def validate_step_fields(
    description: Any,
    step_number: Any,
    after_step: Any,
    created_by: Any,
    metadata: Any,
) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    if not isinstance(description, str) or not description.strip():
        errors["description"] = ["can't be blank"]
    if step_number is not None and _coerce_number(step_number) is None:
        errors["step_number"] = ["is invalid"]
    if after_step is not None and _coerce_number(after_step) is None:
        errors["after_step"] = ["is invalid"]
    if created_by not in CREATED_BY_VALUES:
        errors["created_by"] = ["is invalid"]
    if metadata is not None and not isinstance(metadata, dict):
        errors["metadata"] = ["is invalid"]
    return errors


class StepStore:
    """Ordering and lookup primitives over the steps of a plan."""

    def __init__(self, path: str, busy_timeout_s: float = 5.0):
        self.path = path
        self.busy_timeout_s = busy_timeout_s
        self.plans = PlanStore(path, busy_timeout_s)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.path, timeout=self.busy_timeout_s)

    async def fetch(self, db: aiosqlite.Connection, step_id: str) -> Optional[PlanStep]:
        cursor = await db.execute("SELECT * FROM plan_steps WHERE id=?", (step_id,))
        row = await cursor.fetchone()
        await cursor.close()
        return row_to_step(row) if row else None

    async def fetch_by_number(
        self, db: aiosqlite.Connection, plan_id: str, step_number: float
    ) -> Optional[PlanStep]:
        cursor = await db.execute(
            "SELECT * FROM plan_steps WHERE plan_id=? AND step_number=?",
            (plan_id, step_number),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return row_to_step(row) if row else None

    async def fetch_next_pending(self, db: aiosqlite.Connection, plan_id: str) -> Optional[PlanStep]:
        cursor = await db.execute(
            "SELECT * FROM plan_steps WHERE plan_id=? AND status=? ORDER BY step_number ASC LIMIT 1",
            (plan_id, StepStatus.PENDING.value),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return row_to_step(row) if row else None

    async def count_in_progress(self, db: aiosqlite.Connection, plan_id: str) -> int:
        cursor = await db.execute(
            "SELECT COUNT(*) FROM plan_steps WHERE plan_id=? AND status=?",
            (plan_id, StepStatus.IN_PROGRESS.value),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return int(row[0] or 0)

    async def _next_step_number(self, db: aiosqlite.Connection, plan_id: str) -> float:
        cursor = await db.execute("SELECT MAX(step_number) FROM plan_steps WHERE plan_id=?", (plan_id,))
        row = await cursor.fetchone()
        await cursor.close()
        if row is None or row[0] is None:
            return 1.0
        return float(row[0]) + 1.0

    async def _midpoint_after(self, db: aiosqlite.Connection, plan_id: str, after_step: float) -> float:
        cursor = await db.execute(
            "SELECT step_number FROM plan_steps WHERE plan_id=? AND step_number>? ORDER BY step_number ASC LIMIT 1",
            (plan_id, after_step),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return after_step + 1.0
        return (after_step + float(row[0])) / 2

    async def _resolve_step_number(
        self,
        db: aiosqlite.Connection,
        plan_id: str,
        step_number: Optional[float],
        after_step: Optional[float],
    ) -> float:
        if step_number is not None:
            return step_number
        if after_step is not None:
            return await self._midpoint_after(db, plan_id, after_step)
        return await self._next_step_number(db, plan_id)

    async def add_step(
        self,
        plan_id: str,
        description: str,
        *,
        step_number: Optional[float] = None,
        after_step: Optional[float] = None,
        created_by: str = "user",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """Append or insert a pending step.

        An explicit ``step_number`` wins over ``after_step``. With
        ``after_step`` the new number is the midpoint between it and the next
        existing number, or ``after_step + 1.0`` when nothing follows. The
        number is computed and inserted in one write transaction, so two
        concurrent appends can never pick the same value.
        """
        errors = validate_step_fields(description, step_number, after_step, created_by, metadata)
        if errors:
            return EngineResult.invalid(errors)
        explicit = _coerce_number(step_number)
        after = _coerce_number(after_step)
        step_id = str(uuid.uuid4())
        created_at = utc_now()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            plan = await self.plans.fetch(db, plan_id)
            if plan is None:
                await db.execute("ROLLBACK")
                return EngineResult.error("not_found")
            number = await self._resolve_step_number(db, plan_id, explicit, after)
            if await self.fetch_by_number(db, plan_id, number) is not None:
                await db.execute("ROLLBACK")
                return EngineResult.invalid({"step_number": ["has already been taken"]})
            try:
                await db.execute(
                    "INSERT INTO plan_steps(id, plan_id, project_id, step_number, description, status, result, "
                    "created_by, metadata_json, inserted_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        step_id,
                        plan_id,
                        plan.project_id,
                        number,
                        description,
                        StepStatus.PENDING.value,
                        None,
                        created_by,
                        json_dumps(metadata or {}),
                        created_at,
                        created_at,
                    ),
                )
            except aiosqlite.IntegrityError:
                await db.execute("ROLLBACK")
                return EngineResult.invalid({"step_number": ["has already been taken"]})
            step = await self.fetch(db, step_id)
            await record_event(db, plan_id, "plan_step_created", step.model_dump(mode="json"))
            await db.commit()
        return EngineResult.success(step=step)

    async def get_step(self, step_id: str) -> Optional[PlanStep]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            return await self.fetch(db, step_id)

    async def get_step_by_number(self, plan_id: str, step_number: float) -> Optional[PlanStep]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            return await self.fetch_by_number(db, plan_id, float(step_number))

    async def peek_next_step(self, plan_id: str) -> Optional[PlanStep]:
        """Next pending step by number, without claiming it."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            return await self.fetch_next_pending(db, plan_id)

    async def list_steps(self, plan_id: str, status: Optional[str] = None) -> List[PlanStep]:
        clauses = ["plan_id=?"]
        params: List[Any] = [plan_id]
        if status is not None:
            clauses.append("status=?")
            params.append(status.value if isinstance(status, StepStatus) else str(status))
        where = " AND ".join(clauses)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM plan_steps WHERE {where} ORDER BY step_number ASC",
                tuple(params),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row_to_step(row) for row in rows]
