import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


async def record_event(
    db: aiosqlite.Connection,
    plan_id: str,
    event_type: str,
    payload: Dict[str, Any],
) -> None:
    """Append a plan event inside the caller's transaction."""
    await db.execute(
        "INSERT INTO plan_events(plan_id, event_type, payload_json, created_at) VALUES (?,?,?,?)",
        (plan_id, event_type, json_dumps(payload), utc_now()),
    )


class Database:
    def __init__(self, path: str, busy_timeout_s: float = 5.0):
        self.path = path
        self.busy_timeout_s = busy_timeout_s

    async def init(self) -> None:
        async with aiosqlite.connect(self.path, timeout=self.busy_timeout_s) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS projects(
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    inserted_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS plans(
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL,
                    tags_json TEXT,
                    files_json TEXT,
                    status TEXT NOT NULL DEFAULT 'idle',
                    inserted_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS plans_project_id_index ON plans(project_id);
                CREATE INDEX IF NOT EXISTS plans_title_index ON plans(title);
                CREATE TABLE IF NOT EXISTS plan_steps(
                    id TEXT PRIMARY KEY,
                    plan_id TEXT NOT NULL REFERENCES plans(id) ON DELETE CASCADE,
                    project_id TEXT NOT NULL,
                    step_number REAL NOT NULL,
                    description TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    result TEXT,
                    created_by TEXT NOT NULL DEFAULT 'user',
                    metadata_json TEXT,
                    inserted_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS plan_steps_plan_id_index ON plan_steps(plan_id);
                CREATE INDEX IF NOT EXISTS plan_steps_status_index ON plan_steps(status);
                CREATE UNIQUE INDEX IF NOT EXISTS plan_steps_plan_id_step_number_index
                    ON plan_steps(plan_id, step_number);
                CREATE UNIQUE INDEX IF NOT EXISTS plan_steps_single_in_progress_index
                    ON plan_steps(plan_id) WHERE status = 'in_progress';
                CREATE TABLE IF NOT EXISTS plan_events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    plan_id TEXT,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS plan_events_plan_id_index ON plan_events(plan_id);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            # Columns added after the first plans schema shipped.
            await ensure_column("plans", "files_json", "TEXT")
            await ensure_column("plans", "status", "TEXT NOT NULL DEFAULT 'idle'")
            await db.execute("UPDATE plans SET files_json=? WHERE files_json IS NULL", (json_dumps([]),))
            await db.execute("UPDATE plans SET tags_json=? WHERE tags_json IS NULL", (json_dumps([]),))
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path, timeout=self.busy_timeout_s) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path, timeout=self.busy_timeout_s) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None
