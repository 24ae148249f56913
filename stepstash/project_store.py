import uuid
from typing import List, Optional

import aiosqlite

from .db import utc_now
from .schemas import Project


def row_to_project(row: aiosqlite.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        inserted_at=row["inserted_at"],
        updated_at=row["updated_at"],
    )


class ProjectStore:
    """Tenant scope rows. Plans and steps hang off a project id."""

    def __init__(self, path: str, busy_timeout_s: float = 5.0):
        self.path = path
        self.busy_timeout_s = busy_timeout_s

    async def create(self, name: str, description: Optional[str] = None) -> Project:
        name = (name or "").strip()
        if not name:
            raise ValueError("Project name is required.")
        project_id = str(uuid.uuid4())
        created_at = utc_now()
        async with aiosqlite.connect(self.path, timeout=self.busy_timeout_s) as db:
            await db.execute(
                "INSERT INTO projects(id, name, description, inserted_at, updated_at) VALUES (?,?,?,?,?)",
                (project_id, name, description, created_at, created_at),
            )
            await db.commit()
        return Project(
            id=project_id,
            name=name,
            description=description,
            inserted_at=created_at,
            updated_at=created_at,
        )

    async def get(self, project_id: str) -> Optional[Project]:
        async with aiosqlite.connect(self.path, timeout=self.busy_timeout_s) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM projects WHERE id=?", (project_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return row_to_project(row) if row else None

    async def exists(self, db: aiosqlite.Connection, project_id: str) -> bool:
        cursor = await db.execute("SELECT 1 FROM projects WHERE id=?", (project_id,))
        row = await cursor.fetchone()
        await cursor.close()
        return row is not None

    async def list(self) -> List[Project]:
        async with aiosqlite.connect(self.path, timeout=self.busy_timeout_s) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM projects ORDER BY inserted_at ASC, rowid ASC")
            rows = await cursor.fetchall()
            await cursor.close()
        return [row_to_project(row) for row in rows]

    async def delete(self, project_id: str) -> bool:
        """Delete a project together with its plans and their steps."""
        async with aiosqlite.connect(self.path, timeout=self.busy_timeout_s) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("DELETE FROM projects WHERE id=?", (project_id,))
            if cursor.rowcount == 0:
                await db.execute("ROLLBACK")
                return False
            await db.execute(
                "DELETE FROM plan_steps WHERE plan_id IN (SELECT id FROM plans WHERE project_id=?)",
                (project_id,),
            )
            await db.execute("DELETE FROM plans WHERE project_id=?", (project_id,))
            await db.commit()
        return True
