from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from stepstash.config import AppSettings
from stepstash.db import Database
from stepstash.main import create_app
from stepstash.plan_store import PlanStore
from stepstash.project_store import ProjectStore
from stepstash.scheduler import Scheduler
from stepstash.step_store import StepStore


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=4001,
        busy_timeout_s=5.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def engine(tmp_path: Path):
    """Initialised database with one project and every store pointed at it."""
    db_path = str(tmp_path / "engine.db")
    db = Database(db_path)
    await db.init()
    projects = ProjectStore(db_path)
    project = await projects.create("Test Project")
    return SimpleNamespace(
        path=db_path,
        db=db,
        projects=projects,
        plans=PlanStore(db_path),
        steps=StepStore(db_path),
        scheduler=Scheduler(db_path),
        project_id=project.id,
    )


@pytest.fixture
def make_plan(engine):
    async def _make(title: str = "Plan", body: str = "Body", steps=()):
        result = await engine.plans.create_plan(engine.project_id, title, body)
        assert result.ok, result
        for description in steps:
            added = await engine.steps.add_step(result.plan.id, description)
            assert added.ok, added
        return result.plan

    return _make


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(**settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        return create_app(settings)

    return _factory


@pytest.fixture
async def client(app_factory):
    app = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            yield http_client
