from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow import events
from autoflow.automation.actions import build_default_registry
from autoflow.automation.api import get_automation_engine
from autoflow.automation.engine import AutomationEngine
from autoflow.automation.executor import AutomationExecutor
from autoflow.automation.models import Automation, AutomationRun, utcnow
from autoflow.core.config import get_settings
from autoflow.core.database import Base, get_db
from autoflow.integrations.messaging import LoggingMessageGateway
from autoflow.main import app
from autoflow.records.models import AppUser
from autoflow.records.service import RecordService


@pytest.fixture()
def session_factory() -> Generator[Callable[[], Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("CRON_SECRET", "tick-secret")
    monkeypatch.setenv("AUTOMATION_MAX_WORKERS", "1")
    monkeypatch.setenv("AUTO_SEED_DEFAULT_AUTOMATIONS", "false")
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def client(session_factory: Callable[[], Session], db_session: Session) -> Generator[TestClient, None, None]:
    executor = AutomationExecutor(build_default_registry(LoggingMessageGateway(), RecordService()))
    engine = AutomationEngine(session_factory=session_factory, executor=executor)

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_automation_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def due_automation(db_session: Session) -> Automation:
    user = AppUser(email="cron@example.com")
    db_session.add(user)
    db_session.flush()
    automation = Automation(
        user_id=user.id,
        name="Daily summary",
        category="email",
        trigger_type="schedule",
        trigger_config={"schedule": "daily", "time": "07:00"},
        actions=[{"type": "send_notification", "config": {}}],
        next_run_at=utcnow() - timedelta(minutes=1),
    )
    db_session.add(automation)
    db_session.commit()
    return automation


def test_cron_requires_secret(client: TestClient, due_automation: Automation) -> None:
    missing = client.post("/api/cron/run-automations")
    wrong = client.post("/api/cron/run-automations", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json()["code"] == "unauthorized"
    assert wrong.status_code == 401


def test_cron_runs_due_automations(client: TestClient, db_session: Session, due_automation: Automation) -> None:
    headers = {"Authorization": "Bearer tick-secret"}
    scheduled_for = due_automation.next_run_at

    first = client.get("/api/cron/run-automations", headers=headers)
    second = client.post("/api/cron/run-automations", headers=headers)

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["processed"] == 1
    assert "timestamp" in first.json()
    assert second.json()["processed"] == 0

    db_session.expire_all()
    runs = db_session.scalars(select(AutomationRun).where(AutomationRun.automation_id == due_automation.id)).all()
    assert [run.status for run in runs] == ["succeeded"]
    assert db_session.get(Automation, due_automation.id).next_run_at > scheduled_for


def test_cron_is_open_without_secret(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("CRON_SECRET")
    get_settings.cache_clear()

    response = client.post("/api/cron/run-automations")

    assert response.status_code == 200
    assert response.json()["processed"] == 0


def test_beat_task_ticks_the_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    from autoflow.automation.engine import automation_engine
    from autoflow.core.celery_app import celery_app, run_scheduled_automations_task

    monkeypatch.setattr(automation_engine, "run_scheduled_automations", lambda: 3)

    assert run_scheduled_automations_task() == 3
    entry = celery_app.conf.beat_schedule["run-scheduled-automations"]
    assert entry["task"] == run_scheduled_automations_task.name
    assert entry["schedule"] == 60.0
