from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow import events
from autoflow.core.auth import AuthUser, get_current_user, issue_token
from autoflow.core.config import get_settings
from autoflow.core.database import Base, get_db
from autoflow.main import app
from autoflow.models.audit import AuditLog
from autoflow.records.models import AppUser, TimeEntry


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_SEED_DEFAULT_AUTOMATIONS", "false")
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def user(db_session: Session) -> AppUser:
    row = AppUser(email="owner@example.com", name="Owner")
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def client(db_session: Session, user: AppUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub=str(user.id), roles=["user"], email=user.email)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _schedule_body(**overrides: object) -> dict[str, object]:
    body: dict[str, object] = {
        "name": "Weekly reminders",
        "category": "invoice",
        "trigger_type": "schedule",
        "trigger_config": {"schedule": "weekly", "time": "09:00", "day_of_week": "monday"},
        "conditions": {"invoiceStatus": "SENT", "daysOverdue": 14},
        "actions": [{"type": "send_email", "config": {"subject": "Reminder"}}],
    }
    body.update(overrides)
    return body


def _create(client: TestClient, body: dict[str, object]) -> dict:
    response = client.post("/api/automations", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_schedule_automation(client: TestClient, db_session: Session) -> None:
    created = _create(client, _schedule_body())

    assert created["enabled"] is True
    assert created["is_default"] is False
    assert created["next_run_at"] is not None
    assert created["trigger_config"]["schedule"] == "weekly"
    assert created["conditions"]["all"][1] == {"path": "due_date", "op": "lt", "value": {"days_from_now": -14}}

    audit = db_session.scalar(select(AuditLog).where(AuditLog.action == "automation.created"))
    assert audit is not None
    assert audit.entity_id == created["id"]


def test_create_rejects_invalid_definitions(client: TestClient) -> None:
    missing_trigger = client.post("/api/automations", json=_schedule_body(trigger_config=None))
    bad_time = client.post(
        "/api/automations",
        json=_schedule_body(trigger_config={"schedule": "daily", "time": "24:30"}),
    )
    no_actions = client.post("/api/automations", json=_schedule_body(actions=[]))

    assert missing_trigger.status_code == 422
    assert bad_time.status_code == 422
    assert no_actions.status_code == 422


def test_toggle_clears_and_restores_next_run(client: TestClient) -> None:
    created = _create(client, _schedule_body())

    disabled = client.post(f"/api/automations/{created['id']}/toggle")
    assert disabled.status_code == 200
    assert disabled.json()["enabled"] is False
    assert disabled.json()["next_run_at"] is None

    enabled = client.post(f"/api/automations/{created['id']}/toggle")
    assert enabled.status_code == 200
    assert enabled.json()["enabled"] is True
    assert enabled.json()["next_run_at"] is not None


def test_update_recomputes_schedule_and_validates(client: TestClient) -> None:
    created = _create(client, _schedule_body())

    renamed = client.patch(f"/api/automations/{created['id']}", json={"name": "Renamed"})
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Renamed"
    assert renamed.json()["next_run_at"] == created["next_run_at"]

    moved = client.patch(
        f"/api/automations/{created['id']}",
        json={"trigger_config": {"schedule": "daily", "time": "06:15"}},
    )
    assert moved.status_code == 200
    assert moved.json()["trigger_config"] == {"schedule": "daily", "time": "06:15"}
    assert moved.json()["next_run_at"] != created["next_run_at"]

    invalid = client.patch(
        f"/api/automations/{created['id']}",
        json={"trigger_config": {"schedule": "daily", "time": "99:99"}},
    )
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "validation_error"
    assert invalid.json()["details"][0]["field"] == "trigger_config"


def test_templates_are_listed_in_order(client: TestClient) -> None:
    response = client.get("/api/automations/templates")

    assert response.status_code == 200
    templates = response.json()
    assert [template["order"] for template in templates] == sorted(template["order"] for template in templates)
    assert templates[0]["id"] == "template-email-summary"
    reminder = next(template for template in templates if template["id"] == "template-invoice-reminder")
    assert reminder["default_conditions"] == {"invoiceStatus": "SENT", "daysOverdue": 7}


def test_seed_defaults_is_idempotent(client: TestClient) -> None:
    first = client.post("/api/automations/defaults")
    second = client.post("/api/automations/defaults")

    assert first.status_code == 200
    assert {row["template_id"] for row in first.json()} == {"template-email-summary", "template-agenda-summary"}
    assert all(row["is_default"] for row in first.json())
    assert second.status_code == 200
    assert second.json() == []

    defaults = client.get("/api/automations", params={"isDefault": "true"})
    assert len(defaults.json()) == 2


def test_deleting_default_only_disables_it(client: TestClient) -> None:
    seeded = client.post("/api/automations/defaults").json()
    default_id = seeded[0]["id"]

    response = client.delete(f"/api/automations/{default_id}")

    assert response.status_code == 200
    assert response.json() == {"id": default_id, "deleted": False, "disabled": True}
    fetched = client.get(f"/api/automations/{default_id}").json()
    assert fetched["enabled"] is False
    assert fetched["next_run_at"] is None


def test_deleting_custom_automation_removes_it(client: TestClient) -> None:
    created = _create(client, _schedule_body())

    response = client.delete(f"/api/automations/{created['id']}")
    assert response.status_code == 200
    assert response.json()["deleted"] is True

    missing = client.get(f"/api/automations/{created['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"
    assert missing.json()["message"] == "Automation not found"


def test_create_from_template_merges_overrides(client: TestClient) -> None:
    created = _create(
        client,
        {
            "name": "My reminders",
            "template_id": "template-invoice-reminder",
            "trigger_config": {"schedule": "daily", "time": "10:00", "timezone": "Europe/Amsterdam"},
        },
    )

    assert created["category"] == "invoice"
    assert created["template_id"] == "template-invoice-reminder"
    assert created["is_default"] is False
    assert created["actions"][0]["type"] == "send_email"
    assert created["conditions"]["all"][0] == {"path": "status", "op": "eq", "value": "SENT"}

    unknown = client.post("/api/automations", json={"name": "Nope", "template_id": "template-missing"})
    assert unknown.status_code == 404
    assert unknown.json()["message"] == "Template not found"


def test_test_endpoint_previews_without_recording_runs(client: TestClient) -> None:
    created = _create(
        client,
        {
            "name": "My reminders",
            "template_id": "template-invoice-reminder",
            "trigger_config": {"schedule": "daily", "time": "10:00"},
        },
    )

    preview = client.post(f"/api/automations/{created['id']}/test")

    assert preview.status_code == 200
    body = preview.json()
    assert body["would_trigger"] is False
    assert body["items_found"] == 0
    assert body["message"] == "Would run daily at 10:00 but no items match the conditions"
    assert body["actions_preview"][0]["supported"] is True

    runs = client.get(f"/api/automations/{created['id']}/runs").json()
    assert runs["pagination"]["total"] == 0


def test_event_endpoint_runs_matching_automations(client: TestClient, db_session: Session, user: AppUser) -> None:
    created = _create(
        client,
        {
            "name": "Calendar hours",
            "category": "time",
            "trigger_type": "event",
            "trigger_config": {"event": "calendar.event_created"},
            "actions": [{"type": "create_time_entry", "config": {}}],
        },
    )

    response = client.post(
        "/api/automations/events",
        json={
            "event": "calendar.event_created",
            "payload": {"title": "Design review", "duration_minutes": 120, "date": "2024-03-14"},
        },
    )

    assert response.status_code == 200
    assert len(response.json()["runs"]) == 1
    entry = db_session.scalar(select(TimeEntry).where(TimeEntry.user_id == user.id))
    assert entry is not None
    assert entry.project == "Design review"

    runs = client.get(f"/api/automations/{created['id']}/runs", params={"page": 1, "limit": 5})
    assert runs.status_code == 200
    page = runs.json()
    assert page["pagination"] == {"page": 1, "limit": 5, "total": 1, "pages": 1}
    assert page["runs"][0]["status"] == "succeeded"

    unrelated = client.post("/api/automations/events", json={"event": "invoice.paid", "payload": {}})
    assert unrelated.json()["runs"] == []


def test_other_tenants_automation_is_not_found(client: TestClient, db_session: Session) -> None:
    created = _create(client, _schedule_body())
    stranger = AppUser(email="stranger@example.com")
    db_session.add(stranger)
    db_session.commit()

    def as_stranger() -> AuthUser:
        return AuthUser(sub=str(stranger.id))

    app.dependency_overrides[get_current_user] = as_stranger

    assert client.get(f"/api/automations/{created['id']}").status_code == 404
    assert client.post(f"/api/automations/{created['id']}/toggle").status_code == 404
    assert client.get("/api/automations").json() == []
    assert client.get(f"/api/automations/{uuid.uuid4()}").status_code == 404


def test_requires_authentication(client: TestClient, user: AppUser) -> None:
    app.dependency_overrides.pop(get_current_user)

    response = client.get("/api/automations")
    forged = client.get("/api/automations", headers={"Authorization": "Bearer not-a-jwt"})
    signed = client.get("/api/automations", headers={"Authorization": f"Bearer {issue_token(str(user.id))}"})

    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"
    assert forged.status_code == 401
    assert forged.json()["message"] == "Invalid token"
    assert signed.status_code == 200
    assert signed.json() == []
