from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from autoflow import events
from autoflow.core.auth import AuthUser, get_current_user
from autoflow.core.config import get_settings
from autoflow.core.database import Base, get_db
from autoflow.main import app
from autoflow.otel import setup_inmemory_otel
from autoflow.records.models import AppUser
from autoflow.service_accounts.credentials import display_prefix, generate_credential, hash_credential
from autoflow.service_accounts.models import ServiceAccount


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def user(db_session: Session) -> AppUser:
    row = AppUser(email="otel@example.com", name="OTel")
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def client(db_session: Session, user: AppUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub=str(user.id))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/automations/templates", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_execute_span_contains_automation_and_correlation(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    created = client.post(
        "/api/automations",
        json={
            "name": "Traced automation",
            "category": "invoice",
            "trigger_type": "event",
            "trigger_config": {"event": "invoice.paid"},
            "actions": [{"type": "send_notification", "config": {}}],
        },
    )
    assert created.status_code == 201

    fired = client.post(
        "/api/automations/events",
        json={"event": "invoice.paid", "payload": {"id": "inv-1"}},
        headers={"X-Correlation-Id": "otel-run-corr-1"},
    )
    assert fired.status_code == 200

    spans = span_exporter.get_finished_spans()
    execute_spans = [span for span in spans if span.name == "automation.execute"]
    assert execute_spans
    assert any(
        span.attributes.get("automation.id") == created.json()["id"]
        and span.attributes.get("automation.mode") == "live"
        and span.attributes.get("correlation_id") == "otel-run-corr-1"
        for span in execute_spans
    )
    assert any(span.name == "automation.action" and span.attributes.get("automation.action") == "send_notification" for span in spans)


def test_dispatch_span_records_outcome(
    client: TestClient,
    db_session: Session,
    user: AppUser,
    span_exporter: InMemorySpanExporter,
) -> None:
    raw_key = generate_credential("af")
    db_session.add(
        ServiceAccount(
            name="n8n",
            owner_user_id=user.id,
            user_id=user.id,
            key_prefix=display_prefix(raw_key),
            api_key_hash=hash_credential(raw_key),
            permissions=["*"],
        )
    )
    db_session.commit()

    response = client.post("/api/workflows/dispatch", json={"action": "get_invoices"}, headers={"X-API-Key": raw_key})
    assert response.status_code == 200

    dispatch_spans = [span for span in span_exporter.get_finished_spans() if span.name == "workflow.dispatch"]
    assert dispatch_spans
    assert dispatch_spans[-1].attributes.get("workflow.action") == "get_invoices"
    assert dispatch_spans[-1].attributes.get("workflow.user_id") == str(user.id)
    assert dispatch_spans[-1].attributes.get("workflow.outcome") == "success"
