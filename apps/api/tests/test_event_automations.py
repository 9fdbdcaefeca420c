from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow import events
from autoflow.automation.actions import build_default_registry
from autoflow.automation.engine import AutomationEngine
from autoflow.automation.executor import AutomationExecutor
from autoflow.automation.models import Automation, AutomationRun
from autoflow.context import automation_scope
from autoflow.core.config import get_settings
from autoflow.core.database import Base
from autoflow.core.events import InternalEvent, event_bus
from autoflow.integrations.messaging import LoggingMessageGateway
from autoflow.records.models import AppUser, Client, Invoice, Quote
from autoflow.records.service import RecordService


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
    monkeypatch.setenv("WORKFLOW_MAX_DEPTH", "3")
    get_settings.cache_clear()
    event_bus.unsubscribe_all()
    events.published_events.clear()
    yield
    event_bus.unsubscribe_all()
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def engine() -> AutomationEngine:
    executor = AutomationExecutor(build_default_registry(LoggingMessageGateway(), RecordService()))
    return AutomationEngine(executor=executor)


@pytest.fixture()
def tenant(db_session: Session) -> tuple[AppUser, Client]:
    user = AppUser(email="chain@example.com", name="Chain")
    db_session.add(user)
    db_session.flush()
    client = Client(user_id=user.id, name="Acme BV", email="billing@acme.test")
    db_session.add(client)
    db_session.commit()
    return user, client


def _event_automation(db_session: Session, user: AppUser, event: str, action: str) -> Automation:
    automation = Automation(
        user_id=user.id,
        name=f"On {event}",
        category="quote" if event.startswith("quote") else "invoice",
        trigger_type="event",
        trigger_config={"event": event},
        actions=[{"type": action, "config": {}}],
        failure_policy="abort",
    )
    db_session.add(automation)
    db_session.commit()
    return automation


def _route_events_to(engine: AutomationEngine, db_session: Session, *event_types: str) -> None:
    def handler(event: InternalEvent) -> None:
        envelope: dict[str, Any] = event.payload
        meta = envelope.get("meta") or {}
        engine.handle_event(
            db_session,
            event.name,
            envelope["payload"],
            envelope["user_id"],
            depth=meta.get("workflow_depth"),
        )

    event_bus.subscribe_many(event_types, handler)


def _run_count(db_session: Session, automation: Automation) -> int:
    return db_session.scalar(
        select(func.count()).select_from(AutomationRun).where(AutomationRun.automation_id == automation.id)
    )


def _blocked() -> float:
    return REGISTRY.get_sample_value("automation_guardrail_blocks_total", {"reason": "max_depth"}) or 0.0


def test_event_at_max_depth_is_blocked(
    engine: AutomationEngine,
    db_session: Session,
    tenant: tuple[AppUser, Client],
) -> None:
    user, _ = tenant
    automation = _event_automation(db_session, user, "invoice.paid", "send_notification")
    before = _blocked()

    assert engine.handle_event(db_session, "invoice.paid", {}, str(user.id), depth=3) == []

    assert _run_count(db_session, automation) == 0
    assert _blocked() == before + 1


def test_event_below_max_depth_runs(engine: AutomationEngine, db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, _ = tenant
    automation = _event_automation(db_session, user, "invoice.paid", "send_notification")

    run_ids = engine.handle_event(db_session, "invoice.paid", {"id": "abc"}, str(user.id), depth=2)

    assert len(run_ids) == 1
    run = db_session.get(AutomationRun, run_ids[0])
    assert run is not None
    assert run.status == "succeeded"
    assert run.trigger_data == {"trigger": "event", "event": "invoice.paid"}
    assert _run_count(db_session, automation) == 1


def test_event_for_unknown_tenant_is_ignored(engine: AutomationEngine, db_session: Session) -> None:
    assert engine.handle_event(db_session, "invoice.paid", {}, "not-a-user") == []


def test_published_events_carry_depth() -> None:
    with automation_scope(2):
        envelope = events.publish_record_event("invoice.created", "user-1", {"id": "inv-1"})

    assert envelope["meta"] == {"workflow_depth": 2}
    assert events.published_events == [envelope]

    plain = events.publish_record_event("invoice.created", "user-1", {"id": "inv-2"})
    assert "meta" not in plain


def test_event_bus_deduplicates_and_unsubscribes() -> None:
    received: list[str] = []

    def handler(event: InternalEvent) -> None:
        received.append(event.name)

    unsubscribe = event_bus.subscribe("invoice.paid", handler)
    event_bus.subscribe("invoice.paid", handler)
    assert event_bus.handler_count("invoice.paid") == 1

    assert events.publish_record_event("invoice.paid", "user-1", {}) is not None
    assert received == ["invoice.paid"]

    unsubscribe()
    assert events.publish({"event_type": "invoice.paid", "user_id": "user-1", "payload": {}}) == 0
    assert received == ["invoice.paid"]


def test_quote_invoice_loop_stops_at_max_depth(
    engine: AutomationEngine,
    db_session: Session,
    tenant: tuple[AppUser, Client],
) -> None:
    user, client = tenant
    quote_to_invoice = _event_automation(db_session, user, "quote.created", "create_invoice")
    invoice_to_quote = _event_automation(db_session, user, "invoice.created", "create_quote")
    _route_events_to(engine, db_session, "quote.created", "invoice.created")
    before = _blocked()

    RecordService().create_quote(
        db_session,
        user.id,
        {"clientId": str(client.id), "description": "Website", "amount": 500, "taxRate": 21},
    )

    assert db_session.scalar(select(func.count()).select_from(Quote)) == 2
    assert db_session.scalar(select(func.count()).select_from(Invoice)) == 2
    assert _run_count(db_session, quote_to_invoice) == 2
    assert _run_count(db_session, invoice_to_quote) == 1
    assert _blocked() == before + 1

    depths = [event.get("meta", {}).get("workflow_depth") for event in events.published_events]
    assert depths == [None, 1, 2, 3]
    amounts = set(db_session.scalars(select(Invoice.amount)).all())
    assert amounts == {Decimal("605.00")}
