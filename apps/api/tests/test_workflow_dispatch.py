from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow import events
from autoflow.core.config import get_settings
from autoflow.core.database import Base, get_db
from autoflow.core.errors import ValidationError
from autoflow.core.events import event_bus
from autoflow.main import app
from autoflow.records.models import AppUser, Client, Invoice
from autoflow.service_accounts.credentials import display_prefix, generate_credential, hash_credential
from autoflow.service_accounts.models import ServiceAccount
from autoflow.services.audit import list_audit_logs
from autoflow.workflow.context import WorkflowContext
from autoflow.workflow.router import (
    WorkflowAction,
    WorkflowActionRegistry,
    WorkflowActionRouter,
    build_default_registry,
    is_permitted,
)


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
    event_bus.unsubscribe_all()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def tenant(db_session: Session) -> tuple[AppUser, Client]:
    user = AppUser(email="freelancer@example.com", name="Freelancer")
    db_session.add(user)
    db_session.flush()
    client = Client(user_id=user.id, name="Acme BV", email="billing@acme.test", tags=["vip"])
    db_session.add(client)
    db_session.commit()
    return user, client


def _context(user: AppUser, *permissions: str) -> WorkflowContext:
    return WorkflowContext(
        user_id=user.id,
        user_email=user.email,
        user_name=user.name,
        service_account_id=uuid.uuid4(),
        service_account_name="n8n",
        permissions=tuple(permissions),
    )


class SpyRegistry:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.registry = WorkflowActionRegistry()
        self.registry.register(
            WorkflowAction(
                name="create_invoice",
                permission="invoice.create",
                handler=self._handle,
                success_message=lambda data: "Invoice created successfully",
            )
        )

    def _handle(self, session: Session, parameters: dict[str, Any], ctx: WorkflowContext) -> dict[str, Any]:
        self.calls.append(parameters)
        if parameters.get("explode"):
            raise RuntimeError("database is on fire")
        if parameters.get("invalid"):
            raise ValidationError("clientId is required")
        return {"id": "inv-1"}


def test_permission_matching() -> None:
    action = build_default_registry().get("add_time_entry")
    assert action is not None

    assert is_permitted(("time_entry.create",), "add_time_entry", action)
    assert is_permitted(("add_time_entry",), "add_time_entry", action)
    assert is_permitted(("time.create",), "add_time_entry", action)
    assert is_permitted(("time_entry.*",), "add_time_entry", action)
    assert is_permitted(("*",), "add_time_entry", action)
    assert not is_permitted(("invoice.*",), "add_time_entry", action)
    assert not is_permitted((), "add_time_entry", action)


def test_missing_permission_never_reaches_handler(db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    spy = SpyRegistry()
    router = WorkflowActionRouter(spy.registry)

    result = router.dispatch(db_session, "create_invoice", {}, _context(tenant[0], "contacts.search"))

    assert result.success is False
    assert result.error == "Forbidden"
    assert result.status_code == 403
    assert spy.calls == []


def test_empty_permissions_deny_everything(db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    spy = SpyRegistry()

    result = WorkflowActionRouter(spy.registry).dispatch(db_session, "create_invoice", {}, _context(tenant[0]))

    assert result.error == "Forbidden"
    assert spy.calls == []


@pytest.mark.parametrize("grant", ["*", "invoice.*", "invoice.create", "create_invoice"])
def test_granted_action_runs(db_session: Session, tenant: tuple[AppUser, Client], grant: str) -> None:
    spy = SpyRegistry()

    result = WorkflowActionRouter(spy.registry).dispatch(db_session, "create_invoice", {"amount": 1}, _context(tenant[0], grant))

    assert result.success is True
    assert result.envelope() == {"success": True, "data": {"id": "inv-1"}, "message": "Invoice created successfully"}
    assert spy.calls == [{"amount": 1}]


def test_unknown_action(db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    router = WorkflowActionRouter(SpyRegistry().registry)

    granted = router.dispatch(db_session, "send_fax", {}, _context(tenant[0], "*"))
    not_granted = router.dispatch(db_session, "send_fax", {}, _context(tenant[0], "invoice.create"))

    assert granted.error == "UnsupportedAction"
    assert granted.status_code == 400
    assert granted.message is not None and "create_invoice" in granted.message
    assert not_granted.error == "Forbidden"


def test_handler_failures_are_enveloped(db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    router = WorkflowActionRouter(SpyRegistry().registry)
    ctx = _context(tenant[0], "*")

    invalid = router.dispatch(db_session, "create_invoice", {"invalid": True}, ctx)
    crashed = router.dispatch(db_session, "create_invoice", {"explode": True}, ctx)

    assert invalid.envelope() == {
        "success": False,
        "error": "clientId is required",
        "message": "Failed to execute action: create_invoice",
    }
    assert invalid.status_code == 400
    assert crashed.error == "InternalError"
    assert crashed.status_code == 500
    assert "database is on fire" not in (crashed.message or "")


def test_dispatch_is_audited(db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, _ = tenant
    router = WorkflowActionRouter(SpyRegistry().registry)
    ctx = _context(user, "invoice.create")

    router.dispatch(db_session, "get_quotes", {}, ctx)
    router.dispatch(db_session, "create_invoice", {}, ctx)

    rows = list_audit_logs(db_session, user_id=str(user.id), action="workflow.dispatch")
    assert [row.outcome for row in rows] == ["success", "forbidden"]
    assert {row.actor_type for row in rows} == {"service_account"}
    assert {row.actor_id for row in rows} == {str(ctx.service_account_id)}


def test_default_registry_creates_invoice(db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, client = tenant
    router = WorkflowActionRouter()

    result = router.dispatch(
        db_session,
        "invoice.create",
        {"clientId": str(client.id), "description": "Consulting", "amount": 100, "taxRate": 0},
        _context(user, "invoice.*"),
    )

    assert result.success is True
    assert result.data["number"].startswith("INV-")
    assert result.data["amount"] == 100.0
    assert result.data["tax_amount"] == 0.0
    assert result.data["client"]["name"] == "Acme BV"
    assert [event["event_type"] for event in events.published_events] == ["invoice.created"]


def test_default_registry_scopes_reads_to_tenant(db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, client = tenant
    stranger = AppUser(email="stranger@example.com")
    db_session.add(stranger)
    db_session.commit()
    router = WorkflowActionRouter()

    own = router.dispatch(db_session, "search_contacts", {"tag": "vip"}, _context(user, "contacts.search"))
    foreign = router.dispatch(db_session, "search_contacts", {}, _context(stranger, "contacts.search"))
    missing_client = router.dispatch(
        db_session,
        "create_invoice",
        {"clientId": str(client.id), "amount": 10},
        _context(stranger, "invoice.create"),
    )

    assert own.message == "Found 1 contacts"
    assert [row["name"] for row in own.data] == ["Acme BV"]
    assert foreign.data == []
    assert missing_client.error == "Client not found"
    assert db_session.scalar(select(Invoice).where(Invoice.user_id == stranger.id)) is None


def _service_account(db_session: Session, user: AppUser | None, permissions: list[str], **fields: Any) -> str:
    raw_key = generate_credential("af")
    owner = user or db_session.scalar(select(AppUser))
    db_session.add(
        ServiceAccount(
            name="n8n",
            owner_user_id=owner.id,
            user_id=user.id if user else None,
            key_prefix=display_prefix(raw_key),
            api_key_hash=hash_credential(raw_key),
            permissions=permissions,
            **fields,
        )
    )
    db_session.commit()
    return raw_key


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_dispatch_endpoint(client: TestClient, db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, contact = tenant
    raw_key = _service_account(db_session, user, ["invoice.create"])

    created = client.post(
        "/api/workflows/dispatch",
        headers={"X-API-Key": raw_key},
        json={"action": "create_invoice", "parameters": {"clientId": str(contact.id), "amount": 250}},
    )
    forbidden = client.post(
        "/api/workflows/dispatch",
        headers={"Authorization": f"Bearer {raw_key}"},
        json={"action": "get_quotes"},
    )

    assert created.status_code == 200
    assert created.json()["success"] is True
    assert created.json()["message"] == "Invoice created successfully"
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "Forbidden"


def test_dispatch_endpoint_rejects_bad_credentials(client: TestClient) -> None:
    missing = client.post("/api/workflows/dispatch", json={"action": "get_quotes"})
    invalid = client.post("/api/workflows/dispatch", headers={"X-API-Key": "af_wrong"}, json={"action": "get_quotes"})

    assert missing.status_code == 401
    assert missing.json() == {"success": False, "error": "Unauthorized", "message": "API key required"}
    assert invalid.status_code == 401
    assert invalid.json()["message"] == "Invalid API key"


def test_dispatch_endpoint_resolves_tenant(client: TestClient, db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, _ = tenant
    global_key = _service_account(db_session, None, ["quotes.list"])
    bound_key = _service_account(db_session, user, ["quotes.list"])
    other = AppUser(email="other@example.com")
    db_session.add(other)
    db_session.commit()

    ambiguous = client.post("/api/workflows/dispatch", headers={"X-API-Key": global_key}, json={"action": "get_quotes"})
    from_body = client.post(
        "/api/workflows/dispatch",
        headers={"X-API-Key": global_key},
        json={"action": "get_quotes", "userId": str(user.id)},
    )
    from_header = client.post(
        "/api/workflows/dispatch",
        headers={"X-API-Key": global_key, "x-user-id": str(user.id)},
        json={"action": "get_quotes"},
    )
    crossing = client.post(
        "/api/workflows/dispatch",
        headers={"X-API-Key": bound_key},
        params={"userId": str(other.id)},
        json={"action": "get_quotes"},
    )

    assert ambiguous.status_code == 400
    assert ambiguous.json()["error"] == "AmbiguousContext"
    assert from_body.status_code == 200
    assert from_body.json()["data"]["pagination"]["total"] == 0
    assert from_header.status_code == 200
    assert crossing.status_code == 403
    assert crossing.json()["error"] == "Forbidden"


def test_dispatch_endpoint_rate_limit(client: TestClient, db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, _ = tenant
    raw_key = _service_account(db_session, user, ["quotes.list"], rate_limit=1)

    first = client.post("/api/workflows/dispatch", headers={"X-API-Key": raw_key}, json={"action": "get_quotes"})
    second = client.post("/api/workflows/dispatch", headers={"X-API-Key": raw_key}, json={"action": "get_quotes"})

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["error"] == "RateLimited"
    assert int(second.headers["Retry-After"]) > 0


def test_actions_endpoint_lists_permitted_actions(client: TestClient, db_session: Session, tenant: tuple[AppUser, Client]) -> None:
    user, _ = tenant
    raw_key = _service_account(db_session, user, ["invoice.*", "ai.chat"])

    response = client.get("/api/workflows/actions", headers={"Authorization": f"ApiKey {raw_key}"})

    assert response.status_code == 200
    body = response.json()
    assert body["serviceAccount"]["userId"] == str(user.id)
    assert [action["name"] for action in body["actions"]] == ["ai_intent", "create_invoice"]
