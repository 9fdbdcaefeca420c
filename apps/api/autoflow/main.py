from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy import select

from autoflow.api.errors import autoflow_error_handler
from autoflow.api.routes import router as api_router
from autoflow.automation.engine import automation_engine
from autoflow.automation.service import automation_service
from autoflow.core.config import get_settings
from autoflow.core.database import SessionLocal, get_db
from autoflow.core.errors import AutoflowError
from autoflow.core.events import InternalEvent, event_bus
from autoflow.logging import configure_logging
from autoflow.middleware.correlation_id import CorrelationIdMiddleware
from autoflow.middleware.request_logging import RequestLoggingMiddleware
from autoflow.otel import get_fastapi_server_request_hook, setup_otel
from autoflow.records.models import AppUser


configure_logging()
logger = logging.getLogger("autoflow.lifecycle")

AUTOMATION_EVENT_TYPES = [
    "invoice.created",
    "invoice.updated",
    "invoice.paid",
    "quote.created",
    "quote.accepted",
    "time_entry.created",
    "kilometer.created",
    "contact.created",
    "calendar.event_created",
    "calendar.event_with_location",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_record_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    try:
        with _session_scope() as session:
            automation_engine.handle_event(
                session,
                event.name,
                payload,
                envelope.get("user_id"),
                depth=meta.get("workflow_depth"),
            )
    except Exception as exc:
        logger.exception("automation.event_dispatch_failed", extra={"event_type": event.name, "error": str(exc)[:500]})


def _seed_default_automations() -> None:
    with _session_scope() as session:
        user_ids = session.scalars(select(AppUser.id)).all()
        for user_id in user_ids:
            automation_service.seed_default_automations(session, user_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe_many(AUTOMATION_EVENT_TYPES, _on_record_event)
    if get_settings().auto_seed_default_automations:
        _seed_default_automations()
    event_bus.publish("system.started", {"service": "api"})
    yield
    automation_engine.executor.close()


app = FastAPI(title="Autoflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(AutoflowError, autoflow_error_handler)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
