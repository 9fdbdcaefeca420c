from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from autoflow.automation.models import Automation
from autoflow.core.errors import ExecutionError
from autoflow.integrations.messaging import MessageGateway, message_gateway
from autoflow.records.service import RecordService, record_service


logger = logging.getLogger("autoflow.automation.actions")


@dataclass(slots=True)
class ActionContext:
    session: Session
    automation: Automation
    item: dict[str, Any]
    now: datetime

    @property
    def user_id(self) -> str:
        return str(self.automation.user_id)


ActionHandler = Callable[[ActionContext, dict[str, Any]], dict[str, Any]]


@dataclass
class ActionRegistry:
    """Maps an action ``type`` to the handler that performs it.

    Handlers flagged ``external`` talk to a delivery provider and are run by
    the executor under a timeout; the rest work on the tenant's records in
    the caller's session.
    """

    handlers: dict[str, ActionHandler] = field(default_factory=dict)
    external: set[str] = field(default_factory=set)

    def register(self, name: str, handler: ActionHandler, *, external: bool = False) -> None:
        self.handlers[name] = handler
        if external:
            self.external.add(name)
        else:
            self.external.discard(name)

    def get(self, name: str) -> ActionHandler:
        handler = self.handlers.get(name)
        if handler is None:
            raise ExecutionError(f"unsupported action: {name}", details={"action": name})
        return handler

    def is_external(self, name: str) -> bool:
        return name in self.external

    def names(self) -> list[str]:
        return sorted(self.handlers)


def _nested(item: dict[str, Any], *path: str) -> Any:
    current: Any = item
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, "", [], {}):
            return value
    return None


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _client_id(item: dict[str, Any]) -> Any:
    return _first(item.get("client_id"), item.get("clientId"), _nested(item, "client", "id"))


def document_parameters(item: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    """Invoice/quote parameters derived from the item, overridden by config."""
    derived = _compact(
        {
            "clientId": _client_id(item),
            "lineItems": _first(item.get("line_items"), item.get("lineItems")),
            "description": item.get("description"),
            "taxRate": _first(item.get("tax_rate"), item.get("taxRate")),
        }
    )
    return {**derived, **config}


def time_entry_parameters(item: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    minutes = _first(item.get("duration_minutes"), item.get("durationMinutes"))
    derived = _compact(
        {
            "project": _first(item.get("project"), item.get("title")),
            "hours": _first(item.get("hours"), round(float(minutes) / 60, 2) if minutes else None),
            "date": _first(item.get("date"), item.get("entry_date")),
            "clientId": _client_id(item),
            "notes": _first(item.get("notes"), item.get("description")),
        }
    )
    return {**derived, **config}


def kilometer_parameters(item: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    derived = _compact(
        {
            "fromLocation": _first(item.get("from_location"), item.get("fromLocation")),
            "toLocation": _first(item.get("to_location"), item.get("toLocation"), item.get("location")),
            "distanceKm": _first(item.get("distance_km"), item.get("distanceKm")),
            "purpose": _first(item.get("purpose"), item.get("title")),
            "date": _first(item.get("date"), item.get("entry_date")),
            "clientId": _client_id(item),
        }
    )
    return {**derived, **config}


def build_default_registry(
    gateway: MessageGateway = message_gateway,
    records: RecordService = record_service,
) -> ActionRegistry:
    registry = ActionRegistry()

    def send_email(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        to = _first(config.get("to"), _nested(ctx.item, "client", "email"), ctx.item.get("email"))
        message_id = gateway.send_email(
            ctx.user_id,
            to=to,
            subject=config.get("subject") or "Automation",
            template=config.get("template"),
            context=ctx.item,
        )
        return {"message_id": message_id, "to": to}

    def send_whatsapp(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        to = _first(config.get("to"), _nested(ctx.item, "client", "phone"), ctx.item.get("phone"))
        message_id = gateway.send_whatsapp(ctx.user_id, to=to, message=config["message"], context=ctx.item)
        return {"message_id": message_id, "to": to}

    def create_calendar_event(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        message_id = gateway.create_calendar_event(
            ctx.user_id,
            title=config["title"],
            starts_at=config.get("startsAt"),
            duration_minutes=int(config.get("durationMinutes") or 60),
            context=ctx.item,
        )
        return {"event_id": message_id}

    def send_notification(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        data = {"automation_id": str(ctx.automation.id), "item": ctx.item}
        notification = records.create_notification(ctx.session, ctx.automation.user_id, config, data)
        return {"notification_id": notification["id"]}

    def create_invoice(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        invoice = records.create_invoice(ctx.session, ctx.automation.user_id, document_parameters(ctx.item, config))
        return {"invoice_id": invoice["id"], "number": invoice["number"]}

    def create_quote(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        quote = records.create_quote(ctx.session, ctx.automation.user_id, document_parameters(ctx.item, config))
        return {"quote_id": quote["id"], "number": quote["number"]}

    def create_time_entry(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        entry = records.add_time_entry(ctx.session, ctx.automation.user_id, time_entry_parameters(ctx.item, config))
        return {"time_entry_id": entry["id"]}

    def create_kilometer_entry(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        entry = records.add_kilometer(ctx.session, ctx.automation.user_id, kilometer_parameters(ctx.item, config))
        return {"kilometer_entry_id": entry["id"]}

    def update_invoice(ctx: ActionContext, config: dict[str, Any]) -> dict[str, Any]:
        invoice_id = _first(config.get("invoiceId"), ctx.item.get("id"))
        invoice = records.update_invoice(ctx.session, ctx.automation.user_id, invoice_id, config["fields"])
        return {"invoice_id": invoice["id"], "status": invoice["status"]}

    registry.register("send_email", send_email, external=True)
    registry.register("send_whatsapp", send_whatsapp, external=True)
    registry.register("create_calendar_event", create_calendar_event, external=True)
    registry.register("send_notification", send_notification)
    registry.register("create_invoice", create_invoice)
    registry.register("create_quote", create_quote)
    registry.register("create_time_entry", create_time_entry)
    registry.register("create_kilometer_entry", create_kilometer_entry)
    registry.register("update_invoice", update_invoice)
    return registry
