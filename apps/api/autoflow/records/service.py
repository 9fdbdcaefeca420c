from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar

import pydantic
from sqlalchemy.orm import Session

from autoflow import events
from autoflow.core.config import get_settings
from autoflow.core.errors import NotFoundError, ValidationError
from autoflow.records.models import Client, Invoice, KilometerEntry, Notification, Quote, TimeEntry
from autoflow.records.repository import (
    ClientRepository,
    InvoiceRepository,
    KilometerEntryRepository,
    NotificationRepository,
    QuoteRepository,
    TimeEntryRepository,
    record_to_dict,
    serialize_value,
)
from autoflow.records.schemas import (
    ContactCreateParams,
    ContactSearchParams,
    ContextSearchParams,
    DocumentCreateParams,
    DocumentListParams,
    InvoiceCreateParams,
    KilometerCreateParams,
    NotificationParams,
    QuoteCreateParams,
    TimeEntryCreateParams,
)


logger = logging.getLogger("autoflow.records")

ParamsT = TypeVar("ParamsT", bound=pydantic.BaseModel)

_CENT = Decimal("0.01")


def parse_params(model: type[ParamsT], parameters: dict[str, Any] | None) -> ParamsT:
    try:
        return model.model_validate(parameters or {})
    except pydantic.ValidationError as exc:
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        first = details[0] if details else {"field": "parameters", "message": "invalid"}
        raise ValidationError(f"{first['field']}: {first['message']}", details=details) from exc


def _money(value: Decimal | float | int) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def _client_summary(client: Client | None) -> dict[str, Any] | None:
    if client is None:
        return None
    return {"id": str(client.id), "name": client.name, "email": client.email, "company": client.company}


@dataclass(slots=True)
class DocumentTotals:
    line_items: list[dict[str, Any]]
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    amount: Decimal


@dataclass(slots=True)
class RecordService:
    client_repository: ClientRepository = ClientRepository()
    invoice_repository: InvoiceRepository = InvoiceRepository()
    quote_repository: QuoteRepository = QuoteRepository()
    time_entry_repository: TimeEntryRepository = TimeEntryRepository()
    kilometer_repository: KilometerEntryRepository = KilometerEntryRepository()
    notification_repository: NotificationRepository = NotificationRepository()

    def create_invoice(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        params = parse_params(InvoiceCreateParams, parameters)
        client = self._require_client(session, user_id, params.client_id)
        totals = self._totals(params)
        invoice = Invoice(
            user_id=user_id,
            client_id=client.id,
            number=self._next_number(session, user_id, "INV"),
            status="DRAFT",
            description=params.description,
            line_items=totals.line_items,
            subtotal=totals.subtotal,
            tax_rate=totals.tax_rate,
            tax_amount=totals.tax_amount,
            amount=totals.amount,
            due_date=params.due_date,
        )
        self.invoice_repository.add(session, invoice)
        session.commit()
        payload = self._document_payload(invoice)
        events.publish_record_event("invoice.created", str(user_id), payload)
        return payload

    def create_quote(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        params = parse_params(QuoteCreateParams, parameters)
        client = self._require_client(session, user_id, params.client_id)
        totals = self._totals(params)
        valid_until = params.valid_until or (date.today() + timedelta(days=get_settings().quote_validity_days))
        quote = Quote(
            user_id=user_id,
            client_id=client.id,
            number=self._next_number(session, user_id, "QUO"),
            status="DRAFT",
            description=params.description,
            line_items=totals.line_items,
            subtotal=totals.subtotal,
            tax_rate=totals.tax_rate,
            tax_amount=totals.tax_amount,
            amount=totals.amount,
            valid_until=valid_until,
        )
        self.quote_repository.add(session, quote)
        session.commit()
        payload = self._document_payload(quote)
        events.publish_record_event("quote.created", str(user_id), payload)
        return payload

    def add_time_entry(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        params = parse_params(TimeEntryCreateParams, parameters)
        project = params.project or params.project_name
        if not project:
            raise ValidationError("project is required", details=[{"field": "project", "message": "required"}])
        hours = params.hours or params.hour
        if not hours:
            raise ValidationError("hours is required", details=[{"field": "hours", "message": "required"}])
        client = self._optional_client(session, user_id, params.client_id)

        entry = TimeEntry(
            user_id=user_id,
            client_id=client.id if client else None,
            project=project,
            hours=_money(hours),
            entry_date=params.entry_date or date.today(),
            notes=params.notes,
            billable=params.billable,
        )
        self.time_entry_repository.add(session, entry)
        session.commit()
        payload = {**record_to_dict(entry), "client": _client_summary(client)}
        events.publish_record_event("time_entry.created", str(user_id), payload)
        return payload

    def add_kilometer(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        params = parse_params(KilometerCreateParams, parameters)
        from_location = params.from_location or params.from_
        to_location = params.to_location or params.to
        distance = params.distance_km or params.distance
        for field_name, value in (
            ("fromLocation", from_location),
            ("toLocation", to_location),
            ("distanceKm", distance),
            ("purpose", params.purpose),
        ):
            if not value:
                raise ValidationError(f"{field_name} is required", details=[{"field": field_name, "message": "required"}])
        client = self._optional_client(session, user_id, params.client_id)

        entry = KilometerEntry(
            user_id=user_id,
            client_id=client.id if client else None,
            entry_date=params.entry_date or date.today(),
            from_location=from_location,
            to_location=to_location,
            distance_km=_money(distance),  # type: ignore[arg-type]
            purpose=params.purpose,
            type=params.type,
            notes=params.notes,
            is_billable=params.is_billable,
        )
        self.kilometer_repository.add(session, entry)
        session.commit()
        payload = {**record_to_dict(entry), "client": _client_summary(client)}
        events.publish_record_event("kilometer.created", str(user_id), payload)
        return payload

    def create_contact(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        params = parse_params(ContactCreateParams, parameters)
        if not params.name or not params.name.strip():
            raise ValidationError("name is required", details=[{"field": "name", "message": "required"}])
        client = Client(
            user_id=user_id,
            name=params.name.strip(),
            email=params.email or None,
            phone=params.phone or None,
            company=params.company or None,
            position=params.position or None,
            notes=params.notes or None,
            tags=list(params.tags),
        )
        self.client_repository.add(session, client)
        session.commit()
        payload = record_to_dict(client)
        events.publish_record_event("contact.created", str(user_id), payload)
        return payload

    def search_contacts(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> list[dict[str, Any]]:
        params = parse_params(ContactSearchParams, parameters)
        if params.search:
            rows = self.client_repository.search(session, user_id, params.search)
        else:
            rows = self.client_repository.list(session, user_id, descending=False)
        if params.tag:
            rows = [row for row in rows if params.tag in (row.tags or [])]
        return [record_to_dict(row) for row in sorted(rows, key=lambda row: row.name.lower())]

    def list_invoices(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        return self._list_documents(session, user_id, parameters, self.invoice_repository, "invoices")

    def list_quotes(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        return self._list_documents(session, user_id, parameters, self.quote_repository, "quotes")

    def context_search(self, session: Session, user_id: uuid.UUID, parameters: dict[str, Any]) -> dict[str, Any]:
        params = parse_params(ContextSearchParams, parameters)
        query = params.query or params.search
        if not query:
            raise ValidationError("query is required", details=[{"field": "query", "message": "required"}])
        clients = self.client_repository.search(session, user_id, query, limit=5)
        invoices = self.invoice_repository.search(session, user_id, query, limit=5)
        quotes = self.quote_repository.search(session, user_id, query, limit=5)
        time_entries = self.time_entry_repository.search(session, user_id, query, limit=5)
        return {
            "clients": [_client_summary(row) for row in clients],
            "invoices": [self._document_brief(row) for row in invoices],
            "quotes": [self._document_brief(row) for row in quotes],
            "time_entries": [
                {
                    "id": str(row.id),
                    "project": row.project,
                    "hours": float(row.hours),
                    "date": row.entry_date.isoformat(),
                    "notes": row.notes,
                }
                for row in time_entries
            ],
            "total": len(clients) + len(invoices) + len(quotes) + len(time_entries),
        }

    def update_invoice(
        self,
        session: Session,
        user_id: uuid.UUID,
        invoice_id: Any,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        invoice = self.invoice_repository.get(session, user_id, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found")
        if not fields:
            raise ValidationError("fields is required", details=[{"field": "fields", "message": "required"}])
        try:
            before = self.invoice_repository.update_fields(invoice, fields)
        except ValueError as exc:
            raise ValidationError(str(exc), details=[{"field": "fields", "message": str(exc)}]) from exc
        if invoice.status == "PAID" and invoice.paid_at is None:
            invoice.paid_at = datetime.now(timezone.utc)
        session.commit()
        payload = self._document_payload(invoice)
        events.publish_record_event("invoice.updated", str(user_id), {**payload, "before": before})
        if before.get("status") != "PAID" and invoice.status == "PAID":
            events.publish_record_event("invoice.paid", str(user_id), payload)
        return payload

    def create_notification(
        self,
        session: Session,
        user_id: uuid.UUID,
        config: dict[str, Any],
        data: dict[str, Any] | None,
    ) -> dict[str, Any]:
        params = parse_params(NotificationParams, config)
        notification = Notification(
            user_id=user_id,
            type=params.type,
            title=params.title,
            message=params.message,
            data=serialize_value(data) if data else None,
            priority=params.priority,
        )
        self.notification_repository.add(session, notification)
        session.commit()
        return record_to_dict(notification)

    def _list_documents(
        self,
        session: Session,
        user_id: uuid.UUID,
        parameters: dict[str, Any],
        repository: InvoiceRepository | QuoteRepository,
        key: str,
    ) -> dict[str, Any]:
        params = parse_params(DocumentListParams, parameters)
        page, limit = params.normalized()
        filters: dict[str, Any] = {"status": params.status}
        if params.client_id:
            client = self.client_repository.get(session, user_id, params.client_id)
            if client is None:
                return {key: [], "pagination": {"page": page, "limit": limit, "total": 0, "pages": 0}}
            filters["client_id"] = client.id
        rows = repository.list(session, user_id, filters=filters, offset=(page - 1) * limit, limit=limit)
        total = repository.count(session, user_id, filters=filters)
        return {
            key: [self._document_payload(row) for row in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    def _require_client(self, session: Session, user_id: uuid.UUID, client_id: str | None) -> Client:
        if not client_id:
            raise ValidationError("clientId is required", details=[{"field": "clientId", "message": "required"}])
        client = self.client_repository.get(session, user_id, client_id)
        if client is None:
            raise NotFoundError("Client not found")
        return client

    def _optional_client(self, session: Session, user_id: uuid.UUID, client_id: str | None) -> Client | None:
        if not client_id:
            return None
        return self._require_client(session, user_id, client_id)

    def _totals(self, params: DocumentCreateParams) -> DocumentTotals:
        items = params.resolved_line_items()
        subtotal = _money(sum((Decimal(str(item.amount)) for item in items), start=Decimal("0")))
        tax_rate = Decimal(str(params.tax_rate if params.tax_rate is not None else get_settings().default_tax_rate))
        tax_amount = _money(subtotal * tax_rate / Decimal("100"))
        return DocumentTotals(
            line_items=[item.model_dump() for item in items],
            subtotal=subtotal,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            amount=_money(subtotal + tax_amount),
        )

    def _next_number(self, session: Session, user_id: uuid.UUID, prefix: str) -> str:
        number_prefix = f"{prefix}-{date.today().year}-"
        repository = self.invoice_repository if prefix == "INV" else self.quote_repository
        count = repository.count_numbers_with_prefix(session, user_id, number_prefix)
        return f"{number_prefix}{count + 1:03d}"

    def _document_payload(self, document: Invoice | Quote) -> dict[str, Any]:
        return {**record_to_dict(document), "client": _client_summary(document.client)}

    def _document_brief(self, document: Invoice | Quote) -> dict[str, Any]:
        return {
            "id": str(document.id),
            "number": document.number,
            "amount": float(document.amount),
            "status": document.status,
            "description": document.description,
        }


record_service = RecordService()
