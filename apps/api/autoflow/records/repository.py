from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Generic, TypeVar

from sqlalchemy import JSON, Select, func, inspect, or_, select
from sqlalchemy.orm import Session

from autoflow.core.database import Base
from autoflow.records.models import AppUser, Client, Invoice, KilometerEntry, Notification, Quote, TimeEntry


ModelT = TypeVar("ModelT", bound=Base)


def parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        return None


def serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def record_to_dict(record: Base) -> dict[str, Any]:
    mapper = inspect(record.__class__)
    return {attr.key: serialize_value(getattr(record, attr.key)) for attr in mapper.column_attrs}


class RecordRepository(Generic[ModelT]):
    """Tenant-scoped access to one record table.

    Every query is filtered on ``user_id`` so a handler can never read or
    write another tenant's rows.
    """

    model: type[ModelT]
    resource = ""
    search_fields: tuple[str, ...] = ()
    writable_fields: frozenset[str] = frozenset()
    default_order: tuple[str, ...] = ("created_at",)

    def scoped(self, user_id: uuid.UUID) -> Select[tuple[ModelT]]:
        return select(self.model).where(self.model.user_id == user_id)  # type: ignore[attr-defined]

    def get(self, session: Session, user_id: uuid.UUID, record_id: Any) -> ModelT | None:
        parsed = parse_uuid(record_id)
        if parsed is None:
            return None
        return session.scalar(self.scoped(user_id).where(self.model.id == parsed))  # type: ignore[attr-defined]

    def list(
        self,
        session: Session,
        user_id: uuid.UUID,
        *,
        filters: dict[str, Any] | None = None,
        offset: int = 0,
        limit: int | None = None,
        descending: bool = True,
    ) -> list[ModelT]:
        stmt = self._apply_filters(self.scoped(user_id), filters)
        for column_name in self.default_order:
            column = getattr(self.model, column_name)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).unique().all())

    def count(self, session: Session, user_id: uuid.UUID, *, filters: dict[str, Any] | None = None) -> int:
        stmt = self._apply_filters(self.scoped(user_id), filters)
        return int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)

    def search(self, session: Session, user_id: uuid.UUID, term: str, *, limit: int | None = None) -> list[ModelT]:
        pattern = f"%{term.lower()}%"
        clauses = [func.lower(getattr(self.model, name)).like(pattern) for name in self.search_fields]
        stmt = self.scoped(user_id)
        if clauses:
            stmt = stmt.where(or_(*clauses))
        for column_name in self.default_order:
            stmt = stmt.order_by(getattr(self.model, column_name).desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).unique().all())

    def add(self, session: Session, record: ModelT) -> ModelT:
        session.add(record)
        session.flush()
        return record

    def update_fields(self, record: ModelT, fields: dict[str, Any]) -> dict[str, Any]:
        rejected = sorted(key for key in fields if key not in self.writable_fields)
        if rejected:
            raise ValueError(f"fields not writable on {self.resource}: {', '.join(rejected)}")
        coerced = {key: self._coerce(key, value) for key, value in fields.items()}
        before = {key: serialize_value(getattr(record, key)) for key in coerced}
        for key, value in coerced.items():
            setattr(record, key, value)
        return before

    def _coerce(self, field_name: str, value: Any) -> Any:
        column = inspect(self.model).columns[field_name]
        if value is None or isinstance(column.type, JSON):
            return value
        python_type = column.type.python_type
        if isinstance(value, python_type):
            return value
        if python_type is datetime:
            return datetime.fromisoformat(str(value))
        if python_type is date:
            return date.fromisoformat(str(value))
        if python_type is Decimal:
            try:
                return Decimal(str(value))
            except InvalidOperation as exc:
                raise ValueError(f"invalid number for {field_name}") from exc
        if python_type is bool:
            if isinstance(value, str) and value.lower() in {"true", "false"}:
                return value.lower() == "true"
            raise ValueError(f"invalid boolean for {field_name}")
        return python_type(value)

    def _apply_filters(self, stmt: Select[tuple[ModelT]], filters: dict[str, Any] | None) -> Select[tuple[ModelT]]:
        for key, value in (filters or {}).items():
            if value is None:
                continue
            stmt = stmt.where(getattr(self.model, key) == value)
        return stmt


class UserRepository:
    def get(self, session: Session, user_id: Any) -> AppUser | None:
        parsed = parse_uuid(user_id)
        if parsed is None:
            return None
        return session.get(AppUser, parsed)


class ClientRepository(RecordRepository[Client]):
    model = Client
    resource = "client"
    search_fields = ("name", "email", "company", "phone")
    writable_fields = frozenset({"name", "email", "phone", "company", "position", "notes", "tags"})
    default_order = ("name",)


class InvoiceRepository(RecordRepository[Invoice]):
    model = Invoice
    resource = "invoice"
    search_fields = ("number", "description")
    writable_fields = frozenset({"status", "description", "due_date", "paid_at"})

    def count_numbers_with_prefix(self, session: Session, user_id: uuid.UUID, prefix: str) -> int:
        stmt = select(func.count()).select_from(Invoice).where(Invoice.user_id == user_id, Invoice.number.like(f"{prefix}%"))
        return int(session.scalar(stmt) or 0)


class QuoteRepository(RecordRepository[Quote]):
    model = Quote
    resource = "quote"
    search_fields = ("number", "description")
    writable_fields = frozenset({"status", "description", "valid_until"})

    def count_numbers_with_prefix(self, session: Session, user_id: uuid.UUID, prefix: str) -> int:
        stmt = select(func.count()).select_from(Quote).where(Quote.user_id == user_id, Quote.number.like(f"{prefix}%"))
        return int(session.scalar(stmt) or 0)


class TimeEntryRepository(RecordRepository[TimeEntry]):
    model = TimeEntry
    resource = "time_entry"
    search_fields = ("project", "notes")
    writable_fields = frozenset({"project", "hours", "notes", "billable"})
    default_order = ("entry_date",)


class KilometerEntryRepository(RecordRepository[KilometerEntry]):
    model = KilometerEntry
    resource = "kilometer_entry"
    search_fields = ("from_location", "to_location", "purpose")
    writable_fields = frozenset({"purpose", "notes", "is_billable"})
    default_order = ("entry_date",)


class NotificationRepository(RecordRepository[Notification]):
    model = Notification
    resource = "notification"
    writable_fields = frozenset({"read"})
