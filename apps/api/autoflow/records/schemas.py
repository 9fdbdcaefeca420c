from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class _Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LineItemInput(_Params):
    description: str = Field(min_length=1)
    quantity: float = Field(ge=0.01)
    rate: float = Field(ge=0)
    amount: float = Field(ge=0)


class DocumentCreateParams(_Params):
    client_id: str | None = Field(default=None, alias="clientId")
    line_items: list[LineItemInput] | None = Field(default=None, alias="lineItems")
    description: str | None = None
    quantity: float | None = None
    amount: float | None = None
    tax_rate: float | None = Field(default=None, alias="taxRate", ge=0, le=100)

    def resolved_line_items(self) -> list[LineItemInput]:
        if self.line_items:
            return self.line_items
        amount = self.amount or 0
        return [
            LineItemInput(
                description=self.description or "Service",
                quantity=self.quantity or 1,
                rate=amount,
                amount=amount,
            )
        ]


class InvoiceCreateParams(DocumentCreateParams):
    due_date: date | None = Field(default=None, alias="dueDate")


class QuoteCreateParams(DocumentCreateParams):
    valid_until: date | None = Field(default=None, alias="validUntil")


class TimeEntryCreateParams(_Params):
    project: str | None = None
    project_name: str | None = Field(default=None, alias="projectName")
    hours: float | None = Field(default=None, gt=0)
    hour: float | None = Field(default=None, gt=0)
    entry_date: date | None = Field(default=None, alias="date")
    notes: str | None = None
    client_id: str | None = Field(default=None, alias="clientId")
    billable: bool = True


class KilometerCreateParams(_Params):
    from_location: str | None = Field(default=None, alias="fromLocation")
    from_: str | None = Field(default=None, alias="from")
    to_location: str | None = Field(default=None, alias="toLocation")
    to: str | None = None
    distance_km: float | None = Field(default=None, alias="distanceKm", gt=0)
    distance: float | None = Field(default=None, gt=0)
    purpose: str | None = None
    type: str = "zakelijk"
    notes: str | None = None
    is_billable: bool = Field(default=True, alias="isBillable")
    client_id: str | None = Field(default=None, alias="clientId")
    entry_date: date | None = Field(default=None, alias="date")


class ContactCreateParams(_Params):
    name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)


class ContactSearchParams(_Params):
    search: str | None = None
    tag: str | None = None


class DocumentListParams(_Params):
    status: str | None = None
    client_id: str | None = Field(default=None, alias="clientId")
    page: int = 1
    limit: int = 10

    @field_validator("page", "limit", mode="before")
    @classmethod
    def _coerce_positive(cls, value: Any) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            return 0
        return number

    def normalized(self) -> tuple[int, int]:
        page = self.page if self.page > 0 else 1
        limit = self.limit if self.limit > 0 else 10
        return page, min(limit, 100)


class ContextSearchParams(_Params):
    query: str | None = None
    search: str | None = None


class IntentParams(_Params):
    message: str | None = None
    conversation_history: list[dict[str, Any]] = Field(default_factory=list, alias="conversationHistory")


class NotificationParams(_Params):
    type: str = "automation"
    title: str = "Automation Notification"
    message: str = "An automation has been executed"
    priority: str = "medium"
