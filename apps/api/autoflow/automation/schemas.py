from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, model_validator

from autoflow.automation.triggers import parse_day_of_month, parse_day_of_week, parse_time_of_day, schedule_frequency


AutomationCategory = Literal["invoice", "quote", "time", "kilometer", "contact", "email", "calendar"]
TriggerType = Literal["schedule", "event"]
FailurePolicy = Literal["abort", "continue"]
ConditionOp = Literal["eq", "neq", "in", "contains", "gt", "gte", "lt", "lte", "exists"]


class ConditionLeaf(BaseModel):
    path: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None

    @model_validator(mode="after")
    def validate_value_token(self) -> "ConditionLeaf":
        if isinstance(self.value, dict):
            offset = self.value.get("days_from_now")
            if set(self.value) != {"days_from_now"} or isinstance(offset, bool) or not isinstance(offset, int):
                raise ValueError("object values must be {\"days_from_now\": <int>}")
        return self


class ConditionAll(BaseModel):
    all: list["Condition"] = Field(min_length=1)


class ConditionAny(BaseModel):
    any: list["Condition"] = Field(min_length=1)


class ConditionNot(BaseModel):
    not_: "Condition" = Field(alias="not")

    model_config = ConfigDict(populate_by_name=True)


Condition = ConditionLeaf | ConditionAll | ConditionAny | ConditionNot

ConditionAll.model_rebuild()
ConditionAny.model_rebuild()
ConditionNot.model_rebuild()


_LEGACY_KEYS = {"invoiceStatus", "daysOverdue", "status", "expired"}


def _legacy_condition_tree(category: str, conditions: dict[str, Any]) -> dict[str, Any]:
    leaves: list[dict[str, Any]] = []
    if category == "invoice":
        leaves.append({"path": "status", "op": "eq", "value": conditions.get("invoiceStatus") or "SENT"})
        days_overdue = conditions.get("daysOverdue")
        if days_overdue is not None:
            if isinstance(days_overdue, bool) or not isinstance(days_overdue, int) or days_overdue < 0:
                raise ValueError("daysOverdue must be a non-negative integer")
            leaves.append({"path": "due_date", "op": "lt", "value": {"days_from_now": -days_overdue}})
    elif category == "quote":
        if conditions.get("status"):
            leaves.append({"path": "status", "op": "eq", "value": conditions["status"]})
        if conditions.get("expired"):
            leaves.append({"path": "valid_until", "op": "lt", "value": {"days_from_now": 0}})
    else:
        raise ValueError(f"shorthand conditions are not supported for category '{category}'")
    if not leaves:
        raise ValueError("conditions must not be empty")
    return leaves[0] if len(leaves) == 1 else {"all": leaves}


def parse_condition(value: Any) -> Condition:
    if not isinstance(value, dict):
        raise ValueError("conditions must be an object")

    if "all" in value:
        items = value.get("all")
        if not isinstance(items, list) or not items:
            raise ValueError("all must be a non-empty list")
        return ConditionAll(all=[parse_condition(item) for item in items])

    if "any" in value:
        items = value.get("any")
        if not isinstance(items, list) or not items:
            raise ValueError("any must be a non-empty list")
        return ConditionAny(any=[parse_condition(item) for item in items])

    if "not" in value:
        return ConditionNot.model_validate({"not": parse_condition(value.get("not"))})

    return ConditionLeaf.model_validate(value)


def normalize_conditions(category: str, conditions: dict[str, Any] | None) -> dict[str, Any] | None:
    """Validate a stored condition blob, upgrading the old flat shorthand."""
    if not conditions:
        return None
    if not {"all", "any", "not", "path"} & set(conditions) and set(conditions) <= _LEGACY_KEYS:
        conditions = _legacy_condition_tree(category, conditions)
    return parse_condition(conditions).model_dump(by_alias=True)


class _ActionConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SendEmailConfig(_ActionConfig):
    to: str | None = None
    subject: str = "Automation"
    template: str | None = None


class SendWhatsAppConfig(_ActionConfig):
    to: str | None = None
    message: str = Field(min_length=1)


class SendNotificationConfig(_ActionConfig):
    type: str = "automation"
    title: str = "Automation Notification"
    message: str = "An automation has been executed"
    priority: Literal["low", "medium", "high"] = "medium"


class CreateCalendarEventConfig(_ActionConfig):
    title: str = Field(min_length=1)
    starts_at: str | None = Field(default=None, alias="startsAt")
    duration_minutes: int = Field(default=60, ge=1, alias="durationMinutes")


class UpdateInvoiceConfig(_ActionConfig):
    fields: dict[str, Any] = Field(min_length=1)


class RecordActionConfig(_ActionConfig):
    """Parameters merged over the fields derived from the current item."""


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    config: SendEmailConfig = Field(default_factory=SendEmailConfig)


class SendWhatsAppAction(BaseModel):
    type: Literal["send_whatsapp"]
    config: SendWhatsAppConfig


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"]
    config: SendNotificationConfig = Field(default_factory=SendNotificationConfig)


class CreateCalendarEventAction(BaseModel):
    type: Literal["create_calendar_event"]
    config: CreateCalendarEventConfig


class UpdateInvoiceAction(BaseModel):
    type: Literal["update_invoice"]
    config: UpdateInvoiceConfig


class CreateInvoiceAction(BaseModel):
    type: Literal["create_invoice"]
    config: RecordActionConfig = Field(default_factory=RecordActionConfig)


class CreateQuoteAction(BaseModel):
    type: Literal["create_quote"]
    config: RecordActionConfig = Field(default_factory=RecordActionConfig)


class CreateTimeEntryAction(BaseModel):
    type: Literal["create_time_entry"]
    config: RecordActionConfig = Field(default_factory=RecordActionConfig)


class CreateKilometerEntryAction(BaseModel):
    type: Literal["create_kilometer_entry"]
    config: RecordActionConfig = Field(default_factory=RecordActionConfig)


class GenericAction(BaseModel):
    """An action kind this release does not know; kept verbatim."""

    type: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)


AutomationAction = (
    SendEmailAction
    | SendWhatsAppAction
    | SendNotificationAction
    | CreateCalendarEventAction
    | UpdateInvoiceAction
    | CreateInvoiceAction
    | CreateQuoteAction
    | CreateTimeEntryAction
    | CreateKilometerEntryAction
    | GenericAction
)

ACTION_MODELS: dict[str, type[BaseModel]] = {
    "send_email": SendEmailAction,
    "send_whatsapp": SendWhatsAppAction,
    "send_notification": SendNotificationAction,
    "create_calendar_event": CreateCalendarEventAction,
    "update_invoice": UpdateInvoiceAction,
    "create_invoice": CreateInvoiceAction,
    "create_quote": CreateQuoteAction,
    "create_time_entry": CreateTimeEntryAction,
    "create_kilometer_entry": CreateKilometerEntryAction,
}


def parse_action(payload: Any) -> AutomationAction:
    if not isinstance(payload, dict):
        raise ValueError("each action must be an object")
    model = ACTION_MODELS.get(str(payload.get("type") or ""))
    if model is None:
        return GenericAction.model_validate(payload)
    return model.model_validate({"type": payload["type"], "config": payload.get("config") or {}})  # type: ignore[return-value]


def normalize_actions(actions: list[Any]) -> list[dict[str, Any]]:
    return [parse_action(item).model_dump(mode="json", by_alias=True, exclude_none=True) for item in actions]


def normalize_trigger_config(trigger_type: str, trigger_config: dict[str, Any]) -> dict[str, Any]:
    if trigger_type == "event":
        event = trigger_config.get("event")
        if not isinstance(event, str) or not event.strip():
            raise ValueError("event triggers need a non-empty 'event'")
        return {**trigger_config, "event": event.strip()}

    frequency = schedule_frequency(trigger_config)
    if frequency is None:
        raise ValueError("schedule must be one of daily, weekdays, weekly, monthly")
    if parse_time_of_day(trigger_config.get("time")) is None:
        raise ValueError("time must be HH:MM")
    if frequency == "weekly" and parse_day_of_week(trigger_config.get("day_of_week")) is None:
        raise ValueError("weekly schedules need day_of_week (0-6 or a weekday name)")
    if frequency == "monthly" and parse_day_of_month(trigger_config.get("day_of_month")) is None:
        raise ValueError("monthly schedules need day_of_month between 1 and 31")
    zone = trigger_config.get("timezone")
    if zone is not None:
        try:
            ZoneInfo(str(zone))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{zone}'") from exc
    normalized = {key: value for key, value in trigger_config.items() if key != "frequency"}
    normalized["schedule"] = frequency
    return normalized


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    category: AutomationCategory | None = None
    trigger_type: TriggerType | None = None
    trigger_config: dict[str, Any] | None = None
    conditions: dict[str, Any] | None = None
    actions: list[dict[str, Any]] = Field(default_factory=list)
    failure_policy: FailurePolicy = "abort"
    enabled: bool = True
    template_id: str | None = None

    @model_validator(mode="after")
    def validate_definition(self) -> "AutomationCreate":
        if self.template_id is None:
            if self.category is None or self.trigger_type is None or self.trigger_config is None:
                raise ValueError("category, trigger_type and trigger_config are required without a template")
            if not self.actions:
                raise ValueError("at least one action is required")
        if self.trigger_type is not None and self.trigger_config is not None:
            self.trigger_config = normalize_trigger_config(self.trigger_type, self.trigger_config)
        if self.category is not None:
            self.conditions = normalize_conditions(self.category, self.conditions)
        self.actions = normalize_actions(self.actions)
        return self


class AutomationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    trigger_config: dict[str, Any] | None = None
    conditions: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = Field(default=None, min_length=1)
    failure_policy: FailurePolicy | None = None
    enabled: bool | None = None

    @model_validator(mode="after")
    def validate_actions(self) -> "AutomationUpdate":
        if self.actions is not None:
            self.actions = normalize_actions(self.actions)
        return self


class AutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    name: str
    description: str | None
    category: str
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: dict[str, Any] | None
    actions: list[dict[str, Any]]
    failure_policy: str
    enabled: bool
    is_default: bool
    template_id: str | None
    next_run_at: datetime | None
    last_run_at: datetime | None
    run_count: int
    success_count: int
    error_count: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class AutomationRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    status: str
    started_at: datetime
    finished_at: datetime | None
    items_processed: int
    items_succeeded: int
    items_failed: int
    trigger_data: dict[str, Any] | None
    result_data: dict[str, Any] | None
    error_message: str | None
    execution_time_ms: int | None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class AutomationRunPage(BaseModel):
    runs: list[AutomationRunRead]
    pagination: Pagination


class AutomationPreview(BaseModel):
    automation: dict[str, Any]
    would_trigger: bool
    items_found: int
    actions_preview: list[dict[str, Any]] = Field(default_factory=list)
    message: str


class AutomationTemplateRead(BaseModel):
    id: str
    name: str
    description: str
    category: str
    trigger_type: str
    is_default: bool
    order: int
    default_trigger_config: dict[str, Any]
    default_actions: list[dict[str, Any]]
    default_conditions: dict[str, Any] | None = None
    config_fields: dict[str, Any] = Field(default_factory=dict)


class ScheduledRunResponse(BaseModel):
    success: bool
    processed: int
    timestamp: datetime


class AutomationEventRequest(BaseModel):
    event: str = Field(min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)


class AutomationEventResponse(BaseModel):
    event: str
    runs: list[UUID]
