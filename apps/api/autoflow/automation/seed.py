from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class AutomationTemplate:
    id: str
    name: str
    description: str
    category: str
    trigger_type: str
    order: int
    default_trigger_config: dict[str, Any]
    default_actions: list[dict[str, Any]]
    default_conditions: dict[str, Any] | None = None
    is_default: bool = False
    config_fields: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "trigger_type": self.trigger_type,
            "is_default": self.is_default,
            "order": self.order,
            "default_trigger_config": dict(self.default_trigger_config),
            "default_actions": [dict(action) for action in self.default_actions],
            "default_conditions": dict(self.default_conditions) if self.default_conditions else None,
            "config_fields": dict(self.config_fields),
        }


TEMPLATES: tuple[AutomationTemplate, ...] = (
    AutomationTemplate(
        id="template-email-summary",
        name="Daily email summary",
        description="Get a summary of unread email every morning",
        category="email",
        trigger_type="schedule",
        order=1,
        is_default=True,
        default_trigger_config={"schedule": "daily", "time": "08:00", "timezone": "Europe/Amsterdam"},
        default_actions=[
            {
                "type": "send_notification",
                "config": {"title": "Email summary", "message": "Your daily email overview is ready"},
            }
        ],
        config_fields={"time": "08:00"},
    ),
    AutomationTemplate(
        id="template-agenda-summary",
        name="Agenda overview",
        description="Get an overview of today's appointments every morning",
        category="calendar",
        trigger_type="schedule",
        order=2,
        is_default=True,
        default_trigger_config={"schedule": "daily", "time": "07:30", "timezone": "Europe/Amsterdam"},
        default_actions=[
            {
                "type": "send_notification",
                "config": {"title": "Agenda overview", "message": "Your agenda for today"},
            }
        ],
        config_fields={"time": "07:30"},
    ),
    AutomationTemplate(
        id="template-invoice-reminder",
        name="Invoice reminders",
        description="Send reminders for outstanding invoices",
        category="invoice",
        trigger_type="schedule",
        order=3,
        default_trigger_config={"schedule": "daily", "time": "09:00", "timezone": "Europe/Amsterdam"},
        default_conditions={"invoiceStatus": "SENT", "daysOverdue": 7},
        default_actions=[
            {
                "type": "send_email",
                "config": {"template": "friendly", "subject": "Reminder: outstanding invoice"},
            }
        ],
        config_fields={"daysOverdue": 7, "time": "09:00"},
    ),
    AutomationTemplate(
        id="template-quote-to-invoice",
        name="Quote to invoice",
        description="Create an invoice as soon as a quote is accepted",
        category="quote",
        trigger_type="event",
        order=4,
        default_trigger_config={"event": "quote.accepted"},
        default_actions=[
            {"type": "create_invoice", "config": {}},
            {"type": "send_email", "config": {"template": "invoice_sent"}},
        ],
    ),
    AutomationTemplate(
        id="template-calendar-to-time",
        name="Calendar to time tracking",
        description="Log hours from calendar appointments",
        category="time",
        trigger_type="event",
        order=5,
        default_trigger_config={"event": "calendar.event_created"},
        default_actions=[{"type": "create_time_entry", "config": {"matchProject": True, "matchClient": True}}],
        config_fields={"tag": "#uren"},
    ),
    AutomationTemplate(
        id="template-kilometer-tracking",
        name="Kilometer tracking",
        description="Log kilometers from calendar locations",
        category="kilometer",
        trigger_type="event",
        order=6,
        default_trigger_config={"event": "calendar.event_with_location"},
        default_actions=[{"type": "create_kilometer_entry", "config": {"calculateDistance": True}}],
    ),
)


def get_template(template_id: str) -> AutomationTemplate | None:
    for template in TEMPLATES:
        if template.id == template_id:
            return template
    return None


def default_templates() -> list[AutomationTemplate]:
    return [template for template in TEMPLATES if template.is_default]
