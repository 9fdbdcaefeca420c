from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from autoflow.automation.conditions import ConditionEvaluator, normalized_compare_value, resolve_path
from autoflow.automation.schemas import AutomationCreate, normalize_conditions, normalize_trigger_config


NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


def test_legacy_invoice_shorthand_becomes_condition_tree() -> None:
    tree = normalize_conditions("invoice", {"invoiceStatus": "SENT", "daysOverdue": 7})

    assert tree == {
        "all": [
            {"path": "status", "op": "eq", "value": "SENT"},
            {"path": "due_date", "op": "lt", "value": {"days_from_now": -7}},
        ]
    }


def test_legacy_invoice_status_defaults_to_sent() -> None:
    assert normalize_conditions("invoice", {"daysOverdue": 0}) == {
        "all": [
            {"path": "status", "op": "eq", "value": "SENT"},
            {"path": "due_date", "op": "lt", "value": {"days_from_now": 0}},
        ]
    }


def test_legacy_quote_shorthand() -> None:
    assert normalize_conditions("quote", {"expired": True}) == {
        "path": "valid_until",
        "op": "lt",
        "value": {"days_from_now": 0},
    }


def test_shorthand_rejected_for_categories_without_records() -> None:
    with pytest.raises(ValueError):
        normalize_conditions("email", {"status": "SENT"})


def test_empty_conditions_normalize_to_none() -> None:
    assert normalize_conditions("invoice", None) is None
    assert normalize_conditions("invoice", {}) is None


def test_tree_with_not_round_trips_alias() -> None:
    tree = normalize_conditions("contact", {"not": {"path": "tags", "op": "contains", "value": "vip"}})

    assert tree == {"not": {"path": "tags", "op": "contains", "value": "vip"}}


def test_unknown_operator_rejected() -> None:
    with pytest.raises(ValueError):
        normalize_conditions("invoice", {"path": "status", "op": "like", "value": "SENT"})


def test_object_values_must_be_day_offsets() -> None:
    with pytest.raises(ValueError):
        normalize_conditions("invoice", {"path": "due_date", "op": "lt", "value": {"weeks": 1}})


def test_overdue_invoice_matches_only_past_threshold() -> None:
    evaluator = ConditionEvaluator(NOW)
    tree = normalize_conditions("invoice", {"invoiceStatus": "SENT", "daysOverdue": 7})

    assert evaluator.matches(tree, {"status": "SENT", "due_date": "2024-03-01"})
    assert not evaluator.matches(tree, {"status": "SENT", "due_date": "2024-03-08"})
    assert not evaluator.matches(tree, {"status": "PAID", "due_date": "2024-03-01"})
    assert not evaluator.matches(tree, {"status": "SENT", "due_date": None})


def test_operators() -> None:
    evaluator = ConditionEvaluator(NOW)
    item = {"amount": "150.50", "status": "SENT", "tags": ["vip", "nl"], "client": {"name": "Acme BV"}}

    assert evaluator.matches({"path": "amount", "op": "gt", "value": 100}, item)
    assert evaluator.matches({"path": "amount", "op": "lte", "value": "150.5"}, item)
    assert evaluator.matches({"path": "status", "op": "in", "value": ["SENT", "OVERDUE"]}, item)
    assert evaluator.matches({"path": "status", "op": "neq", "value": "PAID"}, item)
    assert evaluator.matches({"path": "tags", "op": "contains", "value": "vip"}, item)
    assert evaluator.matches({"path": "client.name", "op": "contains", "value": "Acme"}, item)
    assert evaluator.matches({"path": "client.name", "op": "exists"}, item)
    assert not evaluator.matches({"path": "client.email", "op": "exists"}, item)
    assert evaluator.matches(
        {"any": [{"path": "status", "op": "eq", "value": "PAID"}, {"not": {"path": "amount", "op": "lt", "value": 10}}]},
        item,
    )


def test_no_conditions_match_everything() -> None:
    assert ConditionEvaluator(NOW).matches(None, {"anything": 1})


def test_resolve_path_and_normalization() -> None:
    assert resolve_path({"a": {"b": 2}}, "a.b") == (True, 2)
    assert resolve_path({"a": {"b": 2}}, "a.c") == (False, None)
    assert normalized_compare_value("2024-03-01T10:00:00") == "2024-03-01"
    assert normalized_compare_value("12") == 12.0
    assert normalized_compare_value(True) is True


def test_schedule_trigger_config_is_normalized() -> None:
    assert normalize_trigger_config("schedule", {"frequency": "Daily", "time": "09:00"}) == {
        "time": "09:00",
        "schedule": "daily",
    }
    with pytest.raises(ValueError):
        normalize_trigger_config("schedule", {"schedule": "daily", "time": "09:00", "timezone": "Mars/Olympus"})
    with pytest.raises(ValueError):
        normalize_trigger_config("event", {"event": "  "})


def test_automation_create_requires_actions_without_template() -> None:
    with pytest.raises(PydanticValidationError):
        AutomationCreate(
            name="No actions",
            category="invoice",
            trigger_type="schedule",
            trigger_config={"schedule": "daily", "time": "09:00"},
            actions=[],
        )


def test_automation_create_normalizes_definition() -> None:
    dto = AutomationCreate(
        name="Reminders",
        category="invoice",
        trigger_type="schedule",
        trigger_config={"schedule": "weekly", "time": "09:00", "day_of_week": "monday"},
        conditions={"daysOverdue": 14},
        actions=[{"type": "send_email", "config": {"subject": "Reminder"}}, {"type": "post_to_slack", "config": {"x": 1}}],
    )

    assert dto.trigger_config == {"schedule": "weekly", "time": "09:00", "day_of_week": "monday"}
    assert dto.conditions is not None and "all" in dto.conditions
    assert dto.actions[0] == {"type": "send_email", "config": {"subject": "Reminder"}}
    assert dto.actions[1] == {"type": "post_to_slack", "config": {"x": 1}}


def test_action_config_is_validated() -> None:
    with pytest.raises(PydanticValidationError):
        AutomationCreate(
            name="Bad whatsapp",
            category="contact",
            trigger_type="event",
            trigger_config={"event": "contact.created"},
            actions=[{"type": "send_whatsapp", "config": {}}],
        )
