from __future__ import annotations

from typing import Any

from autoflow.context import get_correlation_id, get_workflow_depth
from autoflow.core.events import event_bus

# Every envelope published in this process, oldest first. Tests read it.
published_events: list[dict[str, Any]] = []


def _stamp_context(envelope: dict[str, Any]) -> None:
    envelope.setdefault("correlation_id", None)
    if envelope["correlation_id"] is None:
        envelope["correlation_id"] = get_correlation_id()

    depth = get_workflow_depth()
    meta = envelope.get("meta")
    if depth is None:
        return
    if not isinstance(meta, dict):
        envelope["meta"] = {"workflow_depth": depth}
    elif "workflow_depth" not in meta:
        envelope["meta"] = {**meta, "workflow_depth": depth}


def publish(envelope: dict[str, Any]) -> int:
    """Publish a domain event such as ``invoice.created``.

    The envelope carries ``event_type``, ``user_id`` and ``payload``. The
    current correlation id and automation nesting depth are stamped on it so
    event-triggered automations can refuse to recurse forever. Returns the
    number of handlers that received it.
    """
    _stamp_context(envelope)
    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        return 0
    return event_bus.publish(event_type, envelope)


def publish_record_event(event_type: str, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    envelope: dict[str, Any] = {"event_type": event_type, "user_id": user_id, "payload": payload}
    publish(envelope)
    return envelope
