from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

from opentelemetry import trace

from autoflow.otel import traced


logger = logging.getLogger("autoflow.integrations.messaging")
tracer = trace.get_tracer("autoflow.integrations.messaging")


class MessageGateway(Protocol):
    def send_email(self, user_id: str, *, to: str | None, subject: str, template: str | None, context: dict[str, Any]) -> str: ...

    def send_whatsapp(self, user_id: str, *, to: str | None, message: str, context: dict[str, Any]) -> str: ...

    def create_calendar_event(
        self,
        user_id: str,
        *,
        title: str,
        starts_at: str | None,
        duration_minutes: int,
        context: dict[str, Any],
    ) -> str: ...


@dataclass
class OutboundMessage:
    channel: str
    user_id: str
    payload: dict[str, Any]
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class LoggingMessageGateway:
    """Delivery stand-in that records what would have been sent.

    Real mail, WhatsApp and calendar providers plug in behind the same
    protocol; automations only ever see the returned message id.
    """

    def __init__(self, max_outbox: int = 1000) -> None:
        # Oldest messages are dropped once the outbox is full.
        self.outbox: deque[OutboundMessage] = deque(maxlen=max_outbox)

    def send_email(self, user_id: str, *, to: str | None, subject: str, template: str | None, context: dict[str, Any]) -> str:
        return self._deliver("email", user_id, {"to": to, "subject": subject, "template": template, "context": context})

    def send_whatsapp(self, user_id: str, *, to: str | None, message: str, context: dict[str, Any]) -> str:
        return self._deliver("whatsapp", user_id, {"to": to, "message": message, "context": context})

    def create_calendar_event(
        self,
        user_id: str,
        *,
        title: str,
        starts_at: str | None,
        duration_minutes: int,
        context: dict[str, Any],
    ) -> str:
        return self._deliver(
            "calendar",
            user_id,
            {"title": title, "starts_at": starts_at, "duration_minutes": duration_minutes, "context": context},
        )

    def _deliver(self, channel: str, user_id: str, payload: dict[str, Any]) -> str:
        message = OutboundMessage(channel=channel, user_id=user_id, payload=payload)
        with traced(tracer, f"messaging.{channel}", {"message_id": message.message_id}):
            self.outbox.append(message)
            logger.info("messaging.queued", extra={"user_id": user_id, "action": channel, "status": "queued"})
            return message.message_id


message_gateway = LoggingMessageGateway()
