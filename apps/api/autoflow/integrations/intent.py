from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from opentelemetry import trace


tracer = trace.get_tracer("autoflow.integrations.intent")


@dataclass(frozen=True)
class IntentResult:
    intent: str
    confidence: float
    action: str | None = None
    reasoning: str | None = None


class IntentClassifier(Protocol):
    def classify(self, message: str, user_id: str, history: list[dict[str, Any]]) -> IntentResult: ...


class KeywordIntentClassifier:
    """Offline classifier used when no language model is configured."""

    _keywords: dict[str, tuple[str, ...]] = {
        "create_invoice": ("invoice", "factuur"),
        "create_quote": ("quote", "offerte"),
        "add_time_entry": ("hours", "uren", "time entry"),
        "add_kilometer": ("kilometer", "km", "rit"),
        "create_contact": ("contact", "klant"),
    }

    def classify(self, message: str, user_id: str, history: list[dict[str, Any]]) -> IntentResult:
        with tracer.start_as_current_span("intent.classify") as span:
            span.set_attribute("user_id", user_id)
            lowered = message.lower()
            for action, words in self._keywords.items():
                hits = [word for word in words if word in lowered]
                if hits:
                    span.set_attribute("intent", action)
                    return IntentResult(
                        intent=action,
                        confidence=0.6,
                        action=action,
                        reasoning=f"matched keyword '{hits[0]}'",
                    )
            return IntentResult(intent="unknown", confidence=0.0)


intent_classifier = KeywordIntentClassifier()
