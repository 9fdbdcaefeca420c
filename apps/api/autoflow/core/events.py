from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of in-process events.

    Handlers run in subscription order on the publisher's thread, so context
    variables such as the correlation id and automation depth are visible to
    them. A handler registered twice for the same name is called once.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        handlers = self._handlers[event_name]
        if handler not in handlers:
            handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers.get(event_name, []):
                self._handlers[event_name].remove(handler)

        return unsubscribe

    def subscribe_many(self, event_names: Iterable[str], handler: EventHandler) -> None:
        for event_name in event_names:
            self.subscribe(event_name, handler)

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, []))

    def unsubscribe_all(self) -> None:
        self._handlers.clear()

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        handlers = list(self._handlers.get(event_name, []))
        event = InternalEvent(name=event_name, payload=payload)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = InProcessEventBus()
