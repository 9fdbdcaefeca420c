from __future__ import annotations

import contextvars
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from opentelemetry import trace
from sqlalchemy.orm import Session

from autoflow.automation.actions import ActionContext, ActionRegistry, build_default_registry
from autoflow.automation.conditions import ConditionEvaluator
from autoflow.automation.ledger import RUN_FAILED, RUN_SUCCEEDED
from autoflow.automation.models import Automation, utcnow
from autoflow.automation.triggers import describe_schedule
from autoflow.core.config import get_settings
from autoflow.core.errors import AutoflowError, ExecutionError
from autoflow.metrics import observe_action_failure
from autoflow.otel import traced
from autoflow.records.repository import (
    ClientRepository,
    InvoiceRepository,
    KilometerEntryRepository,
    QuoteRepository,
    RecordRepository,
    TimeEntryRepository,
    record_to_dict,
)


logger = logging.getLogger("autoflow.automation.executor")
tracer = trace.get_tracer("autoflow.automation.executor")


class ExecutionMode(str, Enum):
    LIVE = "live"
    DRY_RUN = "dry_run"


RECORD_SOURCES: dict[str, RecordRepository[Any]] = {
    "invoice": InvoiceRepository(),
    "quote": QuoteRepository(),
    "time": TimeEntryRepository(),
    "kilometer": KilometerEntryRepository(),
    "contact": ClientRepository(),
}


@dataclass
class RunResult:
    status: str
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    preview: dict[str, Any] | None = None

    @property
    def error_message(self) -> str | None:
        if not self.errors:
            return None
        first = self.errors[0]
        message = f"{first['action']}: {first['error']}"
        if len(self.errors) > 1:
            message += f" (+{len(self.errors) - 1} more)"
        return message

    def summary(self) -> dict[str, Any]:
        return {"results": self.results, "errors": self.errors}


def _item_payload(row: Any) -> dict[str, Any]:
    payload = record_to_dict(row)
    client = getattr(row, "client", None)
    if client is not None:
        payload["client"] = {"id": str(client.id), "name": client.name, "email": client.email, "phone": client.phone}
    return payload


def _item_ref(item: dict[str, Any]) -> dict[str, Any]:
    return {key: item[key] for key in ("id", "number", "name") if key in item}


class AutomationExecutor:
    def __init__(self, registry: ActionRegistry | None = None, *, action_timeout: float | None = None) -> None:
        self.registry = registry or build_default_registry()
        self._action_timeout = action_timeout
        self._pool: ThreadPoolExecutor | None = None

    @property
    def action_timeout(self) -> float:
        if self._action_timeout is not None:
            return self._action_timeout
        return get_settings().automation_action_timeout_seconds

    def collect_items(
        self,
        session: Session,
        automation: Automation,
        now: datetime,
        *,
        event_payload: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        if automation.trigger_type == "event":
            return [dict(event_payload or {})]

        evaluator = ConditionEvaluator(now)
        limit = get_settings().automation_max_items_per_run
        repository = RECORD_SOURCES.get(automation.category)
        if repository is None:
            candidates = [{"user_id": str(automation.user_id), "category": automation.category, "date": now.date().isoformat()}]
        else:
            candidates = [_item_payload(row) for row in repository.list(session, automation.user_id)]

        items: list[dict[str, Any]] = []
        for candidate in candidates:
            if evaluator.matches(automation.conditions, candidate):
                items.append(candidate)
                if len(items) >= limit:
                    break
        return items

    def execute(
        self,
        session: Session,
        automation: Automation,
        mode: ExecutionMode,
        *,
        event_payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RunResult:
        now = now or utcnow()
        attributes = {"automation.id": str(automation.id), "automation.mode": mode.value}
        with traced(tracer, "automation.execute", attributes) as span:
            items = self.collect_items(session, automation, now, event_payload=event_payload)
            span.set_attribute("automation.items", len(items))
            if mode == ExecutionMode.DRY_RUN:
                return RunResult(status=RUN_SUCCEEDED, preview=self._preview(automation, items))
            return self._run_live(session, automation, items, now)

    def _preview(self, automation: Automation, items: list[dict[str, Any]]) -> dict[str, Any]:
        would_trigger = len(items) > 0
        if automation.trigger_type == "event":
            message = "Would trigger when event occurs"
        elif would_trigger:
            message = f"Would run {describe_schedule(automation.trigger_config)} for {len(items)} item(s)"
        else:
            message = f"Would run {describe_schedule(automation.trigger_config)} but no items match the conditions"
        return {
            "automation": {
                "name": automation.name,
                "category": automation.category,
                "trigger_type": automation.trigger_type,
            },
            "would_trigger": would_trigger,
            "items_found": len(items),
            "actions_preview": [
                {
                    "type": action.get("type"),
                    "config": action.get("config") or {},
                    "supported": action.get("type") in self.registry.handlers,
                }
                for action in automation.actions
            ],
            "message": message,
        }

    def _run_live(self, session: Session, automation: Automation, items: list[dict[str, Any]], now: datetime) -> RunResult:
        result = RunResult(status=RUN_SUCCEEDED)
        actions = list(automation.actions or [])
        abort = automation.failure_policy != "continue"

        for item in items:
            result.items_processed += 1
            item_failed = False
            for index, action in enumerate(actions):
                action_type = str(action.get("type") or "")
                try:
                    output = self._run_action(ActionContext(session, automation, item, now), action_type, action.get("config") or {})
                except AutoflowError as exc:
                    session.rollback()
                    error = exc.message
                except Exception as exc:
                    session.rollback()
                    logger.exception(
                        "automation.action_crashed",
                        extra={"automation_id": str(automation.id), "action": action_type},
                    )
                    error = str(exc) or exc.__class__.__name__
                else:
                    result.results.append({"item": _item_ref(item), "action": action_type, "index": index, "output": output})
                    continue

                item_failed = True
                observe_action_failure(action_type)
                result.errors.append({"item": _item_ref(item), "action": action_type, "index": index, "error": error})
                logger.warning(
                    "automation.action_failed",
                    extra={"automation_id": str(automation.id), "action": action_type, "error": error},
                )
                if abort:
                    break

            if item_failed:
                result.items_failed += 1
            else:
                result.items_succeeded += 1
            if item_failed and abort:
                break

        if result.errors:
            result.status = RUN_FAILED
        return result

    def _run_action(self, ctx: ActionContext, action_type: str, config: dict[str, Any]) -> dict[str, Any]:
        handler = self.registry.get(action_type)
        with traced(tracer, "automation.action", {"automation.action": action_type}):
            if not self.registry.is_external(action_type):
                return handler(ctx, config)

            future = self._executor().submit(contextvars.copy_context().run, handler, ctx, config)
            try:
                return future.result(timeout=self.action_timeout)
            except FutureTimeoutError as exc:
                future.cancel()
                raise ExecutionError(
                    f"action {action_type} timed out after {self.action_timeout:g}s",
                    details={"action": action_type},
                ) from exc

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="automation-action")
        return self._pool

    def close(self) -> None:
        """Shut down the pool used for external actions; it is recreated on next use."""
        pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)
