from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from opentelemetry import trace
from sqlalchemy.orm import Session

from autoflow.core.errors import AutoflowError, ValidationError
from autoflow.integrations.intent import IntentClassifier, intent_classifier
from autoflow.metrics import observe_dispatch
from autoflow.otel import traced
from autoflow.records.schemas import IntentParams
from autoflow.records.service import RecordService, parse_params, record_service
from autoflow.services.audit import write_audit_log
from autoflow.workflow.context import WorkflowContext


logger = logging.getLogger("autoflow.workflow")
tracer = trace.get_tracer("autoflow.workflow")

FORBIDDEN = "Forbidden"
UNSUPPORTED_ACTION = "UnsupportedAction"
INTERNAL_ERROR = "InternalError"


@dataclass
class ActionResult:
    success: bool
    data: Any = None
    error: str | None = None
    message: str | None = None
    status_code: int = 200

    @classmethod
    def ok(cls, data: Any, message: str) -> "ActionResult":
        return cls(success=True, data=data, message=message)

    @classmethod
    def failure(cls, error: str, message: str, *, status_code: int = 400) -> "ActionResult":
        return cls(success=False, error=error, message=message, status_code=status_code)

    @property
    def outcome(self) -> str:
        if self.success:
            return "success"
        if self.error in (FORBIDDEN, UNSUPPORTED_ACTION, INTERNAL_ERROR):
            return self.error.lower()
        return "failed"

    def envelope(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data, "message": self.message}
        return {"success": False, "error": self.error, "message": self.message}


WorkflowHandler = Callable[[Session, dict[str, Any], WorkflowContext], Any]


@dataclass(frozen=True)
class WorkflowAction:
    name: str
    permission: str
    handler: WorkflowHandler
    success_message: Callable[[Any], str]
    aliases: tuple[str, ...] = ()
    description: str = ""

    @property
    def resource(self) -> str:
        return self.permission.split(".", 1)[0]

    def names(self) -> set[str]:
        return {self.name, self.permission, *self.aliases}


@dataclass
class WorkflowActionRegistry:
    actions: dict[str, WorkflowAction] = field(default_factory=dict)
    _aliases: dict[str, str] = field(default_factory=dict)

    def register(self, action: WorkflowAction) -> None:
        self.actions[action.name] = action
        for alias in action.names():
            self._aliases[alias] = action.name

    def canonical_name(self, name: str) -> str:
        return self._aliases.get(name, name)

    def get(self, name: str) -> WorkflowAction | None:
        return self.actions.get(self.canonical_name(name))


def is_permitted(permissions: tuple[str, ...] | list[str], name: str, action: WorkflowAction | None) -> bool:
    """Allow-list check: exact name, ``*`` or ``<resource>.*``. Nothing granted means nothing allowed."""
    granted = set(permissions)
    if "*" in granted:
        return True
    if action is None:
        return name in granted
    if action.names() & granted:
        return True
    return f"{action.resource}.*" in granted


def build_default_registry(
    records: RecordService = record_service,
    classifier: IntentClassifier = intent_classifier,
) -> WorkflowActionRegistry:
    registry = WorkflowActionRegistry()

    def ai_intent(session: Session, parameters: dict[str, Any], ctx: WorkflowContext) -> dict[str, Any]:
        params = parse_params(IntentParams, parameters)
        if not params.message:
            raise ValidationError("message is required", details=[{"field": "message", "message": "required"}])
        result = classifier.classify(params.message, str(ctx.user_id), params.conversation_history)
        return asdict(result)

    def scoped(method: Callable[[Session, Any, dict[str, Any]], Any]) -> WorkflowHandler:
        return lambda session, parameters, ctx: method(session, ctx.user_id, parameters)

    registry.register(
        WorkflowAction(
            name="create_invoice",
            permission="invoice.create",
            handler=scoped(records.create_invoice),
            success_message=lambda data: "Invoice created successfully",
            description="Create a draft invoice for a client",
        )
    )
    registry.register(
        WorkflowAction(
            name="create_quote",
            permission="quote.create",
            handler=scoped(records.create_quote),
            success_message=lambda data: "Quote created successfully",
            description="Create a draft quote for a client",
        )
    )
    registry.register(
        WorkflowAction(
            name="add_time_entry",
            permission="time_entry.create",
            aliases=("time.create",),
            handler=scoped(records.add_time_entry),
            success_message=lambda data: "Time entry added successfully",
            description="Log hours on a project",
        )
    )
    registry.register(
        WorkflowAction(
            name="add_kilometer",
            permission="kilometer.create",
            aliases=("km.create",),
            handler=scoped(records.add_kilometer),
            success_message=lambda data: "Kilometer entry added successfully",
            description="Log a trip",
        )
    )
    registry.register(
        WorkflowAction(
            name="create_contact",
            permission="contact.create",
            handler=scoped(records.create_contact),
            success_message=lambda data: "Contact created successfully",
            description="Add a client contact",
        )
    )
    registry.register(
        WorkflowAction(
            name="search_contacts",
            permission="contacts.search",
            handler=scoped(records.search_contacts),
            success_message=lambda data: f"Found {len(data)} contacts",
            description="Search contacts by text or tag",
        )
    )
    registry.register(
        WorkflowAction(
            name="get_invoices",
            permission="invoices.list",
            handler=scoped(records.list_invoices),
            success_message=lambda data: f"Retrieved {len(data['invoices'])} invoices",
            description="List invoices with pagination",
        )
    )
    registry.register(
        WorkflowAction(
            name="get_quotes",
            permission="quotes.list",
            handler=scoped(records.list_quotes),
            success_message=lambda data: f"Retrieved {len(data['quotes'])} quotes",
            description="List quotes with pagination",
        )
    )
    registry.register(
        WorkflowAction(
            name="ai_intent",
            permission="ai.chat",
            handler=ai_intent,
            success_message=lambda data: "AI response generated",
            description="Classify a chat message into an action",
        )
    )
    registry.register(
        WorkflowAction(
            name="context_search",
            permission="search.context",
            handler=scoped(records.context_search),
            success_message=lambda data: f"Found {data['total']} results",
            description="Search across clients, invoices, quotes and time entries",
        )
    )
    return registry


class WorkflowActionRouter:
    def __init__(self, registry: WorkflowActionRegistry | None = None) -> None:
        self.registry = registry or build_default_registry()

    def available_actions(self, permissions: tuple[str, ...] | list[str]) -> list[dict[str, Any]]:
        return [
            {
                "name": action.name,
                "permission": action.permission,
                "aliases": sorted(action.names() - {action.name}),
                "description": action.description,
            }
            for action in sorted(self.registry.actions.values(), key=lambda item: item.name)
            if is_permitted(permissions, action.name, action)
        ]

    def dispatch(self, session: Session, action_name: str, parameters: dict[str, Any] | None, ctx: WorkflowContext) -> ActionResult:
        requested = (action_name or "").strip()
        name = self.registry.canonical_name(requested)
        action = self.registry.get(name)

        attributes = {
            "workflow.action": name,
            "workflow.user_id": str(ctx.user_id),
            "workflow.service_account_id": str(ctx.service_account_id),
        }
        with traced(tracer, "workflow.dispatch", attributes) as span:
            if not is_permitted(ctx.permissions, name, action):
                result = ActionResult.failure(
                    FORBIDDEN,
                    f"Service account is not allowed to call {requested or 'this action'}",
                    status_code=403,
                )
            elif action is None:
                result = ActionResult.failure(
                    UNSUPPORTED_ACTION,
                    f"Unknown action: {requested}. Available actions: {', '.join(sorted(self.registry.actions))}",
                )
            else:
                result = self._invoke(session, action, parameters or {}, ctx)

            span.set_attribute("workflow.outcome", result.outcome)

        metric_action = action.name if action is not None else "unknown"
        observe_dispatch(metric_action, result.outcome)
        logger.info(
            "workflow.dispatch",
            extra={
                "action": name,
                "user_id": str(ctx.user_id),
                "service_account_id": str(ctx.service_account_id),
                "outcome": result.outcome,
                "error": result.error,
            },
        )
        self._audit(session, requested, name, ctx, result)
        return result

    def _invoke(self, session: Session, action: WorkflowAction, parameters: dict[str, Any], ctx: WorkflowContext) -> ActionResult:
        try:
            data = action.handler(session, parameters, ctx)
        except AutoflowError as exc:
            session.rollback()
            return ActionResult.failure(exc.message, f"Failed to execute action: {action.name}")
        except Exception:
            session.rollback()
            logger.exception(
                "workflow.dispatch_crashed",
                extra={"action": action.name, "user_id": str(ctx.user_id)},
            )
            return ActionResult.failure(INTERNAL_ERROR, f"Failed to execute action: {action.name}", status_code=500)
        return ActionResult.ok(data, action.success_message(data))

    def _audit(self, session: Session, requested: str, name: str, ctx: WorkflowContext, result: ActionResult) -> None:
        try:
            write_audit_log(
                session,
                actor_id=str(ctx.service_account_id),
                actor_type="service_account",
                user_id=str(ctx.user_id),
                action="workflow.dispatch",
                entity_type="workflow_action",
                entity_id=name or "unknown",
                outcome=result.outcome,
                metadata={"requested_action": requested, "error": result.error},
            )
        except Exception:
            session.rollback()
            logger.exception("workflow.audit_failed", extra={"action": name, "user_id": str(ctx.user_id)})


workflow_router = WorkflowActionRouter()
