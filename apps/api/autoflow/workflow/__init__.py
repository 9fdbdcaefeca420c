from autoflow.workflow.context import UserContextResolver, WorkflowContext, resolve_user_id, user_context_resolver
from autoflow.workflow.router import ActionResult, WorkflowActionRouter, workflow_router

__all__ = [
    "ActionResult",
    "UserContextResolver",
    "WorkflowActionRouter",
    "WorkflowContext",
    "resolve_user_id",
    "user_context_resolver",
    "workflow_router",
]
