from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
workflow_depth_var: ContextVar[int | None] = ContextVar("workflow_depth", default=None)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_workflow_depth() -> int | None:
    return workflow_depth_var.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


@contextmanager
def automation_scope(depth: int, *, correlation_id: str | None = None) -> Iterator[None]:
    """Run the body as automation nesting level ``depth``.

    Events published inside the block carry that depth. A correlation id is
    only rebound when one is given; otherwise the caller's id flows through.
    """
    depth_token = workflow_depth_var.set(depth)
    try:
        if correlation_id is None:
            yield
        else:
            with correlation_scope(correlation_id):
                yield
    finally:
        workflow_depth_var.reset(depth_token)
