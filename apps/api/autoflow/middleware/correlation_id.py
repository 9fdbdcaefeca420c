from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from autoflow.context import correlation_scope


CORRELATION_HEADER = "x-correlation-id"
# n8n forwards its execution id as x-request-id
FALLBACK_HEADERS = ("x-request-id",)
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def incoming_correlation_id(request: Request) -> str | None:
    for header in (CORRELATION_HEADER, *FALLBACK_HEADERS):
        value = (request.headers.get(header) or "").strip()
        if _VALID_ID.match(value):
            return value
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind one correlation id per request and echo it back in the response."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = incoming_correlation_id(request) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
