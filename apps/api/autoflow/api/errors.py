from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from autoflow.context import get_correlation_id
from autoflow.core.errors import AutoflowError, RateLimitedError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(payload), headers=headers)


def domain_error_response(request: Request, exc: AutoflowError, *, code: str | None = None) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    return error_response(
        request,
        status_code=exc.status_code,
        code=code or exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


async def autoflow_error_handler(request: Request, exc: AutoflowError) -> JSONResponse:
    return domain_error_response(request, exc)
