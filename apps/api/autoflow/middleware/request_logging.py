from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from autoflow.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("autoflow.request")


def _observe(request: Request, status_code: int, started: float) -> dict[str, object]:
    # The route template is only known after the inner app has matched it.
    elapsed = time.perf_counter() - started
    fields: dict[str, object] = {
        "method": request.method,
        "path": resolve_http_path_label(request),
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
    }
    observe_http_request(method=request.method, path=str(fields["path"]), status=status_code, duration=elapsed)
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_observe(request, 500, started))
            raise

        logger.info("http.request", extra=_observe(request, response.status_code, started))
        return response
