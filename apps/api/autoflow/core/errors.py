from __future__ import annotations

from typing import Any


class AutoflowError(Exception):
    status_code = 400
    code = "autoflow_error"

    def __init__(self, message: str, *, details: Any = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code


class ValidationError(AutoflowError):
    status_code = 400
    code = "validation_error"


class NotFoundError(AutoflowError):
    status_code = 404
    code = "not_found"


class UnauthorizedError(AutoflowError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(AutoflowError):
    status_code = 403
    code = "forbidden"


class RateLimitedError(AutoflowError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, details: Any = None) -> None:
        super().__init__(message, details=details)
        self.retry_after = max(1, int(retry_after))


class ConflictError(AutoflowError):
    status_code = 409
    code = "conflict"


class AmbiguousContextError(AutoflowError):
    """The caller did not say which tenant to act for."""

    status_code = 400
    code = "ambiguous_context"


class ExecutionError(AutoflowError):
    """An action handler failed while an automation was running.

    Recorded on the run; the engine never lets it escape a tick.
    """

    status_code = 500
    code = "execution_error"
