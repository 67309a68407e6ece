"""Typed errors raised by service code and their translation to HTTP responses.

Service functions never build responses themselves. They raise one of the
``ApiError`` subclasses below and ``map_error_to_response`` turns it into a
status code and JSON body at the outermost request boundary.
"""

from __future__ import annotations

import traceback


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ApiError):
    status_code = 400


class AuthError(ApiError):
    status_code = 401


class ForbiddenError(ApiError):
    status_code = 403

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    # Duplicate email / duplicate registration answer 400, not 409.
    status_code = 400


class DomainError(ApiError):
    status_code = 400


class InsufficientFundsError(DomainError):
    pass


class InsufficientHoldingsError(DomainError):
    pass


class GameClosedError(DomainError):
    pass


def format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def map_error_to_response(error: BaseException, expose_detail: bool) -> tuple[int, dict]:
    if isinstance(error, ForbiddenError):
        return error.status_code, {"message": error.message}

    if isinstance(error, ApiError):
        status_code = error.status_code
        message = error.message
    else:
        status_code = 500
        message = str(error) or error.__class__.__name__

    return status_code, {
        "error": message,
        "stack": format_stack(error) if expose_detail else None,
    }
