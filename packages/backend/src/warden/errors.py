"""Error taxonomy and the JSON error envelope.

Learn: Every failure that reaches a client is a WardenError carrying an
HTTP status and one of the fixed ErrorMessage strings. Internal causes
(driver errors, decode exceptions) are logged, never echoed — the public
message is always the smallest one that preserves the right status.

Taxonomy:
- AuthenticationError  → no/invalid/expired credential, unknown user (401)
- AuthorizationError   → authenticated but lacking permission (403), or no
                         identity attached at all — a wiring bug (401)
- TokenLifecycleError  → invalid/expired/consumed action token (400)
- RateLimitError       → quota exceeded (429)
- InfrastructureError  → store unreachable or timed out (500)

Wire format: {"status": "error", "message": "..."}
"""

from enum import Enum
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger()


class ErrorMessage(str, Enum):
    """Public error messages. The value is what the client sees."""

    SERVER_ERROR = "Internal Server Error. Please try again later."
    WRONG_CREDENTIALS = "Email or password is wrong."
    EMAIL_EXIST = "A user with this email already exists."
    USER_NO_LONGER_EXIST = "User belonging to this token no longer exists."
    TOKEN_INVALID = "Authentication token is invalid or expired."
    TOKEN_NOT_PROVIDED = "You are not logged in, please provide a token."
    TOO_MANY_REQUEST = "Request limit is exceeded, too many request."
    TOKEN_KEY_EXPIRED = "Token key has expired."
    TOKEN_KEY_INVALID = "Token key is invalid."
    DATA_NOT_FOUND = "Data is not found."
    PERMISSION_DENIED = "You are not allowed to perform this action."
    USER_NOT_AUTHENTICATED = "Authentication required. Please log in."
    ACCOUNT_ALREADY_VERIFIED = "Account is already verified."
    ACCOUNT_NOT_VERIFIED = "Please verify your account before logging in."
    VALIDATION_ERROR = "Validation Errors"

    def __str__(self) -> str:
        return self.value


class WardenError(Exception):
    """Base class for errors rendered to the client."""

    status_code: int = 500

    def __init__(
        self,
        message: ErrorMessage = ErrorMessage.SERVER_ERROR,
        *,
        status_code: Optional[int] = None,
    ):
        super().__init__(str(message))
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_response(self, headers: Optional[dict] = None) -> JSONResponse:
        return error_response(self.status_code, str(self.message), headers=headers)


class AuthenticationError(WardenError):
    status_code = 401


class AuthorizationError(WardenError):
    status_code = 403


class TokenLifecycleError(WardenError):
    status_code = 400


class RateLimitError(WardenError):
    status_code = 429

    def __init__(self, retry_after: int = 60):
        super().__init__(ErrorMessage.TOO_MANY_REQUEST)
        self.retry_after = retry_after


class InfrastructureError(WardenError):
    status_code = 500

    def __init__(self):
        super().__init__(ErrorMessage.SERVER_ERROR)


class BadRequestError(WardenError):
    status_code = 400


class NotFoundError(WardenError):
    status_code = 404


class ConflictError(WardenError):
    status_code = 409


def error_response(
    status_code: int,
    message: str,
    errors: Optional[list] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    content = {"status": "error", "message": message}
    if errors:
        content["error"] = errors
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _field_errors(exc: RequestValidationError) -> list[dict]:
    """Group pydantic errors by field: [{"field": ..., "messages": [...]}]."""
    grouped: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        grouped.setdefault(field, []).append(err.get("msg", "invalid"))
    return [{"field": f, "messages": m} for f, m in sorted(grouped.items())]


def register_exception_handlers(app: FastAPI) -> None:
    """Render WardenError, validation and unexpected errors as the envelope."""

    @app.exception_handler(WardenError)
    async def handle_warden_error(request: Request, exc: WardenError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request.rejected",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            reason=exc.message.name,
        )
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.retry_after)}
        return exc.to_response(headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            422, str(ErrorMessage.VALIDATION_ERROR), errors=_field_errors(exc)
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(
            "request.unhandled_error", path=request.url.path, method=request.method
        )
        return error_response(500, str(ErrorMessage.SERVER_ERROR))
