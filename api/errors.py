"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from clients.email_client import EmailGatewayError
from auth.exceptions import (
    AccountDisabledError,
    AuthError,
    AuthenticationFailedError,
    DuplicateUserError,
    InvalidTokenError,
    OtpVerificationError,
    RateLimitedError,
    RefreshTokenError,
    ResourceNotFoundError,
    TokenReusedError,
)

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def auth_error_response(exc: AuthError, request_id: str | None = None) -> JSONResponse:
    """Translate an auth failure into its HTTP status and error envelope."""
    headers = {}
    details = None

    # Subclasses before their bases
    if isinstance(exc, OtpVerificationError):
        status, code = 401, ErrorCodes.AUTHENTICATION_FAILED
        details = {"reason": exc.reason.value}
        if exc.remaining_attempts is not None:
            details["remaining_attempts"] = exc.remaining_attempts
    elif isinstance(exc, AuthenticationFailedError):
        status, code = 401, ErrorCodes.AUTHENTICATION_FAILED
    elif isinstance(exc, TokenReusedError):
        status, code = 401, ErrorCodes.TOKEN_REUSED
    elif isinstance(exc, (InvalidTokenError, RefreshTokenError)):
        status, code = 401, ErrorCodes.INVALID_TOKEN
        details = {"reason": exc.reason.value}
    elif isinstance(exc, RateLimitedError):
        status, code = 429, ErrorCodes.RATE_LIMITED
        headers["Retry-After"] = str(exc.retry_after_seconds)
        details = {"retry_after_seconds": exc.retry_after_seconds}
    elif isinstance(exc, AccountDisabledError):
        status, code = 403, ErrorCodes.ACCOUNT_DISABLED
    elif isinstance(exc, ResourceNotFoundError):
        status, code = 404, ErrorCodes.NOT_FOUND
    elif isinstance(exc, DuplicateUserError):
        status, code = 409, ErrorCodes.ALREADY_EXISTS
        details = {"field": exc.field}
    else:
        # InvalidRoleError, InvalidPasswordError
        status, code = 400, ErrorCodes.INVALID_REQUEST

    return JSONResponse(
        status_code=status,
        headers=headers,
        content=error_response(code, str(exc), details, request_id).model_dump(mode="json"),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return auth_error_response(exc, _request_id(request))

    @app.exception_handler(EmailGatewayError)
    async def delivery_error_handler(request: Request, exc: EmailGatewayError):
        return JSONResponse(
            status_code=503,
            content=error_response(
                ErrorCodes.SERVICE_UNAVAILABLE,
                "Could not deliver the code. Please try again later.",
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content=error_response(
                ErrorCodes.INVALID_REQUEST, str(exc), request_id=_request_id(request)
            ).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_response(
                ErrorCodes.VALIDATION_ERROR,
                "Request validation failed",
                details={"errors": [
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()
                ]},
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content=error_response(
                ErrorCodes.INTERNAL_ERROR,
                "An internal error occurred",
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )
