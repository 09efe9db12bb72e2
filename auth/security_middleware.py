"""Security middleware for FastAPI - bearer token validation and admission control."""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from api.errors import auth_error_response
from api.middleware import get_client_ip
from auth.exceptions import AuthError, RateLimitedError
from auth.rate_limiter import RateLimiter, classify_path
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.service import AuthService
from utils.user_context import Principal, set_current_principal, clear_current_principal

logger = logging.getLogger(__name__)


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that validates the bearer access token and sets the principal.

    For protected routes:
    1. Extracts the token from the `Authorization: Bearer` header
    2. Verifies it and loads the user (deactivated users are rejected)
    3. Sets the principal in request.state and the user context
    4. Clears the context after the request completes

    Public paths bypass authentication entirely.
    """

    # Exact matches
    PUBLIC_PATHS = {
        "/auth/register",
        "/auth/login",
        "/auth/refresh",
        "/auth/logout",
        "/auth/password/forgot",
        "/auth/password/reset",
        "/health",
        "/docs",
        "/openapi.json",
    }
    PUBLIC_PREFIXES = ("/auth/otp/",)

    def __init__(self, app, auth_service: AuthService):
        super().__init__(app)
        self._auth_service = auth_service

    def _is_public_path(self, path: str) -> bool:
        return path in self.PUBLIC_PATHS or path.startswith(self.PUBLIC_PREFIXES)

    async def dispatch(self, request: Request, call_next):
        if self._is_public_path(request.url.path):
            return await call_next(request)

        request_id = getattr(request.state, "request_id", None)
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.NOT_AUTHENTICATED,
                    "Authentication required",
                    request_id=request_id,
                ).model_dump(mode="json"),
            )

        try:
            user = self._auth_service.authenticate_access_token(token.strip())
        except AuthError as e:
            logger.debug(f"Rejected bearer token on {request.url.path}: {e}")
            return auth_error_response(e, request_id)

        principal = Principal(user_id=user.id, email=user.email, role=user.role.value)
        set_current_principal(principal)
        request.state.principal = principal
        request.state.user_id = user.id

        try:
            return await call_next(request)
        finally:
            # Always clear context
            clear_current_principal()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client admission control keyed by client IP and path category."""

    def __init__(self, app, rate_limiter: RateLimiter, security_logger: SecurityLogger | None = None):
        super().__init__(app)
        self._rate_limiter = rate_limiter
        self._security_logger = security_logger

    async def dispatch(self, request: Request, call_next):
        category = classify_path(request.method, request.url.path)
        if category is None:
            return await call_next(request)

        client_key = get_client_ip(request) or "unknown"
        try:
            decision = self._rate_limiter.check(client_key, category)
        except RateLimitedError as e:
            if self._security_logger is not None:
                self._security_logger.log(
                    SecurityEvent.RATE_LIMITED,
                    ip_address=get_client_ip(request),
                    user_agent=request.headers.get("User-Agent"),
                    details={"category": category.value, "path": request.url.path},
                )
            return auth_error_response(e, getattr(request.state, "request_id", None))

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
