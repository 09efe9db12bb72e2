"""HTTP routes for authentication, sessions and trusted devices.

Routes raise `AuthError`s; `api.errors.register_error_handlers` turns them
into status codes. Authenticated routes read the principal that
`AuthMiddleware` put on `request.state`.
"""

from uuid import UUID

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.base import success_response, error_response, ErrorCodes
from api.middleware import get_client_ip
from auth.service import AuthService
from auth.types import (
    ChangePasswordRequest,
    DeviceInfo,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    OtpLoginRequest,
    OtpRequest,
    OtpVerifyRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RevokeOthersRequest,
)
from utils.user_context import Principal


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _ok(request: Request, data) -> dict:
    return success_response(data, _request_id(request)).model_dump(mode="json")


def _principal(request: Request) -> Principal | None:
    return getattr(request.state, "principal", None)


def _not_authenticated(request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content=error_response(
            ErrorCodes.NOT_AUTHENTICATED,
            "Authentication required",
            request_id=_request_id(request),
        ).model_dump(mode="json"),
    )


def create_auth_router(auth_service: AuthService) -> APIRouter:
    """Create /auth router with injected service."""
    router = APIRouter(prefix="/auth", tags=["auth"])

    @router.post("/register", status_code=201)
    async def register(request: Request, body: RegisterRequest):
        tokens = auth_service.register(
            body.email,
            body.password,
            full_name=body.full_name,
            phone=body.phone,
            role=body.role,
            device=body.device,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, tokens.model_dump(mode="json"))

    @router.post("/login")
    async def login(request: Request, body: LoginRequest):
        tokens = auth_service.login(
            body.password,
            email=body.email,
            phone=body.phone,
            device=body.device,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, tokens.model_dump(mode="json"))

    @router.post("/refresh")
    async def refresh(request: Request, body: RefreshRequest):
        tokens = auth_service.refresh(
            body.refresh_token,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, tokens.model_dump(mode="json"))

    @router.post("/logout")
    async def logout(request: Request, body: LogoutRequest):
        """Always succeeds; unknown or missing tokens are ignored."""
        if body.refresh_token:
            auth_service.logout(body.refresh_token, ip_address=get_client_ip(request))
        return _ok(request, {"message": "Logged out successfully"})

    @router.post("/logout-all")
    async def logout_everywhere(request: Request):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        revoked = auth_service.logout_everywhere(
            principal.user_id, ip_address=get_client_ip(request)
        )
        return _ok(request, {"tokens_revoked": revoked})

    @router.post("/otp/request")
    async def request_otp(request: Request, body: OtpRequest):
        """Same response whether or not an account owns the target."""
        result = auth_service.request_otp(
            body.target,
            body.purpose,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, result.model_dump(mode="json"))

    @router.post("/otp/verify")
    async def verify_otp(request: Request, body: OtpVerifyRequest):
        auth_service.verify_otp(
            body.target,
            body.purpose,
            body.code,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, {"verified": True})

    @router.post("/otp/login")
    async def login_with_otp(request: Request, body: OtpLoginRequest):
        tokens = auth_service.login_with_otp(
            body.target,
            body.code,
            device=body.device,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, tokens.model_dump(mode="json"))

    @router.post("/password/forgot")
    async def forgot_password(request: Request, body: ForgotPasswordRequest):
        result = auth_service.request_password_reset(
            body.target,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, result.model_dump(mode="json"))

    @router.post("/password/reset")
    async def reset_password(request: Request, body: ResetPasswordRequest):
        auth_service.reset_password_with_otp(
            body.target,
            body.code,
            body.new_password,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return _ok(request, {"message": "Password has been reset. Please log in again."})

    @router.post("/password/change")
    async def change_password(request: Request, body: ChangePasswordRequest):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        auth_service.change_password(
            principal.user_id,
            body.current_password,
            body.new_password,
            current_device_id=body.current_device_id,
        )
        return _ok(request, {"message": "Password changed"})

    @router.get("/validate")
    async def validate(request: Request):
        """Echo the verified principal (the middleware already checked the token)."""
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        return _ok(
            request,
            {
                "valid": True,
                "user_id": str(principal.user_id),
                "email": principal.email,
                "role": principal.role,
            },
        )

    return router


def create_session_router(auth_service: AuthService) -> APIRouter:
    """Create /sessions and /devices routes. All require authentication."""
    router = APIRouter(tags=["sessions"])

    @router.get("/sessions")
    async def list_sessions(request: Request):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        sessions = auth_service.list_sessions(
            principal.user_id, request.headers.get("X-Device-ID")
        )
        return _ok(request, [s.model_dump(mode="json") for s in sessions])

    @router.delete("/sessions/{session_id}")
    async def revoke_session(request: Request, session_id: UUID):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        auth_service.revoke_session(
            principal.user_id, session_id, ip_address=get_client_ip(request)
        )
        return _ok(request, {"revoked": True})

    @router.post("/sessions/revoke-others")
    async def revoke_other_sessions(request: Request, body: RevokeOthersRequest):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        count = auth_service.revoke_other_sessions(
            principal.user_id, body.current_device_id, ip_address=get_client_ip(request)
        )
        return _ok(request, {"sessions_revoked": count})

    @router.get("/devices")
    async def list_trusted_devices(request: Request):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        devices = auth_service.list_trusted_devices(principal.user_id)
        return _ok(request, [d.model_dump(mode="json") for d in devices])

    @router.post("/devices/trust", status_code=201)
    async def trust_device(request: Request, body: DeviceInfo):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        device = auth_service.trust_device(principal.user_id, body)
        return _ok(request, device.model_dump(mode="json"))

    @router.delete("/devices/{device_id}")
    async def untrust_device(request: Request, device_id: str):
        principal = _principal(request)
        if principal is None:
            return _not_authenticated(request)
        auth_service.untrust_device(principal.user_id, device_id)
        return _ok(request, {"untrusted": True})

    return router
