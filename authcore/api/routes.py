from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from authcore.api.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    FlowResponse,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshResponse,
    RegisterRequest,
    TokenRefreshRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
)
from authcore.logging import get_logger
from authcore.service.runtime import get_runtime
from authcore.storage.models import FlowResult, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_meta(request: Request) -> dict:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }


def _flow_response(result: FlowResult) -> FlowResponse:
    return FlowResponse(
        ok=result.ok, token=result.token, already_verified=result.already_verified
    )


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    user = await runtime.auth.authenticate(authorization)
    if not user:
        raise _http_error("unauthorized", "invalid or missing access token", status_code=401)
    return user


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    """Create an account with email and password.

    Does not log in; the client follows up with ``/login``.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.register(body.email, body.password)
    return Envelope(status="ok", data=user.public_view())


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    """Authenticate with email, password and, when enabled, a TOTP code.

    Raises:
        401: Invalid credentials, missing or wrong two-factor code
        429: Too many failed attempts; ``Retry-After`` carries the wait
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.two_factor_code,
        **_client_meta(request),
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=result.user,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_at=result.expires_at,
        ),
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    rotation = await runtime.auth.refresh(body.refresh_token, **_client_meta(request))
    return Envelope(
        status="ok",
        data=RefreshResponse(
            user_id=rotation.user_id,
            access_token=rotation.access_token,
            refresh_token=rotation.refresh_token,
            expires_at=rotation.expires_at,
        ),
    )


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/logout-all", response_model=Envelope)
async def logout_all(request: Request, user: User = Depends(get_current_user)):
    """Revoke every refresh token of the authenticated user."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(user.id, **_client_meta(request))
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/email/send-verification", response_model=Envelope)
async def send_email_verification(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    result = await runtime.auth.flows.send_email_verification(user.id)
    return Envelope(status="ok", data=_flow_response(result))


@router.post("/email/verify", response_model=Envelope)
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    result = await runtime.auth.flows.verify_email(body.token)
    return Envelope(status="ok", data=_flow_response(result))


@router.post("/password/request-reset", response_model=Envelope)
async def request_password_reset(body: PasswordResetRequest):
    """Start a password reset.

    Answers the same way whether or not the email belongs to an account.
    """
    runtime = get_runtime()
    result = await runtime.auth.flows.request_password_reset(body.email)
    return Envelope(status="ok", data=_flow_response(result))


@router.post("/password/reset", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    result = await runtime.auth.flows.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=_flow_response(result))


@router.post("/password/change", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        user.id, body.current_password, body.new_password, **_client_meta(request)
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/2fa/setup", response_model=Envelope)
async def setup_two_factor(user: User = Depends(get_current_user)):
    """Generate a fresh TOTP secret; 2FA stays off until ``/2fa/enable``."""
    runtime = get_runtime()
    setup = await runtime.auth.setup_two_factor(user.id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.post("/2fa/enable", response_model=Envelope)
async def enable_two_factor(body: TwoFactorCodeRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.enable_two_factor(user.id, body.code)
    return Envelope(status="ok", data={"two_factor_enabled": True})


@router.post("/2fa/disable", response_model=Envelope)
async def disable_two_factor(
    body: TwoFactorDisableRequest, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(user.id, body.code)
    return Envelope(status="ok", data={"two_factor_enabled": False})


@router.get("/me", response_model=Envelope)
async def me(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=user.public_view())


@router.get("/audit", response_model=Envelope)
async def list_audit(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
):
    """Security events recorded for the authenticated user, newest first."""
    runtime = get_runtime()
    entries = runtime.auth.list_audit_logs(user.id, limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=AuditLogListResponse(
            items=[
                AuditLogResponse(
                    id=entry.id,
                    action=entry.action,
                    metadata=entry.metadata,
                    ip=entry.ip,
                    user_agent=entry.user_agent,
                    created_at=entry.created_at,
                )
                for entry in entries
            ],
            limit=limit,
            offset=offset,
        ),
    )
