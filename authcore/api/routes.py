from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from authcore.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MFAConfirmRequest,
    MFAEnrollmentResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SignupRequest,
    TokenRefreshRequest,
)
from authcore.logging import get_logger
from authcore.service.auth import AuthContext, AuthResult
from authcore.service.errors import AuthenticationError
from authcore.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.protect(
        authorization,
        access_token,
        ip_addr=_client_ip(request),
    )


async def get_admin_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.protect(
        authorization,
        access_token,
        ip_addr=_client_ip(request),
        required_roles=["admin"],
    )


def _apply_session_cookies(response: Response, result: AuthResult) -> None:
    secure = get_runtime().settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        result.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=result.access_expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=result.refresh_expires_at,
        path="/v1/auth",
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/v1/auth")


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        session_id=result.session.id,
        role=result.user.role,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        access_expires_at=result.access_expires_at,
        refresh_expires_at=result.refresh_expires_at,
        mfa_verified=result.session.mfa_verified,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account and start its first session.

    Raises:
        400: If the password does not meet the complexity rules
        403: If signup is disabled
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.signup(
        body.email,
        body.password,
        name=body.name,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password, plus a second factor when enrolled.

    Raises:
        401: Invalid credentials, or ``mfa_required`` when a code is needed
        423: If the account is locked
        429: If the per-IP login budget is exhausted
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.mfa_code,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    """Rotate the refresh token. A token presented twice revokes the session family."""
    token = (body.refresh_token if body else None) or refresh_token
    if not token:
        raise AuthenticationError("refresh token required")
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        token,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    everywhere = body.everywhere if body else False
    revoked = await runtime.auth.logout(principal, everywhere=everywhere)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, request: Request):
    """Send a reset code. The response is identical whether or not the email exists."""
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email, ip_addr=_client_ip(request))
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.code, body.new_password)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"status": "password_reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the current user's password.

    Every existing session is revoked; the caller continues on a fresh session
    whose tokens are returned here.
    """
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal,
        body.current_password,
        body.new_password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/mfa/enroll", response_model=Envelope, tags=["auth"])
async def enroll_mfa(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    enrollment = await runtime.auth.enroll_mfa(principal)
    return Envelope(
        status="ok",
        data=MFAEnrollmentResponse(
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["auth"])
async def confirm_mfa(
    body: MFAConfirmRequest, principal: AuthContext = Depends(get_user)
):
    """Turn MFA on. Existing sessions must log in again with a code."""
    runtime = get_runtime()
    await runtime.auth.confirm_mfa(principal, body.code)
    return Envelope(status="ok", data={"mfa_enabled": True})


@router.get("/me", response_model=Envelope, tags=["users"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.current_user(principal)
    return Envelope(
        status="ok",
        data=MeResponse(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            permissions=list(user.permissions),
            mfa_verified=principal.mfa_verified,
            session_id=principal.session_id,
        ),
    )


@router.get("/admin/ping", response_model=Envelope, tags=["admin"])
async def admin_ping(principal: AuthContext = Depends(get_admin_user)):
    return Envelope(status="ok", data={"user_id": principal.user_id, "role": principal.role})
