"""
api/routes/v1/auth.py -- Session and password REST endpoints.

Routes:
  POST /api/v1/auth/login                    -- unified login; sets authToken cookie (24h)
  POST /api/v1/auth/admin-login              -- admins-table-only login (1h)
  POST /api/v1/auth/logout                   -- clears cookie; 200
  GET  /api/v1/auth/me                       -- verified session claims (requires auth)
  POST /api/v1/auth/password/change/request  -- admin or manager: verify current password, email code
  POST /api/v1/auth/password/change/confirm  -- admin or manager: commit staged password with code
  POST /api/v1/auth/password/forgot          -- public: email a reset code if the email is known
  POST /api/v1/auth/password/reset           -- public: code + new password

Security:
  [H2] login and password endpoints are rate-limited per IP.
  [C1] the resolver equalizes timing for unknown usernames -- use it, never inline.
  [M5] Cache-Control: no-store on login responses.
  The session token is set as an httpOnly cookie and never echoed in the body.
  /password/forgot answers identically for known and unknown emails.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    CodeConfirm,
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    ResetPasswordRequest,
    SessionResponse,
)
from api.notifications import (
    deliver,
    deliver_quietly,
    email_failed_response,
    password_changed_message,
    verification_code_message,
)
from auth.dependencies import require_admin_or_manager, require_auth
from auth.models import Claims, SessionResult
from auth.password_flows import PasswordFlows
from auth.resolver import authenticate, authenticate_admin
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import get_settings
from core.mailer import MailerError

logger = logging.getLogger("ccm.api.auth")

_settings = get_settings()

# Auth policy:
# - POST /auth/login, /auth/admin-login:          public, rate-limited
# - POST /auth/logout:                            public -- clearing a cookie needs no prior auth
# - GET  /auth/me:                                requires auth (require_auth)
# - POST /auth/password/change/*:                 requires admin or manager (require_admin_or_manager)
# - POST /auth/password/forgot, /password/reset:  public, rate-limited
router = APIRouter()

_RESET_SENT = "If that email belongs to an account, a reset code has been sent."


def _session_response(result: SessionResult) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=SessionResponse(
            role=result.role,
            source=result.source,
            expires_in=result.expires_in,
            user=result.user,
        ).model_dump(),
    )
    set_auth_cookie(resp, result.token, result.expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate against admins, then active users; set the authToken cookie.

    Wrong username and wrong password produce the same 401 body.
    """
    result = authenticate(request.app.state.credentials, body.username, body.password)
    return _session_response(result)


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/admin-login", response_model=SessionResponse)
def admin_login(request: Request, body: LoginRequest) -> JSONResponse:
    """Admins-table-only login issuing a short-lived session."""
    result = authenticate_admin(request.app.state.credentials, body.username, body.password)
    return _session_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the session cookie. The token itself stays valid until it expires."""
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(claims: Claims = Depends(require_auth)) -> MeResponse:
    """Return the identity carried by the session token."""
    return MeResponse(
        username=claims.username,
        role=claims.role,
        source=claims.source,
        user_id=claims.user_id,
        email=claims.email,
        first_name=claims.first_name,
        last_name=claims.last_name,
    )


# ---------------------------------------------------------------------------
# Own password change (admin or manager)
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.post("/auth/password/change/request", response_model=MessageResponse)
def request_password_change(
    request: Request,
    body: PasswordChangeRequest,
    claims: Claims = Depends(require_admin_or_manager),
):
    """Check the current password, stage the new one, and email a verification code."""
    flows: PasswordFlows = request.app.state.password_flows
    email, issue = flows.request_own_password_change(
        claims, body.current_password, body.new_password, body.confirm_password
    )
    message = verification_code_message(
        issue.code, "You have requested to change your password.", _settings.otp_expire_seconds
    )
    try:
        sent = deliver(request.app.state.mailer, email, message)
    except MailerError:
        return email_failed_response("Verification code was created but the email could not be sent.")
    return MessageResponse(message="Verification code sent to your email", email_sent=sent)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/auth/password/change/confirm", response_model=MessageResponse)
def confirm_password_change(
    request: Request,
    body: CodeConfirm,
    claims: Claims = Depends(require_admin_or_manager),
) -> MessageResponse:
    """Commit the staged password if the code verifies, then send a confirmation email."""
    flows: PasswordFlows = request.app.state.password_flows
    email = flows.confirm_own_password_change(claims, body.code)
    sent = deliver_quietly(request.app.state.mailer, email, password_changed_message())
    return MessageResponse(message="Password changed successfully", email_sent=sent)


# ---------------------------------------------------------------------------
# Self-service reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.post("/auth/password/forgot", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Email a reset code when the address belongs to an admin or active user.

    The response never reveals whether the address was known. A delivery
    failure is logged but not reported for the same reason.
    """
    flows: PasswordFlows = request.app.state.password_flows
    issue = flows.request_password_reset(body.email)
    if issue is not None:
        message = verification_code_message(
            issue.code, "You have requested a password reset.", _settings.password_reset_expire_seconds
        )
        deliver_quietly(request.app.state.mailer, body.email, message)
    return MessageResponse(message=_RESET_SENT)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/auth/password/reset", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Verify the reset code and write the new password to the owning table."""
    flows: PasswordFlows = request.app.state.password_flows
    flows.confirm_password_reset(body.email, body.code, body.new_password, body.confirm_password)
    deliver_quietly(request.app.state.mailer, body.email, password_changed_message())
    return MessageResponse(message="Password reset successful")
