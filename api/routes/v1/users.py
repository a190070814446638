"""
api/routes/v1/users.py -- Managed users, invitations and manager password endpoints.

Routes:
  GET   /api/v1/users                       -- list managed principals (admin only)
  PATCH /api/v1/users/{id}                  -- activate / deactivate (admin only)
  POST  /api/v1/invites                     -- create invitation, email link (admin only)
  GET   /api/v1/invites                     -- all invitations with derived status (admin only)
  POST  /api/v1/invites/{id}/resend         -- rotate token + expiry, email link (admin only)
  GET   /api/v1/invites/validate?token=     -- public: what the acceptance page shows
  POST  /api/v1/invites/accept              -- public: create the account
  POST  /api/v1/managers/password/request   -- admin stages a manager password, code to admin
  POST  /api/v1/managers/password/confirm   -- admin confirms with the code

Security:
  [M4] PATCH /users/{id} blocks self-deactivation and last-admin-deactivation.
  Invitation and OTP secrets leave the process only inside the email body.
  When delivery fails after the invitation or code was stored, the route
  answers 502 email_failed; the record stays valid and can be resent.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from api.limiter import limiter
from api.models import (
    ErrorDetail,
    InviteAccept,
    InviteAcceptResponse,
    InviteCreate,
    InviteCreatedResponse,
    InviteResponse,
    InviteValidateResponse,
    ManagerPasswordConfirm,
    ManagerPasswordRequest,
    MessageResponse,
    UserPatch,
    UserResponse,
)
from api.notifications import (
    deliver,
    email_failed_response,
    invitation_link,
    invitation_message,
    verification_code_message,
)
from auth.dependencies import require_admin_role
from auth.errors import Forbidden, ValidationError
from auth.invites import InvitationEngine
from auth.models import ROLE_ADMIN, SOURCE_USERS, Claims, InvitationIssue
from auth.password_flows import PasswordFlows
from auth.store import CredentialStore
from core.config import get_settings
from core.mailer import MailerError

logger = logging.getLogger("ccm.api.users")

_settings = get_settings()

# Auth policy:
# - GET/PATCH /users, POST/GET /invites, POST /invites/{id}/resend: requires admin
# - GET /invites/validate, POST /invites/accept:                     public, rate-limited
# - POST /managers/password/*:                                       requires admin
router = APIRouter()


def _not_found(what: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message=f"{what} not found.").model_dump(),
    )


def _inviter(claims: Claims) -> str:
    return claims.email or claims.username


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, claims: Claims = Depends(require_admin_role)) -> list[UserResponse]:
    """Return all managed principals, newest first. Password hashes are never included."""
    store: CredentialStore = request.app.state.credentials
    return [UserResponse.from_principal(u) for u in store.list_users()]


@router.patch("/users/{user_id}", response_model=UserResponse)
def patch_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    claims: Claims = Depends(require_admin_role),
) -> UserResponse:
    """Activate or deactivate a managed principal.

    Deactivation takes effect at the next login; sessions already issued stay
    valid until they expire.
    """
    store: CredentialStore = request.app.state.credentials
    user = store.get_user_by_id(user_id)
    if user is None:
        raise _not_found("User")
    if not body.is_active and user.is_active:
        if claims.source == SOURCE_USERS and claims.user_id == user_id:  # [M4]
            raise Forbidden("You cannot deactivate your own account.")
        if user.role.lower() == ROLE_ADMIN and store.count_active_admins() <= 1:  # [M4]
            raise Forbidden("Cannot deactivate the last active admin.")
    store.set_user_active(user_id, body.is_active)
    logger.info("User %d is_active=%s by %s", user_id, body.is_active, claims.username)
    return UserResponse.from_principal(store.get_user_by_id(user_id))


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


def _send_invitation(request: Request, issue: InvitationIssue) -> bool:
    invite = issue.invitation
    link = invitation_link(_settings.frontend_url, issue.raw_token, _settings.invite_accept_path)
    return deliver(request.app.state.mailer, invite.email, invitation_message(invite, link, _settings.invite_expire_seconds))


@router.post("/invites", status_code=status.HTTP_201_CREATED, response_model=InviteCreatedResponse)
def create_invite(
    request: Request,
    body: InviteCreate,
    claims: Claims = Depends(require_admin_role),
):
    """Create an invitation and email the acceptance link to the invitee."""
    engine: InvitationEngine = request.app.state.invites
    issue = engine.create(body.email, body.first_name, body.last_name, body.role.value, _inviter(claims))
    try:
        sent = _send_invitation(request, issue)
    except MailerError:
        return email_failed_response("Invitation created but the email could not be sent. Use resend to retry.")
    invite = issue.invitation
    return InviteCreatedResponse(
        message="Invitation sent successfully",
        invite_id=invite.id,
        username=invite.username,
        expires_at=invite.expires_at.isoformat(),
        email_sent=sent,
    )


@router.get("/invites", response_model=list[InviteResponse])
def list_invites(request: Request, claims: Claims = Depends(require_admin_role)) -> list[InviteResponse]:
    """Return every invitation, newest first, with status active / expired / used."""
    engine: InvitationEngine = request.app.state.invites
    return [InviteResponse.from_invitation(inv, st) for inv, st in engine.list_invitations()]


@router.post("/invites/{invite_id}/resend", response_model=InviteCreatedResponse)
def resend_invite(
    request: Request,
    invite_id: int,
    claims: Claims = Depends(require_admin_role),
):
    """Rotate the token and expiry of an unused invitation and email the new link."""
    engine: InvitationEngine = request.app.state.invites
    issue = engine.resend(invite_id, _inviter(claims))
    try:
        sent = _send_invitation(request, issue)
    except MailerError:
        return email_failed_response("Invitation renewed but the email could not be sent.")
    invite = issue.invitation
    return InviteCreatedResponse(
        message="Invitation resent successfully",
        invite_id=invite.id,
        username=invite.username,
        expires_at=invite.expires_at.isoformat(),
        email_sent=sent,
    )


@limiter.limit(_settings.login_rate_limit)
@router.get("/invites/validate", response_model=InviteValidateResponse)
def validate_invite(
    request: Request,
    token: str = Query(min_length=1, max_length=256),
) -> InviteValidateResponse:
    """Return the invitation behind token, or 400 invalid_or_expired."""
    engine: InvitationEngine = request.app.state.invites
    invite = engine.validate(token)
    return InviteValidateResponse(
        email=invite.email,
        first_name=invite.first_name,
        last_name=invite.last_name,
        role=invite.role,
        username=invite.username,
    )


@limiter.limit(_settings.login_rate_limit)
@router.post("/invites/accept", status_code=status.HTTP_201_CREATED, response_model=InviteAcceptResponse)
def accept_invite(request: Request, body: InviteAccept) -> InviteAcceptResponse:
    """Create the invited account and consume the invitation in one transaction."""
    if body.confirm_password is not None and body.confirm_password != body.password:
        raise ValidationError("Passwords do not match")
    engine: InvitationEngine = request.app.state.invites
    user = engine.accept(body.token, body.password)
    return InviteAcceptResponse(username=user.username, role=user.role.lower())


# ---------------------------------------------------------------------------
# Manager password management
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.post("/managers/password/request", response_model=MessageResponse)
def request_manager_password(
    request: Request,
    body: ManagerPasswordRequest,
    claims: Claims = Depends(require_admin_role),
):
    """Stage a new password for a manager and email the code to the requesting admin."""
    flows: PasswordFlows = request.app.state.password_flows
    admin_email = flows.resolve_email(claims)
    issue = flows.request_manager_password_change(
        admin_email, body.manager_email, body.new_password, body.confirm_password
    )
    message = verification_code_message(
        issue.code,
        f"A password change was requested for manager {body.manager_email}.",
        _settings.otp_expire_seconds,
    )
    try:
        sent = deliver(request.app.state.mailer, admin_email, message)
    except MailerError:
        return email_failed_response("Verification code was created but the email could not be sent.")
    return MessageResponse(message="Verification code sent to your email", email_sent=sent)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/managers/password/confirm", response_model=MessageResponse)
def confirm_manager_password(
    request: Request,
    body: ManagerPasswordConfirm,
    claims: Claims = Depends(require_admin_role),
) -> MessageResponse:
    """Commit the staged manager password if the code verifies."""
    flows: PasswordFlows = request.app.state.password_flows
    admin_email = flows.resolve_email(claims)
    flows.verify_manager_password_change_otp(admin_email, body.manager_email, body.code)
    return MessageResponse(message="Manager password updated successfully")
