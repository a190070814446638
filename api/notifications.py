"""
api/notifications.py -- Email composition and delivery for API routes.

Bodies are deliberately plain HTML. Every user-supplied value is escaped with
html.escape before interpolation.

deliver() is the only place routes hand a message to the mailer. It returns
False when mail is disabled and raises MailerError when delivery fails, so
routes that persisted an invitation or OTP can report partial success.
deliver_quietly() swallows the failure for courtesy messages.
"""

from __future__ import annotations

import html
import logging
from urllib.parse import quote

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.models import Invitation
from core.mailer import GraphMailer, MailerError
from submissions.models import Submission

logger = logging.getLogger("ccm.api.notifications")


def _minutes(seconds: int) -> int:
    return max(seconds // 60, 1)


def invitation_link(frontend_url: str, raw_token: str, path: str = "/#/accept-invite") -> str:
    return f"{frontend_url.rstrip('/')}/{path.lstrip('/')}?token={quote(raw_token)}"


def invitation_message(invite: Invitation, link: str, ttl_seconds: int) -> tuple[str, str]:
    subject = "You're invited to the CCM admin portal"
    body = (
        f"<p>Hello {html.escape(invite.first_name)},</p>"
        f"<p>You have been invited to join the CCM admin portal as <b>{html.escape(invite.role)}</b>.</p>"
        f"<p>Your username will be <b>{html.escape(invite.username or '')}</b>.</p>"
        f'<p><a href="{html.escape(link, quote=True)}">Accept the invitation</a></p>'
        f"<p>This link expires in {_minutes(ttl_seconds)} minutes.</p>"
    )
    return subject, body


def verification_code_message(code: str, purpose: str, ttl_seconds: int) -> tuple[str, str]:
    subject = "Your verification code"
    body = (
        f"<p>{html.escape(purpose)}</p>"
        f"<p>Your verification code is: <b>{html.escape(code)}</b></p>"
        f"<p>This code will expire in {_minutes(ttl_seconds)} minutes.</p>"
        "<p>If you did not request this, please ignore this email.</p>"
    )
    return subject, body


def password_changed_message() -> tuple[str, str]:
    subject = "Your password was changed"
    body = (
        "<p>The password for your CCM admin portal account was just changed.</p>"
        "<p>If you did not make this change, contact an administrator immediately.</p>"
    )
    return subject, body


def submission_notice_message(sub: Submission) -> tuple[str, str]:
    subject = "New Demo Request Submitted"
    body = (
        "<h2>New Demo Request</h2>"
        f"<p><strong>Name:</strong> {html.escape(sub.name)}</p>"
        f"<p><strong>Email:</strong> {html.escape(sub.email)}</p>"
        f"<p><strong>Phone:</strong> {html.escape(sub.phone or '')}</p>"
        f"<p><strong>Organization:</strong> {html.escape(sub.organization or '')}</p>"
        f"<p><strong>Message:</strong> {html.escape(sub.message or 'No additional message provided.')}</p>"
    )
    return subject, body


def submission_thanks_message(sub: Submission) -> tuple[str, str]:
    subject = "Thank you for contacting us"
    body = (
        f"<p>Dear {html.escape(sub.name)},</p>"
        "<p>Thank you for your request. Our team will review it and contact you shortly.</p>"
        "<p>Please do not reply to this email.</p>"
    )
    return subject, body


def deliver(mailer: GraphMailer, to: str, message: tuple[str, str]) -> bool:
    """Send one message. Returns False when mail is disabled.

    Raises MailerError on delivery failure, after logging it.
    """
    subject, body = message
    try:
        return mailer.send(to, subject, body)
    except MailerError as e:
        logger.warning("Email delivery failed (%r): %s", subject, e)
        raise


def deliver_quietly(mailer: GraphMailer, to: str, message: tuple[str, str]) -> bool:
    """Like deliver() but reports a failure as False. For courtesy messages."""
    try:
        return deliver(mailer, to, message)
    except MailerError:
        return False


def email_failed_response(message: str) -> JSONResponse:
    """502 envelope for "state was persisted but the email did not go out"."""
    return JSONResponse(
        status_code=502,
        content=ErrorResponse(error=ErrorDetail(code="email_failed", message=message)).model_dump(),
    )
