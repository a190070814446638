"""
api/routes/v1/submissions.py -- Contact form intake and the submissions dashboard.

Routes:
  POST  /api/v1/contact                    -- public form post (rate-limited)
  GET   /api/v1/submissions?status=        -- list, filter active|deleted|archived|all
  PATCH /api/v1/submissions/{id}/status    -- delete / restore / archive
  PATCH /api/v1/submissions/{id}/read      -- mark read / unread

Dashboard routes require role admin or manager.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from api.limiter import limiter
from api.models import (
    ContactRequest,
    ErrorDetail,
    MessageResponse,
    SubmissionReadPatch,
    SubmissionResponse,
    SubmissionStatusPatch,
)
from api.notifications import deliver_quietly, submission_notice_message, submission_thanks_message
from auth.dependencies import require_admin_or_manager
from auth.models import Claims
from core.config import get_settings
from submissions.models import Submission
from submissions.store import SubmissionStore

logger = logging.getLogger("ccm.api.submissions")

_settings = get_settings()

# Auth policy:
# - POST /contact:       public, rate-limited
# - /submissions/*:      requires admin or manager (require_admin_or_manager)
router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message="Submission not found.").model_dump(),
    )


@limiter.limit(_settings.contact_rate_limit)
@router.post("/contact", status_code=status.HTTP_201_CREATED, response_model=MessageResponse)
def contact(request: Request, body: ContactRequest) -> MessageResponse:
    """Store a contact request, notify staff, and thank the sender.

    The submission is kept even when neither email goes out.
    """
    store: SubmissionStore = request.app.state.submissions
    sub = Submission(
        name=body.name,
        email=body.email,
        phone=body.phone,
        organization=body.organization,
        message=body.message,
    )
    sub.id = store.create(sub)
    mailer = request.app.state.mailer
    sent = False
    if _settings.notify_email:
        sent = deliver_quietly(mailer, _settings.notify_email, submission_notice_message(sub))
    deliver_quietly(mailer, sub.email, submission_thanks_message(sub))
    logger.info("Submission %d stored (staff notified=%s)", sub.id, sent)
    return MessageResponse(message="Form submitted successfully", email_sent=sent)


@router.get("/submissions", response_model=list[SubmissionResponse])
def list_submissions(
    request: Request,
    status_filter: Optional[str] = Query(default=None, alias="status", pattern="^(active|deleted|archived|all)$"),
    claims: Claims = Depends(require_admin_or_manager),
) -> list[SubmissionResponse]:
    store: SubmissionStore = request.app.state.submissions
    return [SubmissionResponse.from_submission(s) for s in store.list(status_filter)]


@router.patch("/submissions/{submission_id}/status", response_model=MessageResponse)
def update_submission_status(
    request: Request,
    submission_id: int,
    body: SubmissionStatusPatch,
    claims: Claims = Depends(require_admin_or_manager),
) -> MessageResponse:
    store: SubmissionStore = request.app.state.submissions
    if not store.update_status(submission_id, body.status.value):
        raise _not_found()
    logger.info("Submission %d status=%s by %s", submission_id, body.status.value, claims.username)
    return MessageResponse(message="Status updated")


@router.patch("/submissions/{submission_id}/read", response_model=MessageResponse)
def mark_submission_read(
    request: Request,
    submission_id: int,
    body: SubmissionReadPatch,
    claims: Claims = Depends(require_admin_or_manager),
) -> MessageResponse:
    store: SubmissionStore = request.app.state.submissions
    if not store.set_read(submission_id, body.read):
        raise _not_found()
    return MessageResponse(message="Read status updated")
