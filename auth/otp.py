"""
auth/otp.py -- One-time code engine backed by the otp_records table.

A code is bound to a tuple (owner_email, subject_email, operation):
  owner_email   -- whoever must type the code (it is emailed to them)
  subject_email -- the principal the operation acts on, or None when it is
                   the owner themselves
  operation     -- an OtpOperation value

Lifecycle:
  create()  supersedes any unused code for the tuple, then stores the bcrypt
            hash of a fresh six-digit code plus an optional staged payload.
            The plaintext code is returned once for delivery and never stored.
  verify()  scans unused records for the tuple, rejects expired ones, bcrypt-
            compares the rest, and consumes the first match. Consumption and
            the caller's commit callback share one transaction.
  clear()   invalidates every unused code for the tuple.

Expiry is judged against the injected clock at verify time, so a code never
verifies after expires_at even if the purge loop has not yet removed it.

Layer rule: imports from auth/ siblings only.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import OtpExpired, OtpMismatch, OtpNotFound, ValidationError
from auth.models import OtpIssue, OtpOperation, OtpRecord
from auth.passwords import hash_secret, verify_secret
from auth.store import CredentialStore, utcnow

logger = logging.getLogger("ccm.auth.otp")

_CODE_LENGTH = 6

# Called inside the verify transaction with (conn, payload). Raising rolls
# back the consumption of the code.
CommitCallback = Callable[[object, "str | None"], None]


def generate_code() -> str:
    """Return a uniformly random six-digit code in 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def _operation_value(operation) -> str:
    try:
        return OtpOperation(operation).value
    except ValueError:
        raise ValidationError(f"Unknown OTP operation: {operation!r}") from None


class OtpEngine:
    """Create, verify and invalidate hashed one-time codes.

    Args:
        store: CredentialStore holding the otp_records table.
        clock: Zero-argument callable returning an aware UTC datetime.
               Tests pass a controllable clock to simulate expiry.
    """

    def __init__(self, store: CredentialStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def create(
        self,
        owner_email: str,
        operation,
        ttl_seconds: int,
        subject_email: str | None = None,
        payload: str | None = None,
    ) -> OtpIssue:
        """Issue a new code for the tuple, superseding any earlier unused one."""
        if not owner_email:
            raise ValidationError("An owner email is required.")
        if ttl_seconds <= 0:
            raise ValidationError("OTP lifetime must be positive.")
        op = _operation_value(operation)
        code = generate_code()
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        record = OtpRecord(
            operation=op,
            owner_email=owner_email,
            subject_email=subject_email,
            code_hash=hash_secret(code),
            payload=payload,
            expires_at=expires_at,
        )
        with self._store.begin() as conn:
            superseded = self._store.supersede_otps(owner_email, subject_email, op, conn=conn)
            otp_id = self._store.insert_otp(record, conn=conn)
        logger.info("OTP issued: id=%d operation=%s superseded=%d", otp_id, op, superseded)
        return OtpIssue(otp_id=otp_id, code=code, expires_at=expires_at)

    def verify(
        self,
        owner_email: str,
        operation,
        code: str,
        subject_email: str | None = None,
        on_success: CommitCallback | None = None,
    ) -> str | None:
        """Consume a matching code and return its staged payload.

        on_success, when given, runs inside the same transaction as the
        consumption. If it raises, the code stays unused and nothing it wrote
        is kept.

        Raises:
            ValidationError: code is not a six-digit string.
            OtpNotFound:     no unused record exists for the tuple.
            OtpExpired:      unused records exist but all are past expiry.
            OtpMismatch:     no live record matches the supplied code.
        """
        if not isinstance(code, str) or len(code.strip()) != _CODE_LENGTH or not code.strip().isdigit():
            raise ValidationError("Verification code must be a 6-digit number.")
        code = code.strip()
        op = _operation_value(operation)
        now = self._clock()

        with self._store.begin() as conn:
            candidates = self._store.unused_otps(owner_email, subject_email, op, conn=conn)
            if not candidates:
                raise OtpNotFound()
            live = [r for r in candidates if now <= r.expires_at]
            if not live:
                raise OtpExpired()
            match = next((r for r in live if verify_secret(code, r.code_hash)), None)
            if match is None:
                logger.info("OTP mismatch: operation=%s candidates=%d", op, len(live))
                raise OtpMismatch()
            if not self._store.mark_otp_used(match.id, conn=conn):
                # A concurrent request consumed it between the scan and the update.
                raise OtpNotFound()
            if on_success is not None:
                on_success(conn, match.payload)

        logger.info("OTP verified: id=%d operation=%s", match.id, op)
        return match.payload

    def clear(self, owner_email: str, operation, subject_email: str | None = None) -> int:
        """Invalidate every unused code for the tuple. Returns the count."""
        return self._store.supersede_otps(owner_email, subject_email, _operation_value(operation))

    def purge_expired(self) -> int:
        removed = self._store.purge_expired_otps(self._clock())
        if removed:
            logger.info("Purged %d expired OTP records", removed)
        return removed
