"""
auth/password_flows.py -- OTP-protected password change and reset flows.

Three flows, all built on OtpEngine's create -> email -> verify cycle. The new
password is hashed at request time and staged as the OTP payload; it reaches
a credential column only inside the verify transaction, together with the
consumption of the code.

  own password change      -- an admin or manager changes their own password.
                              The code goes to the caller's own email. Commit
                              targets the caller's credential source
                              (admins.password or users.password_hash).
  manager_password_change  -- an admin sets a manager's password. The code is
                              bound to (admin email, manager email) and goes to
                              the admin. Commit targets users.password_hash.
  password_reset           -- self-service. The email is looked up in admins,
                              then in active users; the resolved source is
                              staged and the commit branches on it. Unknown
                              emails produce no OTP and no error, so callers
                              answer identically either way.

Email delivery is not done here. Each request method returns the OtpIssue and
the recipient so the API layer can compose and send the message.

Layer rule: imports from auth/ siblings only.
"""

from __future__ import annotations

import json
import logging

from auth.errors import NotFoundOrUsed, Unauthenticated, ValidationError
from auth.models import (
    ROLE_MANAGER,
    SOURCE_ADMINS,
    SOURCE_USERS,
    Claims,
    OtpIssue,
    OtpOperation,
)
from auth.otp import OtpEngine
from auth.passwords import check_password, hash_password
from auth.store import CredentialStore

logger = logging.getLogger("ccm.auth.password_flows")


class PasswordFlows:
    """Password change and reset orchestration.

    Args:
        store:               CredentialStore with both principal tables.
        otp:                 OtpEngine sharing the same store.
        min_password_length: Minimum accepted length for new passwords.
        otp_ttl_seconds:     Lifetime of change codes.
        reset_ttl_seconds:   Lifetime of self-service reset codes.
    """

    def __init__(
        self,
        store: CredentialStore,
        otp: OtpEngine,
        min_password_length: int = 8,
        otp_ttl_seconds: int = 300,
        reset_ttl_seconds: int = 600,
    ) -> None:
        self._store = store
        self._otp = otp
        self._min_length = min_password_length
        self._otp_ttl = otp_ttl_seconds
        self._reset_ttl = reset_ttl_seconds

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _check_new_password(self, new_password: str, confirm_password: str | None = None) -> None:
        if not isinstance(new_password, str) or not new_password:
            raise ValidationError("New password is required")
        if confirm_password is not None and new_password != confirm_password:
            raise ValidationError("New passwords do not match")
        if len(new_password) < self._min_length:
            raise ValidationError(f"New password must be at least {self._min_length} characters")

    def _own_credential(self, claims: Claims) -> tuple[str, str | None]:
        """Return (stored credential, email) for the principal behind claims."""
        if claims.source == SOURCE_ADMINS:
            admin = self._store.get_admin_by_username(claims.username)
            if admin is None:
                raise Unauthenticated("Account no longer exists.")
            return admin.password, admin.email
        user = self._store.get_user_by_username(claims.username, active_only=True)
        if user is None:
            raise Unauthenticated("Account no longer exists.")
        return user.password_hash, user.email

    def resolve_email(self, claims: Claims) -> str:
        """Email of the authenticated principal, read from the store."""
        _, email = self._own_credential(claims)
        if not email:
            raise ValidationError("Account email not configured")
        return email

    # ------------------------------------------------------------------
    # Own password change
    # ------------------------------------------------------------------

    def request_own_password_change(
        self, claims: Claims, current_password: str, new_password: str, confirm_password: str
    ) -> tuple[str, OtpIssue]:
        """Verify the current password and stage the new one behind an OTP.

        Returns (recipient email, OtpIssue).
        """
        if not current_password or not new_password or not confirm_password:
            raise ValidationError("All fields are required")
        self._check_new_password(new_password, confirm_password)
        stored, email = self._own_credential(claims)
        if not email:
            raise ValidationError("Account email not configured")
        if not check_password(current_password, stored).ok:
            raise ValidationError("Current password is incorrect")

        payload = json.dumps(
            {"source": claims.source, "username": claims.username, "password_hash": hash_password(new_password)}
        )
        issue = self._otp.create(email, OtpOperation.OWN_PASSWORD_CHANGE, self._otp_ttl, payload=payload)
        logger.info("Password change requested: username=%r source=%s", claims.username, claims.source)
        return email, issue

    def confirm_own_password_change(self, claims: Claims, code: str) -> str:
        """Commit the staged password if code verifies. Returns the account email."""
        email = self.resolve_email(claims)

        def _commit(conn, payload):
            staged = json.loads(payload or "{}")
            if staged.get("username") != claims.username or staged.get("source") != claims.source:
                raise NotFoundOrUsed("Verification code does not belong to this account")
            if not self._store.set_password(claims.source, claims.username, staged["password_hash"], conn=conn):
                raise NotFoundOrUsed("Account not found")

        self._otp.verify(email, OtpOperation.OWN_PASSWORD_CHANGE, code, on_success=_commit)
        logger.info("Password changed: username=%r source=%s", claims.username, claims.source)
        return email

    # ------------------------------------------------------------------
    # Admin sets a manager's password
    # ------------------------------------------------------------------

    def create_manager_password_change_otp(self, admin_email: str, manager_email: str, new_password_hash: str) -> OtpIssue:
        """Stage new_password_hash for the manager behind an OTP owned by the admin."""
        if not admin_email or not manager_email or not new_password_hash:
            raise ValidationError("Admin email, manager email and new password are required")
        manager = self._store.get_user_by_email(manager_email)
        if manager is None or manager.role.lower() != ROLE_MANAGER:
            raise NotFoundOrUsed("Manager not found")
        return self._otp.create(
            admin_email,
            OtpOperation.MANAGER_PASSWORD_CHANGE,
            self._otp_ttl,
            subject_email=manager_email,
            payload=new_password_hash,
        )

    def verify_manager_password_change_otp(self, admin_email: str, manager_email: str, code: str) -> None:
        """Commit the staged hash to the manager and consume the OTP atomically."""

        def _commit(conn, payload):
            if not payload or not self._store.set_password_by_email(SOURCE_USERS, manager_email, payload, conn=conn):
                raise NotFoundOrUsed("Manager not found")

        self._otp.verify(
            admin_email,
            OtpOperation.MANAGER_PASSWORD_CHANGE,
            code,
            subject_email=manager_email,
            on_success=_commit,
        )
        logger.info("Manager password changed by admin")

    def request_manager_password_change(
        self, admin_email: str, manager_email: str, new_password: str, confirm_password: str | None = None
    ) -> OtpIssue:
        self._check_new_password(new_password, confirm_password)
        return self.create_manager_password_change_otp(admin_email, manager_email, hash_password(new_password))

    # ------------------------------------------------------------------
    # Self-service reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> OtpIssue | None:
        """Issue a reset code if email belongs to a principal, else return None."""
        if not email or "@" not in email:
            raise ValidationError("A valid email is required")
        email = email.strip().lower()
        if self._store.get_admin_by_email(email) is not None:
            source = SOURCE_ADMINS
        elif self._store.get_user_by_email(email, active_only=True) is not None:
            source = SOURCE_USERS
        else:
            logger.info("Password reset requested for an unknown email")
            return None
        issue = self._otp.create(email, OtpOperation.PASSWORD_RESET, self._reset_ttl, payload=source)
        logger.info("Password reset code issued: source=%s", source)
        return issue

    def confirm_password_reset(
        self, email: str, code: str, new_password: str, confirm_password: str | None = None
    ) -> None:
        """Verify the reset code and write the new password to the staged source."""
        if not email:
            raise ValidationError("Email is required")
        self._check_new_password(new_password, confirm_password)
        email = email.strip().lower()
        new_hash = hash_password(new_password)

        def _commit(conn, source):
            if source not in (SOURCE_ADMINS, SOURCE_USERS):
                raise NotFoundOrUsed("Account not found")
            if not self._store.set_password_by_email(source, email, new_hash, conn=conn):
                raise NotFoundOrUsed("Account not found")

        self._otp.verify(email, OtpOperation.PASSWORD_RESET, code, on_success=_commit)
        self._otp.clear(email, OtpOperation.PASSWORD_RESET)
        logger.info("Password reset completed")
