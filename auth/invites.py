"""
auth/invites.py -- Invitation engine: username allocation, issue, validation,
acceptance and resend.

Tokens:
  A raw invitation token is secrets.token_hex(32) (256 bits). Only its bcrypt
  hash is stored. Because each hash carries its own salt, validate() cannot
  look a token up by hash; it loads every unused, unexpired invitation and
  verifies the supplied token against each.

Usernames:
  Derived from first + last name: trimmed, lowercased, non-alphanumerics
  stripped. Bases shorter than three characters are padded with "user".
  A three-digit suffix starting at a random value is incremented until the
  candidate is free among principals and unused invitations. After
  _MAX_USERNAME_ATTEMPTS candidates the engine gives up with
  UsernameGenerationExhausted.

Atomicity:
  accept() consumes the invitation (conditional UPDATE ... WHERE used = 0)
  and inserts the principal in one transaction. Both land or neither does.
  UNIQUE constraints on users.email / users.username are the final guard
  against concurrent acceptance; violations surface as AlreadyExists.

Layer rule: imports from auth/ siblings only.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AlreadyExists,
    DuplicatePending,
    InvalidOrExpired,
    NotFoundOrUsed,
    UsernameGenerationExhausted,
    ValidationError,
)
from auth.models import DASHBOARD_ROLES, Invitation, InvitationIssue, ManagedPrincipal
from auth.passwords import hash_password, hash_secret, verify_secret
from auth.store import CredentialStore, utcnow

logger = logging.getLogger("ccm.auth.invites")

_MAX_USERNAME_ATTEMPTS = 100
_MIN_BASE_LENGTH = 3
_PAD = "user"
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_INVITE_TTL_SECONDS = 300


def normalize_username_base(first_name: str, last_name: str) -> str:
    base = _NON_ALNUM_RE.sub("", f"{first_name.strip()}{last_name.strip()}".lower())
    if len(base) < _MIN_BASE_LENGTH:
        base = f"{base}{_PAD}"
    return base


def generate_invite_token() -> str:
    return secrets.token_hex(32)


class InvitationEngine:
    """Issue and consume single-use invitations.

    Args:
        store:       CredentialStore for principals and invitations.
        ttl_seconds: Lifetime of a freshly issued or resent link.
        clock:       Zero-argument callable returning an aware UTC datetime.
    """

    def __init__(
        self,
        store: CredentialStore,
        ttl_seconds: int = DEFAULT_INVITE_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        min_password_length: int = 8,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._min_password_length = min_password_length

    # ------------------------------------------------------------------
    # Usernames
    # ------------------------------------------------------------------

    def generate_unique_username(self, first_name: str, last_name: str, conn=None) -> str:
        """Allocate a username free among principals and unused invitations."""
        if not first_name or not last_name:
            raise ValidationError("First and last name are required.")
        base = normalize_username_base(first_name, last_name)
        suffix = secrets.randbelow(900) + 100
        for _ in range(_MAX_USERNAME_ATTEMPTS):
            candidate = f"{base}{suffix}"
            if not self._store.username_taken(candidate, conn=conn):
                return candidate
            suffix += 1
        logger.error("Username allocation exhausted for base %r", base)
        raise UsernameGenerationExhausted()

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def create(self, email: str, first_name: str, last_name: str, role: str, invited_by: str) -> InvitationIssue:
        """Persist a new invitation and return it with the raw token.

        Raises:
            ValidationError:  missing fields, malformed email or unknown role.
            AlreadyExists:    a principal already owns the email.
            DuplicatePending: an unused, unexpired invitation targets the email.
        """
        email = (email or "").strip().lower()
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        role = (role or "").strip().lower()
        if not email or not first_name or not last_name or not role:
            raise ValidationError("All fields are required")
        if not _EMAIL_RE.match(email):
            raise ValidationError("Invalid email address.")
        if role not in DASHBOARD_ROLES:
            raise ValidationError("Role must be 'admin' or 'manager'.")

        now = self._clock()
        raw_token = generate_invite_token()
        invite = Invitation(
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            token_hash=hash_secret(raw_token),
            expires_at=now + timedelta(seconds=self._ttl),
            invited_by=invited_by,
        )
        try:
            with self._store.begin() as conn:
                if self._store.email_exists(email, conn=conn):
                    raise AlreadyExists()
                if self._store.pending_invitation_exists(email, now, conn=conn):
                    raise DuplicatePending()
                invite.username = self.generate_unique_username(first_name, last_name, conn=conn)
                invite.id = self._store.create_invitation(invite, conn=conn)
        except IntegrityError:
            raise AlreadyExists("Username or email is already taken.") from None

        logger.info("Invitation created: id=%d role=%s invited_by=%s", invite.id, role, invited_by)
        return InvitationIssue(invitation=invite, raw_token=raw_token)

    # ------------------------------------------------------------------
    # Validate / accept
    # ------------------------------------------------------------------

    def _find_by_token(self, raw_token: str, conn=None) -> Invitation:
        if not raw_token:
            raise InvalidOrExpired("Invalid or expired invitation")
        for invite in self._store.active_invitations(self._clock(), conn=conn):
            if verify_secret(raw_token, invite.token_hash):
                return invite
        raise InvalidOrExpired("Invalid or expired invitation")

    def validate(self, raw_token: str) -> Invitation:
        """Return the live invitation matching raw_token or raise InvalidOrExpired."""
        return self._find_by_token(raw_token)

    def accept(self, raw_token: str, password: str) -> ManagedPrincipal:
        """Create the invited principal and consume the invitation atomically."""
        if not isinstance(password, str) or len(password) < self._min_password_length:
            raise ValidationError(f"Password must be at least {self._min_password_length} characters long")
        password_hash = hash_password(password)

        try:
            with self._store.begin() as conn:
                invite = self._find_by_token(raw_token, conn=conn)
                if not self._store.mark_invitation_used(invite.id, conn=conn):
                    raise InvalidOrExpired("Invalid or expired invitation")
                if self._store.email_exists(invite.email, conn=conn):
                    raise AlreadyExists()
                user = ManagedPrincipal(
                    first_name=invite.first_name,
                    last_name=invite.last_name,
                    username=invite.username or self.generate_unique_username(
                        invite.first_name, invite.last_name, conn=conn
                    ),
                    email=invite.email,
                    role=invite.role,
                    password_hash=password_hash,
                )
                user.id = self._store.create_user(user, conn=conn)
        except IntegrityError:
            raise AlreadyExists() from None

        logger.info("Invitation accepted: invite_id=%d user_id=%d", invite.id, user.id)
        return user

    # ------------------------------------------------------------------
    # Resend / listing
    # ------------------------------------------------------------------

    def resend(self, invite_id: int, invited_by: str) -> InvitationIssue:
        """Rotate the token and expiry of an unused invitation in place."""
        invite = self._store.get_invitation(invite_id)
        if invite is None or invite.used:
            raise NotFoundOrUsed("Invitation not found or already used")
        raw_token = generate_invite_token()
        invite.token_hash = hash_secret(raw_token)
        invite.expires_at = self._clock() + timedelta(seconds=self._ttl)
        if not self._store.rotate_invitation_token(invite.id, invite.token_hash, invite.expires_at):
            raise NotFoundOrUsed("Invitation not found or already used")
        logger.info("Invitation resent: id=%d by=%s", invite.id, invited_by)
        return InvitationIssue(invitation=invite, raw_token=raw_token)

    def list_invitations(self) -> list[tuple[Invitation, str]]:
        """All invitations, newest first, each paired with its derived status."""
        now = self._clock()
        return [(invite, invite.status(now)) for invite in self._store.list_invitations()]
