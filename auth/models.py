"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in submissions/models.py -- dataclasses own domain shape; stores and engines
do the work.

Two credential sets exist side by side:
  admins -- AdminPrincipal rows provisioned out-of-band (CLI seed).
  users  -- ManagedPrincipal rows created by invitation acceptance.
The "source" tag carried in every session says which set authenticated it.

Layer rule: no imports from api/, core/, or submissions/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
DASHBOARD_ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER})

SOURCE_ADMINS = "admins"
SOURCE_USERS = "users"


class OtpOperation(str, Enum):
    # Any dashboard principal changing their own password. The stored tag
    # keeps its historical value so existing otp_records rows stay readable.
    OWN_PASSWORD_CHANGE = "admin_password_change"
    MANAGER_PASSWORD_CHANGE = "manager_password_change"
    PASSWORD_RESET = "password_reset"


@dataclass
class AdminPrincipal:
    """A row of the admins table.

    password holds a bcrypt digest, or -- for rows seeded before hashing was
    introduced -- the plaintext value. auth.passwords.check_password detects
    the difference.
    """

    username: str
    password: str
    email: str | None = None
    id: int | None = None

    @property
    def role(self) -> str:
        return ROLE_ADMIN


@dataclass
class ManagedPrincipal:
    """A row of the users table (managers and invited admins)."""

    first_name: str
    last_name: str
    username: str
    email: str
    role: str  # "admin" | "manager", compared lowercased
    password_hash: str
    is_active: bool = True
    id: int | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Claims:
    """Verified contents of a session token."""

    username: str
    role: str
    source: str
    user_id: int | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


@dataclass
class SessionResult:
    """Successful login: the signed token plus a hash-free user projection."""

    token: str
    role: str
    source: str
    expires_in: int
    user: dict = field(default_factory=dict)


@dataclass
class Invitation:
    """A single-use, time-boxed invitation. Only token_hash is ever stored."""

    email: str
    first_name: str
    last_name: str
    role: str
    token_hash: str
    expires_at: datetime
    invited_by: str
    username: str | None = None
    used: bool = False
    id: int | None = None
    created_at: str = ""

    def status(self, now: datetime) -> str:
        if self.used:
            return "used"
        if now > self.expires_at:
            return "expired"
        return "active"


@dataclass
class InvitationIssue:
    """Result of create/resend. raw_token goes into the emailed link, then is dropped."""

    invitation: Invitation
    raw_token: str


@dataclass
class OtpRecord:
    """A hashed one-time code bound to (owner_email, subject_email, operation)."""

    operation: str
    owner_email: str
    code_hash: str
    expires_at: datetime
    subject_email: str | None = None
    payload: str | None = None
    used: bool = False
    id: int | None = None
    created_at: str = ""


@dataclass
class OtpIssue:
    """Result of OtpEngine.create. code is delivered by email, then dropped."""

    otp_id: int
    code: str
    expires_at: datetime
