"""
API request and response models for the CCM portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
submissions/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: auth/ and submissions/ models = domain truth;
api/ models = API contract.

Password fields are capped at 128 characters. bcrypt only reads the first 72
bytes; the cap stops oversized bodies from reaching the hasher at all.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from auth.models import Invitation, ManagedPrincipal
from submissions.models import Submission

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
CODE_PATTERN = r"^\s*\d{6}\s*$"

_PASSWORD = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    manager = "manager"


class SubmissionStatusEnum(str, Enum):
    active = "active"
    deleted = "deleted"
    archived = "archived"


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class MessageResponse(BaseModel):
    """Generic success acknowledgement."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    email_sent: Optional[bool] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login and /auth/admin-login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    # Passwords are not stripped; leading/trailing spaces are significant.
    password: str = Field(min_length=1, max_length=128, json_schema_extra={"format": "password"})


class SessionResponse(BaseModel):
    """Successful login. The token itself travels only in the authToken cookie."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Login successful"
    role: str
    source: str
    expires_in: int
    user: dict


class MeResponse(BaseModel):
    """Response for GET /auth/me -- the verified session claims."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    username: str
    role: str
    source: str
    user_id: Optional[int] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PasswordChangeRequest(BaseModel):
    """Request body for POST /auth/password/change/request."""

    current_password: str = _PASSWORD
    new_password: str = _PASSWORD
    confirm_password: str = _PASSWORD


class CodeConfirm(BaseModel):
    """Request body carrying only a six-digit verification code."""

    code: str = Field(pattern=CODE_PATTERN)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /auth/password/reset."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    code: str = Field(pattern=CODE_PATTERN)
    new_password: str = _PASSWORD
    confirm_password: Optional[str] = Field(default=None, max_length=128)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Managed principal as returned to admins. Never includes the hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    first_name: str
    last_name: str
    username: str
    email: str
    role: str
    is_active: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_principal(cls, user: ManagedPrincipal) -> "UserResponse":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            username=user.username,
            email=user.email,
            role=user.role.lower(),
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserPatch(BaseModel):
    """Request body for PATCH /users/{id}."""

    is_active: StrictBool


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class InviteCreate(BaseModel):
    """Request body for POST /invites."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: RoleEnum = RoleEnum.manager


class InviteCreatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    invite_id: int
    username: Optional[str]
    expires_at: str
    email_sent: bool


class InviteResponse(BaseModel):
    """One invitation in GET /invites. status is derived: active | expired | used."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: str
    username: Optional[str]
    invited_by: str
    expires_at: str
    created_at: str
    status: str

    @classmethod
    def from_invitation(cls, invite: Invitation, status: str) -> "InviteResponse":
        return cls(
            id=invite.id,
            email=invite.email,
            first_name=invite.first_name,
            last_name=invite.last_name,
            role=invite.role,
            username=invite.username,
            invited_by=invite.invited_by,
            expires_at=invite.expires_at.isoformat(),
            created_at=invite.created_at,
            status=status,
        )


class InviteValidateResponse(BaseModel):
    """Response for GET /invites/validate -- what the acceptance page shows."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    email: str
    first_name: str
    last_name: str
    role: str
    username: Optional[str]


class InviteAccept(BaseModel):
    """Request body for POST /invites/accept."""

    token: str = Field(min_length=1, max_length=256)
    password: str = _PASSWORD
    confirm_password: Optional[str] = Field(default=None, max_length=128)


class InviteAcceptResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Account created successfully"
    username: str
    role: str


# ---------------------------------------------------------------------------
# Manager password management
# ---------------------------------------------------------------------------


class ManagerPasswordRequest(BaseModel):
    """Request body for POST /managers/password/request."""

    manager_email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    new_password: str = _PASSWORD
    confirm_password: Optional[str] = Field(default=None, max_length=128)


class ManagerPasswordConfirm(BaseModel):
    """Request body for POST /managers/password/confirm."""

    manager_email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    code: str = Field(pattern=CODE_PATTERN)


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


class ContactRequest(BaseModel):
    """Request body for POST /contact (public site form)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, max_length=20)
    organization: Optional[str] = Field(default=None, max_length=100)
    message: Optional[str] = Field(default=None, max_length=5000)


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    phone: Optional[str]
    organization: Optional[str]
    message: Optional[str]
    status: str
    is_read: bool
    submitted_at: str

    @classmethod
    def from_submission(cls, sub: Submission) -> "SubmissionResponse":
        return cls(
            id=sub.id,
            name=sub.name,
            email=sub.email,
            phone=sub.phone,
            organization=sub.organization,
            message=sub.message,
            status=sub.status,
            is_read=sub.is_read,
            submitted_at=sub.submitted_at,
        )


class SubmissionStatusPatch(BaseModel):
    status: SubmissionStatusEnum


class SubmissionReadPatch(BaseModel):
    read: StrictBool
