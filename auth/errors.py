"""
auth/errors.py -- Exception taxonomy for the authentication subsystem.

Every business-rule failure raised by auth/ is an AuthError carrying a stable
machine-readable code, a user-safe message, and the HTTP status the API layer
should answer with. api/main.py registers one exception handler that renders
any AuthError as {"success": false, "error": {"code", "message"}}.

Messages never include passwords, tokens, or one-time codes.

Layer rule: no imports from api/, core/, or submissions/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for recoverable auth failures."""

    code = "auth_error"
    status_code = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid request."


class InvalidCredentials(AuthError):
    """Uniform login failure -- never says whether the username exists."""

    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials"


class Unauthenticated(AuthError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Invalid or expired authentication token."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "Access denied."


class InsufficientRole(Forbidden):
    """Credentials were valid but the principal's role has no dashboard access."""

    code = "insufficient_role"
    default_message = "Access denied: Insufficient permissions"


class NotFoundOrUsed(AuthError):
    code = "not_found_or_used"
    status_code = 400
    default_message = "Not found or already used."


class InvalidOrExpired(AuthError):
    code = "invalid_or_expired"
    status_code = 400
    default_message = "Invalid or expired token."


class OtpError(InvalidOrExpired):
    """Verification code failure. reason is one of not_found, expired, mismatch."""

    reason = "invalid"
    default_message = "Invalid or expired verification code."


class OtpNotFound(OtpError):
    reason = "not_found"
    default_message = "No verification code requested or it was already used."


class OtpExpired(OtpError):
    reason = "expired"
    default_message = "Verification code expired."


class OtpMismatch(OtpError):
    reason = "mismatch"
    default_message = "Invalid verification code."


class AlreadyExists(AuthError):
    code = "already_exists"
    status_code = 409
    default_message = "User with this email already exists"


class DuplicatePending(AuthError):
    code = "duplicate_pending"
    status_code = 409
    default_message = "Pending invitation already exists for this email"


class UsernameGenerationExhausted(AuthError):
    code = "username_generation_exhausted"
    status_code = 500
    default_message = "Could not allocate a unique username."


class StoreUnavailable(AuthError):
    code = "store_unavailable"
    status_code = 500
    default_message = "The credential store is temporarily unavailable."
