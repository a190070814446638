"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Sessions are read from the "authToken" cookie only. Verification is purely
cryptographic plus expiry: no store lookup happens per request, so a
deactivated principal keeps access until the token expires (24h at most).

try_get_claims() is the soft variant (returns None on failure).
require_auth() wraps it and raises Unauthenticated (HTTP 401).
require_admin_role() and require_admin_or_manager() add a role gate and raise
Forbidden (HTTP 403) naming the required role.

Failures are AuthError subclasses; api/main.py renders them into the standard
error envelope.

Layer rule: imports from auth/ siblings only.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Iterable

from fastapi import Request

from auth.errors import Forbidden
from auth.models import DASHBOARD_ROLES, ROLE_ADMIN, Claims
from auth.tokens import AUTH_COOKIE, decode_access_token, verify_token


def ensure_role(claims: Claims, allowed: Iterable[str], requirement: str = "") -> Claims:
    """Raise Forbidden unless claims.role is one of allowed (case-insensitive)."""
    allowed_set = {r.lower() for r in allowed}
    if (claims.role or "").lower() not in allowed_set:
        label = requirement or " or ".join(sorted(allowed_set))
        raise Forbidden(f"Access denied: {label} role required.")
    return claims


def try_get_claims(request: Request) -> Claims | None:
    """Return verified session claims from the cookie, or None. Never raises."""
    return decode_access_token(request.cookies.get(AUTH_COOKIE, ""))


def require_auth(request: Request) -> Claims:
    """Require a valid session. Raises Unauthenticated (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: Claims = Depends(require_auth)): ...
    """
    claims = verify_token(request.cookies.get(AUTH_COOKIE))
    request.state.claims = claims
    return claims


def require_admin_role(request: Request) -> Claims:
    """Require role admin. 401 if unauthenticated, 403 otherwise."""
    return ensure_role(require_auth(request), {ROLE_ADMIN}, "admin")


def require_admin_or_manager(request: Request) -> Claims:
    """Require role admin or manager. 401 if unauthenticated, 403 otherwise."""
    return ensure_role(require_auth(request), DASHBOARD_ROLES, "admin or manager")
