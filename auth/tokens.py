"""
auth/tokens.py -- Session token issue/verify and the session cookie.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       username, user_id, email, role (lowercased), source tag and expiry.
       Verification returns None on any failure -- bad signature, malformed
       token, missing claims and expiry all look the same to the caller.

  Delivery: the token travels only in the "authToken" cookie (HttpOnly,
       SameSite=Lax, Secure when SECURE_COOKIES=true). It is never put in a
       JSON body, so page scripts cannot read it.

  Statelessness: nothing is stored server-side. Logout clears the cookie; a
       copied token stays valid until it expires or SECRET_KEY is rotated.

Layer rule: imports from core/ only (besides auth/ siblings).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import Unauthenticated
from auth.models import Claims
from core.config import get_settings

_settings = get_settings()

_ALGORITHM = "HS256"

AUTH_COOKIE = "authToken"


def create_access_token(claims: Claims, ttl_seconds: int = 0) -> str:
    """Encode a signed JWT for the given claims.

    Args:
        claims:      Identity to embed. role is lowercased here so every
                     consumer compares against the same spelling.
        ttl_seconds: Session duration. 0 (default) uses
                     Settings.session_ttl_seconds (24h).
    """
    duration = ttl_seconds if ttl_seconds > 0 else _settings.session_ttl_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": claims.username,
        "user_id": claims.user_id,
        "email": claims.email or claims.username,
        "role": claims.role.lower(),
        "source": claims.source,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    if claims.first_name is not None:
        payload["first_name"] = claims.first_name
    if claims.last_name is not None:
        payload["last_name"] = claims.last_name
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> Claims | None:
    """Decode and verify a JWT. Returns Claims or None on any failure."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub") or not payload.get("role") or not payload.get("source"):
        return None
    return Claims(
        username=payload["sub"],
        role=str(payload["role"]).lower(),
        source=payload["source"],
        user_id=payload.get("user_id"),
        email=payload.get("email"),
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
    )


def verify_token(token: str | None) -> Claims:
    """Like decode_access_token() but raises Unauthenticated instead of returning None."""
    if not token:
        raise Unauthenticated("No authentication token provided.")
    claims = decode_access_token(token)
    if claims is None:
        raise Unauthenticated()
    return claims


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, ttl_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    max_age matches the JWT expiry so both expire together. Pass the same
    ttl_seconds used in create_access_token().
    """
    duration = ttl_seconds if ttl_seconds > 0 else _settings.session_ttl_seconds
    response.set_cookie(
        AUTH_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(
        AUTH_COOKIE,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
    )
