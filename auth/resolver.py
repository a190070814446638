"""
auth/resolver.py -- Unified authentication across both credential sets.

Algorithm (authenticate):
  1. Both fields present, else ValidationError.
  2. admins table: if the username exists, check the password and stop.
     Success -> role "admin", source "admins".
  3. users table, active rows only: if the username exists, reject roles with
     no dashboard access (InsufficientRole), then check the password.
     Success -> role lowercased, source "users".
  4. Anything else -> InvalidCredentials with one fixed message.

The resolver never consults the users table once the admins table knows the
username. When neither table knows it, one bcrypt verification still runs
against DUMMY_HASH so the unknown-user path costs about as much as the
wrong-password path.

Legacy plaintext admin passwords verify through check_password(); on success
they are re-hashed in place when Settings.rehash_legacy_passwords is on.

Layer rule: imports from core/ and auth/ siblings only.
"""

from __future__ import annotations

import logging

from auth.errors import InsufficientRole, InvalidCredentials, ValidationError
from auth.models import (
    DASHBOARD_ROLES,
    ROLE_ADMIN,
    SOURCE_ADMINS,
    SOURCE_USERS,
    AdminPrincipal,
    Claims,
    ManagedPrincipal,
    SessionResult,
)
from auth.passwords import DUMMY_HASH, check_password, hash_password, verify_password
from auth.store import CredentialStore
from auth.tokens import create_access_token
from core.config import get_settings

logger = logging.getLogger("ccm.auth.resolver")

_settings = get_settings()


def _admin_projection(admin: AdminPrincipal) -> dict:
    return {
        "id": admin.id,
        "username": admin.username,
        "email": admin.email,
        "role": ROLE_ADMIN,
    }


def _user_projection(user: ManagedPrincipal) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role.lower(),
    }


def _require_fields(username, password) -> None:
    if not username or not password or not isinstance(username, str) or not isinstance(password, str):
        raise ValidationError("Username and password are required")


def _check_admin(store: CredentialStore, admin: AdminPrincipal, password: str) -> bool:
    result = check_password(password, admin.password)
    if result.ok and result.legacy and _settings.rehash_legacy_passwords:
        store.set_password(SOURCE_ADMINS, admin.username, hash_password(password))
        logger.warning("Legacy plaintext password re-hashed for admin %r", admin.username)
    return result.ok


def _admin_session(admin: AdminPrincipal, ttl_seconds: int) -> SessionResult:
    claims = Claims(
        username=admin.username,
        role=ROLE_ADMIN,
        source=SOURCE_ADMINS,
        user_id=admin.id,
        email=admin.email or admin.username,
    )
    return SessionResult(
        token=create_access_token(claims, ttl_seconds),
        role=ROLE_ADMIN,
        source=SOURCE_ADMINS,
        expires_in=ttl_seconds,
        user=_admin_projection(admin),
    )


def authenticate(store: CredentialStore, username: str, password: str) -> SessionResult:
    """Resolve a username/password pair to a session (24h by default).

    Raises:
        ValidationError:    a field is missing.
        InsufficientRole:   active managed principal whose role has no dashboard access.
        InvalidCredentials: unknown username or wrong password, indistinguishably.
    """
    _require_fields(username, password)
    ttl = _settings.session_ttl_seconds

    admin = store.get_admin_by_username(username)
    if admin is not None:
        if _check_admin(store, admin, password):
            logger.info("Login succeeded: username=%r source=%s", username, SOURCE_ADMINS)
            return _admin_session(admin, ttl)
        logger.info("Login failed: username=%r", username)
        raise InvalidCredentials()

    user = store.get_user_by_username(username, active_only=True)
    if user is None:
        verify_password(password, DUMMY_HASH)
        logger.info("Login failed: username=%r", username)
        raise InvalidCredentials()

    role = (user.role or "").lower()
    if role not in DASHBOARD_ROLES:
        logger.info("Login refused for role %r: username=%r", role, username)
        raise InsufficientRole()

    if not check_password(password, user.password_hash).ok:
        logger.info("Login failed: username=%r", username)
        raise InvalidCredentials()

    claims = Claims(
        username=user.username,
        role=role,
        source=SOURCE_USERS,
        user_id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
    )
    logger.info("Login succeeded: username=%r source=%s role=%s", username, SOURCE_USERS, role)
    return SessionResult(
        token=create_access_token(claims, ttl),
        role=role,
        source=SOURCE_USERS,
        expires_in=ttl,
        user=_user_projection(user),
    )


def authenticate_admin(store: CredentialStore, username: str, password: str) -> SessionResult:
    """Admins-table-only login issuing a short-lived (1h by default) session."""
    _require_fields(username, password)
    admin = store.get_admin_by_username(username)
    if admin is None:
        verify_password(password, DUMMY_HASH)
        raise InvalidCredentials()
    if not _check_admin(store, admin, password):
        raise InvalidCredentials()
    logger.info("Admin login succeeded: username=%r", username)
    return _admin_session(admin, _settings.admin_session_ttl_seconds)
