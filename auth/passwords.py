"""
auth/passwords.py -- Password and secret hashing (bcrypt, direct usage).

Security design decisions:
  Passwords: bcrypt with a per-call salt and the cost factor from
       Settings.bcrypt_rounds (>= 10, validated at startup). bcrypt's cost
       factor makes brute-force of low-entropy secrets expensive.

  Secrets: invitation tokens and six-digit OTP codes are hashed with the same
       primitive at the minimum cost. Each digest carries its own salt, so a
       digest is not a stable lookup key -- callers scan candidate rows and
       verify each one (see auth/invites.py and auth/otp.py).

  Legacy plaintext: admin rows seeded before hashing was introduced hold the
       password as-is. check_password() recognises a non-digest value and
       falls back to a constant-time equality check, logging a deprecation
       warning every time. The value itself is never logged.

  Timing: DUMMY_HASH lets the resolver spend one bcrypt verification even when
       no principal matched, so response time does not reveal which branch
       failed.

Layer rule: imports from core/ only.
"""

from __future__ import annotations

import hmac
import logging
import re
from dataclasses import dataclass

import bcrypt

from auth.errors import ValidationError
from core.config import get_settings

logger = logging.getLogger("ccm.auth.passwords")

_settings = get_settings()

# bcrypt modular crypt format: $2a$ / $2b$ / $2y$, two-digit cost, 53 chars of salt+hash.
_DIGEST_RE = re.compile(r"^\$2[aby]\$\d{2}\$[./A-Za-z0-9]{53}$")

_SECRET_ROUNDS = 10


@dataclass(frozen=True)
class PasswordCheck:
    ok: bool
    legacy: bool = False


def _require_text(value, what: str = "Password") -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{what} must be a non-empty string")
    return value


def hash_password(plain: str) -> str:
    """Return a bcrypt digest of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password fields at 128 characters.
    """
    _require_text(plain)
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_settings.bcrypt_rounds)).decode("utf-8")


def verify_password(plain: str, digest: str) -> bool:
    """Return True if the plaintext matches the bcrypt digest. Never raises."""
    if not isinstance(plain, str) or not isinstance(digest, str) or not plain or not digest:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), digest.encode("utf-8"))
    except ValueError:
        return False


def looks_like_digest(value) -> bool:
    """Return True if value is in bcrypt's canonical format."""
    return isinstance(value, str) and _DIGEST_RE.match(value) is not None


def check_password(plain: str, stored: str | None) -> PasswordCheck:
    """Verify a login password against a stored credential.

    Stored digests go through bcrypt. Anything else is a pre-migration
    plaintext credential: compared with hmac.compare_digest and reported as
    legacy so the caller can re-hash it.
    """
    if not stored or not isinstance(plain, str) or not plain:
        return PasswordCheck(ok=False)
    if looks_like_digest(stored):
        return PasswordCheck(ok=verify_password(plain, stored))
    logger.warning("Legacy plaintext credential compared; it should be re-hashed")
    ok = hmac.compare_digest(plain.encode("utf-8"), stored.encode("utf-8"))
    return PasswordCheck(ok=ok, legacy=True)


def hash_secret(secret: str) -> str:
    """Hash an invitation token or OTP code."""
    _require_text(secret, "Secret")
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=_SECRET_ROUNDS)).decode("utf-8")


def verify_secret(secret: str, digest: str) -> bool:
    return verify_password(secret, digest)


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("ccm_timing_dummy")
