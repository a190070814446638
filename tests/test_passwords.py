"""Unit tests for auth/passwords.py -- bcrypt hashing and the legacy plaintext fallback.

Covers:
- hash_password() / verify_password() round-trip, wrong password rejected
- empty and non-string input rejected with ValidationError
- looks_like_digest() recognises bcrypt output and rejects plaintext
- check_password() legacy path: constant-time equality, flagged, warning logged
- hash_secret() / verify_secret() for invitation tokens and OTP codes
"""

import logging

import pytest

from auth.errors import ValidationError
from auth.passwords import (
    DUMMY_HASH,
    check_password,
    hash_password,
    hash_secret,
    looks_like_digest,
    verify_password,
    verify_secret,
)


class TestHashAndVerify:
    @pytest.mark.parametrize("plain", ["a", "longenough1", "pässwörd with spaces", "x" * 72])
    def test_round_trip(self, plain: str) -> None:
        """Any non-empty string verifies against its own digest."""
        digest = hash_password(plain)
        assert verify_password(plain, digest), "Digest must verify the original password"

    def test_wrong_password_rejected(self) -> None:
        digest = hash_password("correct horse")
        assert not verify_password("battery staple", digest)

    def test_salt_differs_per_call(self) -> None:
        """Two digests of the same password must differ (per-call salt)."""
        assert hash_password("samepass") != hash_password("samepass")

    @pytest.mark.parametrize("bad", ["", None, 12345, b"bytes"])
    def test_hash_rejects_empty_or_non_string(self, bad) -> None:
        with pytest.raises(ValidationError):
            hash_password(bad)

    def test_verify_never_raises_on_garbage_digest(self) -> None:
        assert verify_password("anything", "not-a-digest") is False
        assert verify_password("", DUMMY_HASH) is False
        assert verify_password(None, DUMMY_HASH) is False


class TestDigestDetection:
    def test_bcrypt_output_is_digest(self) -> None:
        assert looks_like_digest(hash_password("pw123456"))

    @pytest.mark.parametrize("value", ["plaintext", "$2b$10$short", "", None, "$1$abc$def"])
    def test_non_digest(self, value) -> None:
        assert not looks_like_digest(value)


class TestCheckPassword:
    def test_digest_path(self) -> None:
        result = check_password("pw123456", hash_password("pw123456"))
        assert result.ok and not result.legacy

    def test_legacy_plaintext_match_is_flagged(self, caplog) -> None:
        """A plaintext stored value still verifies but is reported as legacy and logged."""
        with caplog.at_level(logging.WARNING, logger="ccm.auth.passwords"):
            result = check_password("oldpass", "oldpass")
        assert result.ok, "Legacy plaintext comparison must still succeed"
        assert result.legacy, "Legacy comparisons must be flagged"
        assert any("Legacy plaintext" in r.message for r in caplog.records), "A deprecation warning must be logged"
        assert all("oldpass" not in r.getMessage() for r in caplog.records), "The password must never be logged"

    def test_legacy_plaintext_mismatch(self) -> None:
        result = check_password("wrong", "oldpass")
        assert not result.ok and result.legacy

    def test_missing_stored_value(self) -> None:
        assert check_password("pw", None).ok is False
        assert check_password("pw", "").ok is False


class TestSecrets:
    def test_secret_round_trip(self) -> None:
        digest = hash_secret("123456")
        assert verify_secret("123456", digest)
        assert not verify_secret("654321", digest)

    def test_empty_secret_rejected(self) -> None:
        with pytest.raises(ValidationError):
            hash_secret("")
