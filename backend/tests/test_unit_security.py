"""Unit tests for core/security.py (no database required)."""

import os
from datetime import timedelta

import pytest
from jose import JWTError

# Ensure settings can be loaded without .env
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-unit-tests")

from app.core.security import (  # noqa: E402
    create_access_token,
    create_refresh_token,
    decode_token,
    get_password_hash,
    verify_password,
)


class TestHashing:
    def test_guardian_password(self):
        hashed = get_password_hash("guardian-password-123")
        assert hashed.startswith("$2")
        assert verify_password("guardian-password-123", hashed)
        assert not verify_password("guardian-password-124", hashed)

    def test_each_hash_has_its_own_salt(self):
        assert get_password_hash("1234") != get_password_hash("1234")

    def test_child_pin(self):
        hashed = get_password_hash("4821")
        assert verify_password("4821", hashed)
        assert not verify_password("4822", hashed)

    def test_malformed_stored_hash(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestTokens:
    def test_access_and_refresh_types(self):
        access = decode_token(create_access_token({"sub": "member-1"}))
        refresh = decode_token(create_refresh_token({"sub": "member-1"}))

        assert access["sub"] == refresh["sub"] == "member-1"
        assert access["type"] == "access"
        assert refresh["type"] == "refresh"
        assert access["exp"] < refresh["exp"]

    def test_tokens_issued_together_differ(self):
        first = create_refresh_token({"sub": "member-1"})
        second = create_refresh_token({"sub": "member-1"})

        assert first != second
        assert decode_token(first)["jti"] != decode_token(second)["jti"]

    def test_expired(self):
        token = create_access_token({"sub": "member-1"}, expires_delta=timedelta(seconds=-1))
        with pytest.raises(JWTError):
            decode_token(token)

    def test_signed_with_another_key(self):
        from jose import jwt

        forged = jwt.encode({"sub": "member-1", "type": "access"}, "other-key", algorithm="HS256")
        with pytest.raises(JWTError):
            decode_token(forged)

    def test_claims_dict_is_left_alone(self):
        data = {"sub": "member-1"}
        create_access_token(data)
        assert data == {"sub": "member-1"}
