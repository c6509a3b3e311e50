"""
Tests for staff bearer tokens and password hashing.
"""

import pytest

from auth.jwt import InvalidTokenError, create_token, verify_token
from auth.password import hash_password, verify_password

SECRET = "test-secret"


class TestBearerTokens:
    def test_round_trip(self):
        token = create_token("a1", "admin", secret=SECRET, expiry_seconds=60, now=1000)
        claims = verify_token(token, secret=SECRET, now=1030)
        assert claims.user_id == "a1"
        assert claims.role == "admin"
        assert claims.exp == 1060

    def test_expired(self):
        token = create_token("a1", "admin", secret=SECRET, expiry_seconds=60, now=1000)
        with pytest.raises(InvalidTokenError, match="expired"):
            verify_token(token, secret=SECRET, now=1061)

    def test_wrong_secret(self):
        token = create_token("a1", "admin", secret=SECRET, expiry_seconds=60, now=1000)
        with pytest.raises(InvalidTokenError, match="signature"):
            verify_token(token, secret="other", now=1000)

    def test_tampered_payload(self):
        token = create_token("a1", "client", secret=SECRET, expiry_seconds=60, now=1000)
        forged = create_token("a1", "admin", secret="other", expiry_seconds=60, now=1000)
        spliced = forged.split(".")[0] + "." + token.split(".")[1]
        with pytest.raises(InvalidTokenError):
            verify_token(spliced, secret=SECRET, now=1000)

    def test_malformed(self):
        with pytest.raises(InvalidTokenError):
            verify_token("garbage", secret=SECRET)


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("hunter2", rounds=4)
        assert verify_password("hunter2", hashed) is True
        assert verify_password("wrong", hashed) is False

    def test_empty_hash_never_matches(self):
        assert verify_password("anything", "") is False
