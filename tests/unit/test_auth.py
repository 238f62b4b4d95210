"""
Unit tests for JWT decoding.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt, JWTError

from facility_monitor.auth import AuthError, CurrentUser, decode_token, get_current_user


@pytest.fixture(scope="module")
def key_pair():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def make_token(key_pair):
    private_pem, public_pem = key_pair

    def _make(**claims):
        claims.setdefault("exp", datetime.now(timezone.utc) + timedelta(hours=1))
        return jwt.encode(claims, private_pem, algorithm="RS256")

    with patch("facility_monitor.auth.get_jwt_public_key", return_value=public_pem):
        yield _make


def test_decode_token(make_token):
    """Test that the subject and role claims become the current user."""
    assert decode_token(make_token(sub="7", role="Manager")) == CurrentUser(user_id=7, role="manager")


def test_role_defaults_to_user(make_token):
    assert decode_token(make_token(sub="3")).role == "user"
    assert decode_token(make_token(user_id=4)).user_id == 4


def test_missing_or_bad_subject(make_token):
    with pytest.raises(AuthError, match="missing sub"):
        decode_token(make_token(role="admin"))
    with pytest.raises(AuthError, match="must be a user id"):
        decode_token(make_token(sub="tester"))


def test_expired_token(make_token):
    token = make_token(sub="1", exp=datetime.now(timezone.utc) - timedelta(minutes=5))
    with pytest.raises(JWTError):
        decode_token(token)


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_get_current_user_maps_errors(make_token):
    """Test that invalid tokens become 401 responses."""
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="not-a-jwt")
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials)
    assert exc_info.value.status_code == 401

    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=make_token(sub="2", role="operator"))
    assert await get_current_user(credentials) == CurrentUser(user_id=2, role="operator")
