"""Unit tests for access token decoding."""

import time
from unittest.mock import patch

import jwt
import pytest

from marketplace.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt

TEST_JWT_SECRET = "test-jwt-secret-for-unit-tests"
USER_ID = "550e8400-e29b-41d4-a716-446655440000"


def make_token(secret: str = TEST_JWT_SECRET, exp_offset: int = 3600, **claims) -> str:
    now = int(time.time())
    payload = {"sub": USER_ID, "email": "test@example.com", "role": "buyer", "exp": now + exp_offset, "iat": now}
    payload.update(claims)
    return jwt.encode({k: v for k, v in payload.items() if v is not None}, secret, algorithm="HS256")


@pytest.fixture(autouse=True)
def jwt_settings():
    with patch("marketplace.api.middleware.auth.get_settings") as mock_settings:
        mock_settings.return_value.jwt_secret = TEST_JWT_SECRET
        mock_settings.return_value.jwt_algorithm = "HS256"
        yield mock_settings


class TestDecodeJWT:
    """Tests for decode_jwt function."""

    def test_valid_token(self) -> None:
        payload = decode_jwt(make_token())

        assert payload.sub == USER_ID
        assert payload.email == "test@example.com"
        assert payload.role == "buyer"

    def test_user_context(self) -> None:
        context = decode_jwt(make_token(role="admin")).to_user_context()

        assert str(context.user_id) == USER_ID
        assert context.is_admin is True

    def test_expired_token(self) -> None:
        with pytest.raises(AuthError) as exc_info:
            decode_jwt(make_token(exp_offset=-3600))

        assert exc_info.value.code == AuthErrorCode.TOKEN_EXPIRED
        assert "expired" in exc_info.value.message.lower()

    def test_invalid_signature(self) -> None:
        with pytest.raises(AuthError) as exc_info:
            decode_jwt(make_token(secret="some-other-secret"))

        assert exc_info.value.code == AuthErrorCode.INVALID_SIGNATURE

    def test_missing_subject(self) -> None:
        with pytest.raises(AuthError) as exc_info:
            decode_jwt(make_token(sub=None))

        assert exc_info.value.code == AuthErrorCode.INVALID_TOKEN

    def test_subject_must_be_uuid(self) -> None:
        """Test that a non-UUID subject is rejected."""
        with pytest.raises(AuthError) as exc_info:
            decode_jwt(make_token(sub="user-42"))

        assert exc_info.value.code == AuthErrorCode.INVALID_TOKEN

    def test_malformed_token(self) -> None:
        with pytest.raises(AuthError) as exc_info:
            decode_jwt("not.a.jwt")

        assert exc_info.value.code == AuthErrorCode.INVALID_TOKEN

    def test_no_secret_configured(self, jwt_settings) -> None:
        """Test that tokens are refused outright when no secret is set."""
        jwt_settings.return_value.jwt_secret = ""

        with pytest.raises(AuthError) as exc_info:
            decode_jwt(make_token())

        assert exc_info.value.code == AuthErrorCode.UNAUTHORIZED
