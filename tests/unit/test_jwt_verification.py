"""Access token verification (tokens are minted by the auth service)."""

from datetime import timedelta

import jwt
import pytest

from fif.auth.jwt import verify_token
from fif.config import get_settings


class TestVerifyToken:

    def test_valid_token(self, token_for):
        payload = verify_token(token_for(42))
        assert payload["sub"] == "42"

    def test_expired_token(self, token_for):
        with pytest.raises(jwt.InvalidTokenError, match="expired"):
            verify_token(token_for(42, expires_in=timedelta(seconds=-5)))

    def test_refresh_token_rejected(self, token_for):
        with pytest.raises(jwt.InvalidTokenError, match="access"):
            verify_token(token_for(42, type="refresh"))

    def test_wrong_issuer(self, token_for):
        with pytest.raises(jwt.InvalidTokenError):
            verify_token(token_for(42, iss="someone-else"))

    def test_non_numeric_subject(self, token_for):
        with pytest.raises(jwt.InvalidTokenError, match="subject"):
            verify_token(token_for("not-a-user"))

    def test_wrong_signature(self):
        forged = jwt.encode(
            {"sub": "1", "iss": get_settings().jwt_issuer, "exp": 4102444800}, "another-secret-of-sufficient-length-0000", algorithm="HS256",
        )
        with pytest.raises(jwt.InvalidTokenError):
            verify_token(forged)
