"""JWT verification for access tokens issued by the auth service.

This service never mints tokens. RS256 tokens are checked against the
auth service's public key; HS* algorithms use ``jwt_secret`` (local dev).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import jwt

from fif.config import get_settings

_public_key: str | None = None


def _verification_key() -> str:
    """Public key from disk (cached after first call), or the shared secret."""
    global _public_key  # noqa: PLW0603
    settings = get_settings()
    if settings.jwt_algorithm.startswith("HS"):
        return settings.jwt_secret
    if _public_key is None:
        _public_key = Path(settings.jwt_public_key_path).read_text()
    return _public_key


def reset_keys() -> None:
    """Reset cached key (useful for testing)."""
    global _public_key  # noqa: PLW0603
    _public_key = None


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode an access token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, of the wrong
        type, or has no usable subject.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _verification_key(),
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    token_type = payload.get("type", "access")
    if token_type != "access":
        msg = f"Expected token type 'access', got '{token_type}'"
        raise jwt.InvalidTokenError(msg)

    try:
        int(payload["sub"])
    except (TypeError, ValueError):
        msg = "Token subject is not a user id"
        raise jwt.InvalidTokenError(msg) from None

    return payload
