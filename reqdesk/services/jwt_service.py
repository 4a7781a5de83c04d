"""
JWT Service — access token generation and verification.

Tokens are issued by the upstream identity provider (or by trusted tooling
such as the test-suite and the ``flask issue-token`` command) and carry
exactly what the workflow engine needs to know about the caller.

Algorithm: HS256
Lifetime:  JWT_ACCESS_EXPIRES seconds (default 3600)

Token payload:
{
    "sub": "<user_id>",
    "role": "department_approver",
    "department_id": 3,
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

DEFAULT_ACCESS_EXPIRES = 3600
ALGORITHM = "HS256"


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_access_expires():
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


def generate_access_token(user_id: int, role: str, department_id: int | None) -> str:
    """Generate a signed access token for a user."""
    now = datetime.now(timezone.utc)
    payload = {
        # RFC 7519 wants a string subject; PyJWT >= 2.10 enforces it
        "sub": str(user_id),
        "role": role,
        "department_id": department_id,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=_get_access_expires()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def generate_token_for(user) -> str:
    """Convenience wrapper taking a ``User`` row."""
    return generate_access_token(user.id, user.role, user.department_id)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Returns the payload dict on success.
    Raises jwt exceptions on failure (ExpiredSignatureError, InvalidTokenError).
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError(f"Expected access token, got {payload.get('type')}")
    return payload
