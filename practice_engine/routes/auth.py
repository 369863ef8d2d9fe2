"""Bearer-token authentication for the practice API.

Tokens are issued elsewhere (the platform's login service); this module
only verifies them. The subject claim is the user id, the role claim is
"student" unless stated otherwise.
"""

import jwt
from datetime import datetime, timedelta, timezone
from fastapi import Request

from practice_engine.config import settings
from practice_engine.errors import Forbidden, Unauthenticated

JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 72


def create_token(user_id: str, role: str = "student", expires_in: timedelta | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": now + (expires_in or timedelta(hours=JWT_EXPIRY_HOURS)),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token")


def get_current_user(request: Request) -> dict:
    """Extract and validate the current user from the JWT token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("bearer "):
        raise Unauthenticated("Not authenticated")

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        raise Unauthenticated("Empty token")

    payload = decode_token(token)
    if not payload.get("sub"):
        raise Unauthenticated("Token has no subject")
    return {"id": str(payload["sub"]), "role": payload.get("role") or "student"}


def require_role(*allowed_roles: str):
    """Return a dependency that checks the user has one of the allowed roles."""

    def _check(request: Request) -> dict:
        user = get_current_user(request)
        if user["role"] not in allowed_roles:
            raise Forbidden(f"Access denied. Required role: {', '.join(allowed_roles)}")
        return user

    return _check
