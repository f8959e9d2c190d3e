"""
Auth utilities for the Dareboard API.

Validates bearer JWTs from the identity provider and resolves the acting user.
Falls back to X-User-Id / X-User-Name headers (trusted gateway, tests).
"""
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from dareboard.core.config import settings
from dareboard.core.errors import AuthenticationRequiredError
from dareboard.models.dare import ActingUser

logger = logging.getLogger("dareboard.auth")


def _algorithms() -> list:
    return [a.strip() for a in (settings.AUTH_JWT_ALGORITHMS or "HS256").split(",") if a.strip()]


def verify_jwt(token: str) -> Optional[ActingUser]:
    """
    Verify a bearer JWT and extract the acting user.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        ActingUser from the 'sub' and 'name' claims, or None when no
        AUTH_JWT_SECRET is configured.

    Raises:
        AuthenticationRequiredError: invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=_algorithms(),
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequiredError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationRequiredError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationRequiredError("Token has no subject")
    return ActingUser(user_id=str(user_id), display_name=payload.get("name"))


def _remember(user: ActingUser) -> None:
    try:
        from dareboard.features.users.service import upsert_profile
        upsert_profile(user.user_id, user.display_name)
    except Exception as e:
        # Continue - don't block auth if upsert fails
        logger.warning(f"Failed to upsert profile {user.user_id}: {e}")


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Trusted gateway / test user ID"),
    x_user_name: Optional[str] = Header(None, description="Display name for X-User-Id"),
) -> ActingUser:
    """
    Resolve the acting user.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header
    3. 401

    After successful auth, the user's profile is upserted.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user = verify_jwt(auth_header[7:])
        if user:
            _remember(user)
            return user

    if x_user_id and x_user_id.strip():
        user = ActingUser(user_id=x_user_id.strip(), display_name=(x_user_name or "").strip() or None)
        _remember(user)
        return user

    raise AuthenticationRequiredError("Missing Authorization (Bearer JWT) or X-User-Id header")
