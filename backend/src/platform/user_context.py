"""
Client identity from bearer access tokens.

Tokens are HS256 JWTs signed with the auth provider's JWT secret
(SUPABASE_JWT_SECRET). The subject claim is the local user id.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Request

from src.platform.errors import AuthenticationError

logger = logging.getLogger(__name__)

JWT_ALGORITHMS = ["HS256"]


@dataclass(frozen=True)
class UserContext:
    user_id: str
    email: Optional[str] = None
    is_admin: bool = False


def decode_access_token(token: str, secret: str, admin_emails=frozenset()) -> UserContext:
    """
    Verify a bearer token and build the caller's context.

    Raises:
        AuthenticationError: Invalid, expired or subject-less token
    """
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=JWT_ALGORITHMS,
            options={"verify_aud": False, "require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Access token expired") from e
    except jwt.InvalidTokenError as e:
        logger.info("Rejected access token", extra={"error": str(e)})
        raise AuthenticationError("Invalid access token") from e

    user_id = str(claims.get("sub") or "").strip()
    if not user_id:
        raise AuthenticationError("Invalid access token")

    email = claims.get("email")
    is_admin = bool(email) and email.strip().lower() in admin_emails
    return UserContext(user_id=user_id, email=email, is_admin=is_admin)


def get_user_context(request: Request) -> UserContext:
    """
    FastAPI dependency: resolve the caller from the Authorization header.

    Raises:
        AuthenticationError: Missing or invalid bearer token
    """
    settings = request.app.state.settings
    if not settings.supabase_jwt_secret:
        logger.error("SUPABASE_JWT_SECRET not configured")
        raise AuthenticationError("Authentication is not configured")

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError()

    return decode_access_token(token.strip(), settings.supabase_jwt_secret, settings.admin_emails)
