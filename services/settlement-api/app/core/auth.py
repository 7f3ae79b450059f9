"""Caller authentication for user-facing endpoints.

Access tokens are issued by the managed auth backend as HS256 JWTs whose
``sub`` claim is the user id.  This module only verifies them; sessions,
sign-up and refresh live entirely in that backend.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(
    scheme_name="Access Token",
    description="Pass the user's access token as: `Authorization: Bearer <jwt>`",
    auto_error=False,
)


@dataclass
class AuthContext:
    user_id: str
    email: str | None = None


def decode_access_token(token: str) -> AuthContext:
    """Validate an access token and return the caller identity.

    Raises:
        ValueError: token is invalid, expired, or has no subject.
    """
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired access token.") from exc

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Access token missing subject.")

    return AuthContext(user_id=subject, email=payload.get("email") or None)


async def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> AuthContext:
    """Resolve the authenticated caller from the bearer access token."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail={"code": "UNAUTHORIZED", "message": "Missing bearer access token."},
        )
    try:
        auth = decode_access_token(credentials.credentials)
    except ValueError as exc:
        logger.info("Rejected access token: %s", exc)
        raise HTTPException(
            status_code=401,
            detail={"code": "UNAUTHORIZED", "message": str(exc)},
        ) from exc

    request.state.user_id = auth.user_id
    return auth
