"""Session token helpers.

A caller exchanges an identity payload (``{"email": ...}``) for a signed JWT
that is delivered as an http-only cookie. Protected routes depend on
``get_current_user``, which refuses the request with 401 before the handler
runs when the cookie is missing, tampered with or expired.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Request, Response

from config import settings
from library import InvalidRequest, Unauthenticated

logger = logging.getLogger(__name__)


def create_token(payload: Dict[str, Any], expires_in: Optional[timedelta] = None) -> str:
    """Sign an identity payload. It must carry an email."""
    if not isinstance(payload, dict) or not payload.get("email"):
        raise InvalidRequest("Email is required")
    now = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else timedelta(days=settings.jwt_expiration_days)
    claims = dict(payload)
    claims["iat"] = now
    claims["exp"] = now + lifetime
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected session token: {e}")
        raise Unauthenticated("unauthorized access") from e


def _cookie_attributes() -> Dict[str, Any]:
    # Cross-site cookies are only accepted by browsers when marked secure
    if settings.is_production:
        return {"secure": True, "samesite": "none"}
    return {"secure": False, "samesite": "strict"}


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        **_cookie_attributes(),
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        **_cookie_attributes(),
    )


def get_current_user(request: Request) -> Dict[str, Any]:
    """Dependency guarding protected routes."""
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        raise Unauthenticated("unauthorized access")
    user = decode_token(token)
    if not user.get("email"):
        raise Unauthenticated("unauthorized access")
    request.state.user = user
    return user
