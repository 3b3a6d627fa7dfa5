from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import Depends, HTTPException, Request, status

from .config import Settings
from .otp import ROLE_ADMIN, OtpService
from .tokens import TokenError, load_session_claims

logger = logging.getLogger(__name__)

USER_CLAIMS = ("id", "username", "email", "name", "role")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_otp_service(request: Request) -> OtpService:
    return request.app.state.otp_service


def _bearer_token(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token.strip()


def get_current_user(
    request: Request,
    service: OtpService = Depends(get_otp_service),
) -> Dict[str, Any]:
    token = _bearer_token(request)
    try:
        claims = load_session_claims(service.settings.signing_secret, token, service.now_ms())
    except TokenError as e:
        logger.info("rejected session token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid session token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = {k: claims.get(k) for k in USER_CLAIMS}
    user["exp"] = claims["exp"]
    return user


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != ROLE_ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")
    return user
