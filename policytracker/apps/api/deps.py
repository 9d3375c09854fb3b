from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

import jwt
from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.core.config import get_settings
from policytracker.persistence.db import get_session
from policytracker.services.usage import UsageTracker


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity carried by the auth platform's session token.
    user_id: str
    email: str | None = None
    full_name: str | None = None
    mobile_number: str | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def decode_session_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    options = {"require": ["sub", "exp"], "verify_aud": settings.auth_jwt_audience is not None}
    return jwt.decode(
        token,
        settings.auth_jwt_secret,
        algorithms=[settings.auth_jwt_algorithm],
        audience=settings.auth_jwt_audience,
        options=options,
    )


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    # Profile fields live under user_metadata on the auth platform's tokens.
    metadata = claims.get("user_metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    return Principal(
        user_id=str(claims["sub"]),
        email=claims.get("email"),
        full_name=metadata.get("full_name"),
        mobile_number=metadata.get("mobile_number"),
    )


async def get_current_principal(
    authorization: str | None = Header(default=None),
) -> Principal:
    token = _parse_bearer_token(authorization)
    if token is None:
        raise _auth_error("Missing or invalid bearer token")
    try:
        claims = decode_session_token(token)
    except jwt.ExpiredSignatureError as exc:
        raise _auth_error("Session expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.info("auth_token_rejected error=%s", type(exc).__name__)
        raise _auth_error("Authentication failed") from exc
    return principal_from_claims(claims)


async def get_usage_tracker(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> UsageTracker:
    return await UsageTracker.load(db, principal.user_id)
