from __future__ import annotations

import logging

from fastapi import Request
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.config import get_settings
from apptnotify.core.errors import AuthError
from apptnotify.domain.models import ApiKey, User
from apptnotify.domain.types import utc_now
from apptnotify.services.auth.api_keys import hash_api_key


logger = logging.getLogger(__name__)


class Principal(BaseModel):
    # Authenticated identity used for RBAC, rate limiting, and audit.
    user_id: str
    role: str
    api_key_id: str
    email: str | None = None


def parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Missing or invalid bearer token")
    return parts[1]


async def _touch_last_used(session: AsyncSession, api_key_id: str) -> None:
    try:
        await session.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=utc_now()))
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("api_key_touch_failed api_key_id=%s", api_key_id, exc_info=exc)


async def authenticate_request(
    request: Request,
    *,
    session: AsyncSession,
    required: bool,
) -> Principal | None:
    """Resolve the bearer credential into a principal.

    Returns ``None`` for credential-less requests when authentication is not
    required. A presented credential is always validated, even on optional
    routes, so a bad key never silently degrades to anonymous access.
    """

    settings = get_settings()
    token = parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    if token is None:
        if required:
            raise AuthError("Missing bearer token")
        return None

    result = await session.execute(
        select(ApiKey, User)
        .join(User, User.id == ApiKey.user_id)
        .where(ApiKey.key_hash == hash_api_key(token))
    )
    row = result.first()
    if row is None:
        raise AuthError("Invalid API key")
    api_key, user = row
    now = utc_now()
    if api_key.revoked_at is not None:
        raise AuthError("API key revoked")
    if api_key.expires_at is not None and api_key.expires_at <= now:
        raise AuthError("API key expired")
    if not user.is_active:
        raise AuthError("User is inactive")
    await _touch_last_used(session, api_key.id)
    return Principal(user_id=user.id, role=user.role, api_key_id=api_key.id, email=user.email)
