from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.domain.models import ApiKey, User
from apptnotify.domain.types import utc_now


ROLE_ORDER: dict[str, int] = {
    "customer": 1,
    "staff": 2,
    "admin": 3,
}
API_KEY_PREFIX = "apnk"


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"{API_KEY_PREFIX}_{resolved_id}_{secret}"
    key_prefix = raw_key[:12]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)


async def provision_api_key(
    *,
    session: AsyncSession,
    role: str,
    email: str | None = None,
    name: str | None = None,
    user_id: str | None = None,
    expires_at: datetime | None = None,
) -> tuple[str, ApiKey, User]:
    """Create a user (when ``user_id`` is new) plus one API key.

    Returns the raw key, which is never stored and cannot be recovered later.
    """

    normalized_role = normalize_role(role)
    user = await session.get(User, user_id) if user_id else None
    if user is None:
        user = User(id=user_id or uuid4().hex, email=email, name=name, role=normalized_role, is_active=True)
        session.add(user)
        # Flush the user insert before the API key to satisfy FK constraints.
        await session.flush()
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        id=key_id,
        user_id=user.id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
        expires_at=expires_at,
    )
    session.add(api_key)
    await session.commit()
    return raw_key, api_key, user


async def revoke_api_key(*, session: AsyncSession, key_id: str) -> bool:
    result = await session.execute(
        update(ApiKey).where(ApiKey.id == key_id, ApiKey.revoked_at.is_(None)).values(revoked_at=utc_now())
    )
    await session.commit()
    return bool(result.rowcount)
