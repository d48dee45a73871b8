from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from apptnotify.domain.models import AuditEvent
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Credentials never reach the audit trail.
_SECRET_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password", "signature", "accountsid")
# Contact details are kept recognisable but not reusable.
_CONTACT_KEYS = frozenset({"to", "from", "recipient", "email", "phone", "customer_email", "customer_phone"})


def mask_contact(value: str) -> str:
    """Mask an email address or phone number for storage in audit metadata.

    ``dana@example.test`` becomes ``d***@example.test`` and ``+15550001234``
    becomes ``***1234``; anything else is passed through.
    """

    text = value.strip()
    if "@" in text:
        local, _, domain = text.partition("@")
        return f"{local[:1]}***@{domain}"
    digits = [char for char in text if char.isdigit()]
    if len(digits) >= 7:
        return "***" + "".join(digits[-4:])
    return text


def sanitize_metadata(value: Any) -> Any:
    # Walk nested payloads; provider callbacks embed both secrets and contact data.
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            lowered = key.lower()
            if any(fragment in lowered for fragment in _SECRET_FRAGMENTS):
                cleaned[key] = REDACTED
            elif lowered in _CONTACT_KEYS and isinstance(raw_value, str):
                cleaned[key] = mask_contact(raw_value)
            else:
                cleaned[key] = sanitize_metadata(raw_value)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"correlation_id": None, "ip_address": None, "user_agent": None}
    return {
        "correlation_id": getattr(request.state, "correlation_id", None) or request.headers.get("X-Correlation-Id"),
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    session.add(event)
    if commit:
        try:
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None = None,
    action: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    correlation_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append an audit row.

    Without a session the event is written in its own short transaction, so a
    rolled-back caller transaction cannot take the audit trail with it. With a
    session the row joins the caller's unit of work and is only committed when
    ``commit`` is set. With ``best_effort`` (the default) storage failures are
    logged and never raised.
    """

    event = AuditEvent(
        occurred_at=occurred_at or utc_now(),
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        correlation_id=correlation_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        if session is None:
            async with SessionLocal() as own_session:
                await _persist(own_session, event, commit=True)
        else:
            await _persist(session, event, commit=commit)
    except SQLAlchemyError as exc:
        if not best_effort:
            raise
        logger.warning("audit_event_write_failed action=%s correlation_id=%s", action, correlation_id, exc_info=exc)


async def record_system_event(
    *,
    action: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    correlation_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    # Worker and reconciler events have no human actor.
    await record_event(
        actor_type="system",
        actor_id=None,
        action=action,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        correlation_id=correlation_id,
        metadata=metadata,
        error_code=error_code,
    )
