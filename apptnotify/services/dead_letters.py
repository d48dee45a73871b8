from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.errors import ConflictError, NotFoundError, ValidationError
from apptnotify.domain.models import DeadLetterItem, NotificationRecord
from apptnotify.domain.state import SUPPRESSION_INVALID, SUPPRESSION_UNSUBSCRIBED
from apptnotify.domain.types import utc_now


logger = logging.getLogger(__name__)

FAILURE_HARD_BOUNCE = "hard_bounce"
FAILURE_INVALID_EMAIL = "invalid_email"
FAILURE_INVALID_PHONE = "invalid_phone"
FAILURE_UNSUBSCRIBED = "unsubscribed"
FAILURE_PROVIDER_ERROR = "provider_error"
FAILURE_TIMEOUT = "timeout"

FAILURE_TYPES: tuple[str, ...] = (
    FAILURE_HARD_BOUNCE,
    "soft_bounce",
    FAILURE_INVALID_EMAIL,
    FAILURE_INVALID_PHONE,
    "spam_complaint",
    FAILURE_UNSUBSCRIBED,
    "quota_exceeded",
    FAILURE_PROVIDER_ERROR,
    FAILURE_TIMEOUT,
    "content_rejected",
    "rate_limited",
    "unknown",
)

RESOLUTION_MANUAL_RETRY = "manual_retry"
# Actions an operator may close an item with directly; manual_retry is set by retry_dead_letter.
RESOLUTION_ACTIONS: tuple[str, ...] = ("address_updated", "suppressed", "ignored")

# Retrying these needs a corrected recipient.
_ADDRESS_FAILURES = frozenset({FAILURE_INVALID_EMAIL, FAILURE_INVALID_PHONE, FAILURE_HARD_BOUNCE})
_RETRY_ELIGIBLE = _ADDRESS_FAILURES | {FAILURE_PROVIDER_ERROR, FAILURE_TIMEOUT}


def classify_failure(
    *,
    type: str,
    suppress_kind: str | None = None,
    timed_out: bool = False,
) -> str:
    if suppress_kind == SUPPRESSION_UNSUBSCRIBED:
        return FAILURE_UNSUBSCRIBED
    if suppress_kind == SUPPRESSION_INVALID:
        return FAILURE_INVALID_PHONE if type == "sms" else FAILURE_INVALID_EMAIL
    return FAILURE_TIMEOUT if timed_out else FAILURE_PROVIDER_ERROR


def add_dead_letter(
    *,
    session: AsyncSession,
    record: NotificationRecord,
    failure_type: str,
    reason: str,
    now: datetime | None = None,
) -> DeadLetterItem:
    """Copy a terminally failed record into the dead-letter queue.

    The row joins the caller's transaction; callers add it in the same commit
    as the status change that made the record terminal.
    """

    stamp = now or utc_now()
    item = DeadLetterItem(
        id=uuid4().hex,
        notification_id=record.id,
        type=record.type,
        channel=record.channel,
        recipient=record.recipient,
        subject=record.subject,
        content=record.content,
        metadata_json=dict(record.metadata_json or {}),
        failure_type=failure_type if failure_type in FAILURE_TYPES else "unknown",
        failure_reason=reason,
        total_attempts=record.retry_count + 1,
        is_permanent=failure_type not in {FAILURE_TIMEOUT, FAILURE_PROVIDER_ERROR},
        retry_eligible=failure_type in _RETRY_ELIGIBLE,
        created_at=stamp,
        updated_at=stamp,
    )
    session.add(item)
    logger.info(
        "notification_dead_lettered record_id=%s failure_type=%s retry_eligible=%s",
        record.id,
        item.failure_type,
        item.retry_eligible,
    )
    return item


async def get_dead_letter(*, session: AsyncSession, item_id: str) -> DeadLetterItem:
    item = await session.get(DeadLetterItem, item_id)
    if item is None:
        raise NotFoundError("Dead-letter item not found")
    return item


async def list_dead_letters(
    *,
    session: AsyncSession,
    failure_type: str | None = None,
    channel: str | None = None,
    resolved: bool | None = None,
    retry_eligible: bool | None = None,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[DeadLetterItem]:
    query = select(DeadLetterItem)
    if failure_type:
        query = query.where(DeadLetterItem.failure_type == failure_type)
    if channel:
        query = query.where(DeadLetterItem.channel == channel)
    if resolved is not None:
        query = query.where(
            DeadLetterItem.resolved_at.is_not(None) if resolved else DeadLetterItem.resolved_at.is_(None)
        )
    if retry_eligible is not None:
        query = query.where(DeadLetterItem.retry_eligible == retry_eligible)
    if created_after is not None:
        query = query.where(DeadLetterItem.created_at >= created_after)
    if created_before is not None:
        query = query.where(DeadLetterItem.created_at <= created_before)
    rows = await session.execute(
        query.order_by(DeadLetterItem.created_at.desc()).offset(max(0, offset)).limit(max(1, min(limit, 200)))
    )
    return list(rows.scalars().all())


async def dead_letter_statistics(*, session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    reference_now = now or utc_now()
    rows = await session.execute(
        select(
            DeadLetterItem.failure_type,
            DeadLetterItem.channel,
            DeadLetterItem.created_at,
            DeadLetterItem.resolved_at,
            DeadLetterItem.retry_eligible,
        )
    )
    stats: dict[str, Any] = {
        "total": 0,
        "by_failure_type": {},
        "by_channel": {},
        "recent_failures": 0,
        "retry_eligible": 0,
        "resolved": 0,
        "avg_resolution_hours": 0.0,
    }
    resolution_hours = 0.0
    recent_cutoff = reference_now - timedelta(hours=24)
    for failure_type, channel, created_at, resolved_at, eligible in rows.all():
        stats["total"] += 1
        stats["by_failure_type"][failure_type] = stats["by_failure_type"].get(failure_type, 0) + 1
        stats["by_channel"][channel] = stats["by_channel"].get(channel, 0) + 1
        if created_at > recent_cutoff:
            stats["recent_failures"] += 1
        if resolved_at is not None:
            stats["resolved"] += 1
            resolution_hours += (resolved_at - created_at).total_seconds() / 3600
        elif eligible:
            stats["retry_eligible"] += 1
    if stats["resolved"]:
        stats["avg_resolution_hours"] = round(resolution_hours / stats["resolved"], 2)
    return stats


def _require_unresolved(item: DeadLetterItem) -> None:
    if item.resolved_at is not None:
        raise ConflictError("Dead-letter item already resolved")


async def retry_dead_letter(
    *,
    session: AsyncSession,
    item_id: str,
    actor_id: str | None,
    recipient: str | None = None,
    notes: str | None = None,
) -> tuple[DeadLetterItem, str]:
    """Re-enqueue a dead-lettered notification and resolve the item as ``manual_retry``.

    Address failures (invalid recipient, hard bounce) are only retried to a
    corrected ``recipient``. Returns the item and the new queue record id.
    """

    # Imported here; the queue processor imports this module to record failures.
    from apptnotify.services.queue import enqueue_notification

    item = await get_dead_letter(session=session, item_id=item_id)
    _require_unresolved(item)
    if not item.retry_eligible:
        raise ConflictError("Dead-letter item is not eligible for retry")
    target = (recipient or "").strip() or item.recipient
    if item.failure_type in _ADDRESS_FAILURES and target.lower() == item.recipient.lower():
        raise ValidationError("A corrected recipient is required to retry this failure")

    metadata = dict(item.metadata_json or {})
    metadata.update({"dedup_key": f"dlq:{item.id}", "dead_letter_id": item.id})
    result = await enqueue_notification(
        session=session,
        type=item.type,
        channel=item.channel,
        recipient=target,
        content=item.content,
        subject=item.subject,
        correlation_id=f"dlq_retry_{item.id}",
        metadata=metadata,
    )
    now = utc_now()
    item.resolved_at = now
    item.resolved_by = actor_id
    item.resolution_action = RESOLUTION_MANUAL_RETRY
    item.resolution_notes = notes or "Manual retry from dead-letter queue"
    item.retry_notification_id = result.record_id
    item.updated_at = now
    await session.commit()
    logger.info("dead_letter_retried item_id=%s record_id=%s", item.id, result.record_id)
    return item, result.record_id


async def resolve_dead_letter(
    *,
    session: AsyncSession,
    item_id: str,
    action: str,
    actor_id: str | None,
    notes: str | None = None,
) -> DeadLetterItem:
    if action not in RESOLUTION_ACTIONS:
        raise ValidationError(f"Unsupported resolution action: {action}")
    item = await get_dead_letter(session=session, item_id=item_id)
    _require_unresolved(item)
    now = utc_now()
    item.resolved_at = now
    item.resolved_by = actor_id
    item.resolution_action = action
    item.resolution_notes = notes
    item.updated_at = now
    await session.commit()
    logger.info("dead_letter_resolved item_id=%s action=%s", item.id, action)
    return item
