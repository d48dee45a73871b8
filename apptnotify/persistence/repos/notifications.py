from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.domain.models import NotificationRecord
from apptnotify.domain.state import (
    DEDUP_STATUSES,
    STATUS_PENDING,
    STATUS_PROCESSING,
    allowed_sources,
)


async def select_due_ids(*, session: AsyncSession, now: datetime, limit: int) -> list[str]:
    # Oldest-due first so backlog drains in schedule order.
    rows = await session.execute(
        select(NotificationRecord.id)
        .where(
            NotificationRecord.status == STATUS_PENDING,
            NotificationRecord.scheduled_for <= now,
        )
        .order_by(NotificationRecord.scheduled_for.asc(), NotificationRecord.created_at.asc())
        .limit(max(1, limit))
    )
    return [str(row) for row in rows.scalars().all()]


async def claim_for_processing(*, session: AsyncSession, record_id: str, now: datetime) -> bool:
    """Move one due record from pending to processing.

    The conditional UPDATE is the only exclusivity mechanism: of any number of
    concurrent claimers, exactly one sees ``rowcount == 1``.
    """

    result = await session.execute(
        update(NotificationRecord)
        .where(
            NotificationRecord.id == record_id,
            NotificationRecord.status == STATUS_PENDING,
            NotificationRecord.scheduled_for <= now,
        )
        .values(status=STATUS_PROCESSING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def guarded_transition(
    *,
    session: AsyncSession,
    record_id: str,
    target: str,
    now: datetime,
    expected: Iterable[str] | None = None,
    values: dict[str, Any] | None = None,
) -> bool:
    # Apply a status change only while the record still holds an allowed source status.
    sources = tuple(expected) if expected is not None else allowed_sources(target)
    if not sources:
        return False
    result = await session.execute(
        update(NotificationRecord)
        .where(
            NotificationRecord.id == record_id,
            NotificationRecord.status.in_(sources),
        )
        .values(status=target, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def find_equivalent(
    *,
    session: AsyncSession,
    recipient: str,
    channel: str,
    dedup_key: str,
) -> NotificationRecord | None:
    rows = await session.execute(
        select(NotificationRecord)
        .where(
            NotificationRecord.recipient == recipient,
            NotificationRecord.channel == channel,
            NotificationRecord.dedup_key == dedup_key,
            NotificationRecord.status.in_(DEDUP_STATUSES),
        )
        .order_by(NotificationRecord.created_at.asc())
        .limit(1)
    )
    return rows.scalars().first()


async def find_by_provider_message_id(
    *,
    session: AsyncSession,
    provider_message_id: str,
) -> NotificationRecord | None:
    rows = await session.execute(
        select(NotificationRecord)
        .where(NotificationRecord.provider_message_id == provider_message_id)
        .limit(1)
    )
    return rows.scalars().first()


async def select_expired_claims(
    *,
    session: AsyncSession,
    cutoff: datetime,
    limit: int,
) -> list[NotificationRecord]:
    # Claims whose processor run never wrote an outcome.
    rows = await session.execute(
        select(NotificationRecord)
        .where(
            NotificationRecord.status == STATUS_PROCESSING,
            NotificationRecord.updated_at <= cutoff,
        )
        .order_by(NotificationRecord.updated_at.asc())
        .limit(max(1, limit))
    )
    return list(rows.scalars().all())


async def release_expired_claim(
    *,
    session: AsyncSession,
    record_id: str,
    cutoff: datetime,
    retry_count: int,
    target: str,
    now: datetime,
    values: dict[str, Any] | None = None,
) -> bool:
    """Move an abandoned claim out of processing.

    Applies only while the record is still processing, the claim is still
    older than ``cutoff`` and ``retry_count`` is unchanged, so two processors
    releasing the same claim charge the retry budget once.
    """

    result = await session.execute(
        update(NotificationRecord)
        .where(
            NotificationRecord.id == record_id,
            NotificationRecord.status == STATUS_PROCESSING,
            NotificationRecord.updated_at <= cutoff,
            NotificationRecord.retry_count == retry_count,
        )
        .values(status=target, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
