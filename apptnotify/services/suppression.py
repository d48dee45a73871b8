from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.errors import NotFoundError, ValidationError
from apptnotify.domain.models import SuppressionEntry
from apptnotify.domain.state import SUPPRESSION_KINDS
from apptnotify.domain.types import utc_now
from apptnotify.persistence.upsert import dialect_insert


logger = logging.getLogger(__name__)


def normalize_recipient(recipient: str) -> str:
    # Emails compare case-insensitively; phone numbers only need trimming.
    cleaned = recipient.strip()
    if "@" in cleaned:
        return cleaned.lower()
    return cleaned


async def get_suppression(*, session: AsyncSession, recipient: str) -> SuppressionEntry | None:
    return await session.get(SuppressionEntry, normalize_recipient(recipient))


async def is_suppressed(*, session: AsyncSession, recipient: str) -> bool:
    return await get_suppression(session=session, recipient=recipient) is not None


async def add_suppression(
    *,
    session: AsyncSession,
    recipient: str,
    kind: str,
    reason: str | None,
    source: str = "provider_feedback",
) -> SuppressionEntry:
    # Insert-or-ignore keeps the first entry; repeated provider feedback must not churn the row.
    if kind not in SUPPRESSION_KINDS:
        raise ValidationError(f"Unsupported suppression kind: {kind}")
    key = normalize_recipient(recipient)
    stmt = (
        dialect_insert(session, SuppressionEntry)
        .values(recipient=key, kind=kind, reason=reason, source=source, created_at=utc_now())
        .on_conflict_do_nothing(index_elements=[SuppressionEntry.recipient])
    )
    result = await session.execute(stmt)
    if result.rowcount:
        logger.info("recipient_suppressed kind=%s source=%s", kind, source)
    entry = await session.get(SuppressionEntry, key, populate_existing=True)
    if entry is None:
        raise RuntimeError(f"suppression row missing after insert kind={kind}")
    return entry


async def list_suppressions(*, session: AsyncSession, limit: int = 100, offset: int = 0) -> list[SuppressionEntry]:
    rows = await session.execute(
        select(SuppressionEntry)
        .order_by(SuppressionEntry.created_at.desc())
        .limit(max(1, limit))
        .offset(max(0, offset))
    )
    return list(rows.scalars().all())


async def remove_suppression(*, session: AsyncSession, recipient: str) -> None:
    # Administrative override; the only way a suppression ever ends.
    result = await session.execute(
        delete(SuppressionEntry).where(SuppressionEntry.recipient == normalize_recipient(recipient))
    )
    if not result.rowcount:
        raise NotFoundError("Recipient is not suppressed")
    await session.commit()
    logger.info("recipient_unsuppressed")
