from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.config import get_settings
from apptnotify.core.errors import NotFoundError, ValidationError
from apptnotify.domain.models import NotificationRecord
from apptnotify.domain.state import (
    CANCELLABLE_STATUSES,
    NOTIFICATION_TYPES,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
)
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal
from apptnotify.persistence.repos.notifications import (
    claim_for_processing,
    find_equivalent,
    guarded_transition,
    release_expired_claim,
    select_due_ids,
    select_expired_claims,
)
from apptnotify.providers.channels.base import (
    SEND_SENT,
    SEND_SUPPRESSED,
    ChannelSender,
    OutboundMessage,
    SendOutcome,
)
from apptnotify.providers.channels.factory import get_channel_sender
from apptnotify.services.audit import record_event
from apptnotify.services.backoff import decide_retry
from apptnotify.services.dead_letters import FAILURE_TIMEOUT, add_dead_letter, classify_failure
from apptnotify.services.policies import BudgetTracker, load_budget, load_quiet_hours
from apptnotify.services.settings_cache import NotificationSettingsCache, get_settings_cache
from apptnotify.services.suppression import add_suppression, get_suppression, normalize_recipient


logger = logging.getLogger(__name__)

SenderResolver = Callable[[str], ChannelSender]
SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class EnqueueResult:
    record_id: str
    created: bool
    status: str


@dataclass
class BatchSummary:
    total: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    # Abandoned claims put back to pending before the due scan.
    recovered: int = 0
    # Cancelled by the monthly budget hard cap.
    cancelled: int = 0
    dead_lettered: int = 0
    budget: dict[str, Any] | None = None
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "retried": self.retried,
            "skipped": self.skipped,
            "recovered": self.recovered,
            "cancelled": self.cancelled,
            "dead_lettered": self.dead_lettered,
            "budget": self.budget,
            "errors": list(self.errors),
        }


def dedup_key_for(*, metadata: dict[str, Any], scheduled_for: datetime) -> str:
    # One logical occurrence per appointment when known, otherwise per UTC day.
    explicit = metadata.get("dedup_key")
    if explicit:
        return str(explicit)
    appointment_id = metadata.get("appointment_id")
    if appointment_id:
        return f"appointment:{appointment_id}"
    return f"day:{scheduled_for.date().isoformat()}"


async def enqueue_notification(
    *,
    session: AsyncSession,
    type: str,
    channel: str,
    recipient: str,
    content: str,
    subject: str | None = None,
    scheduled_for: datetime | None = None,
    correlation_id: str | None = None,
    template_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    max_retries: int | None = None,
    settings_cache: NotificationSettingsCache | None = None,
) -> EnqueueResult:
    """Persist a notification for later dispatch.

    Returns the existing record id when an equivalent pending, in-flight, or
    already-sent record exists for the same recipient, channel and logical
    occurrence. A suppressed recipient still gets a record, created directly
    as ``failed`` so the attempt stays visible to operators. With quiet hours
    enabled, a send time inside the window moves to the window end and the
    requested time is kept as ``quiet_hours_deferred_from`` in the metadata.
    """

    if type not in NOTIFICATION_TYPES:
        raise ValidationError(f"Unsupported notification type: {type}")
    if not recipient or not recipient.strip():
        raise ValidationError("recipient is required")
    if not content or not content.strip():
        raise ValidationError("content is required")
    if not channel or not channel.strip():
        raise ValidationError("channel is required")
    settings = get_settings()
    now = utc_now()
    resolved_schedule = scheduled_for or now
    if resolved_schedule.tzinfo is None:
        raise ValidationError("scheduled_for must be timezone-aware")
    resolved_retries = settings.queue_max_retries if max_retries is None else max_retries
    if resolved_retries < 0:
        raise ValidationError("max_retries must be >= 0")
    normalized = normalize_recipient(recipient)
    meta = dict(metadata or {})
    dedup_key = dedup_key_for(metadata=meta, scheduled_for=resolved_schedule)

    existing = await find_equivalent(session=session, recipient=normalized, channel=channel, dedup_key=dedup_key)
    if existing is not None:
        logger.info(
            "notification_enqueue_deduplicated record_id=%s channel=%s dedup_key=%s",
            existing.id,
            channel,
            dedup_key,
        )
        return EnqueueResult(record_id=existing.id, created=False, status=existing.status)

    quiet_hours = await load_quiet_hours(settings_cache or get_settings_cache())
    if quiet_hours is not None:
        deferred_to = quiet_hours.next_allowed(resolved_schedule)
        if deferred_to != resolved_schedule:
            meta["quiet_hours_deferred_from"] = resolved_schedule.isoformat()
            logger.info(
                "notification_deferred_quiet_hours channel=%s from=%s to=%s",
                channel,
                resolved_schedule.isoformat(),
                deferred_to.isoformat(),
            )
            resolved_schedule = deferred_to

    suppression = await get_suppression(session=session, recipient=normalized)
    record = NotificationRecord(
        id=uuid4().hex,
        type=type,
        channel=channel,
        recipient=normalized,
        subject=subject,
        content=content,
        status=STATUS_PENDING if suppression is None else STATUS_FAILED,
        scheduled_for=resolved_schedule,
        retry_count=0,
        max_retries=resolved_retries,
        error_message=None if suppression is None else f"Recipient suppressed ({suppression.kind})",
        correlation_id=correlation_id or f"notif_{uuid4().hex}",
        template_id=template_id,
        metadata_json=meta,
        dedup_key=dedup_key,
        appointment_id=str(meta["appointment_id"]) if meta.get("appointment_id") else None,
        created_at=now,
        updated_at=now,
    )
    session.add(record)
    await session.commit()
    if suppression is not None:
        logger.info("notification_enqueue_suppressed record_id=%s kind=%s", record.id, suppression.kind)
    return EnqueueResult(record_id=record.id, created=True, status=record.status)


async def get_notification(*, session: AsyncSession, record_id: str) -> NotificationRecord:
    record = await session.get(NotificationRecord, record_id)
    if record is None:
        raise NotFoundError("Notification not found")
    return record


async def _audit_transition(
    *,
    session: AsyncSession,
    record: NotificationRecord,
    action: str,
    outcome: str,
    metadata: dict[str, Any],
) -> None:
    await record_event(
        session=session,
        actor_type="system",
        actor_id="queue_processor",
        action=action,
        outcome=outcome,
        resource_type="notification",
        resource_id=record.id,
        correlation_id=record.correlation_id,
        metadata=metadata,
        commit=True,
        best_effort=True,
    )


async def _apply_outcome(
    *,
    session: AsyncSession,
    record: NotificationRecord,
    outcome: SendOutcome,
    summary: BatchSummary,
    now: datetime,
) -> None:
    if outcome.status == SEND_SENT:
        applied = await guarded_transition(
            session=session,
            record_id=record.id,
            target=STATUS_SENT,
            now=now,
            expected=(STATUS_PROCESSING,),
            values={"provider_message_id": outcome.provider_message_id, "sent_at": now, "error_message": None},
        )
        await session.commit()
        if not applied:
            logger.info("notification_late_outcome_ignored record_id=%s outcome=sent", record.id)
            summary.skipped += 1
            return
        summary.sent += 1
        await _audit_transition(
            session=session,
            record=record,
            action="notification.sent",
            outcome="success",
            metadata={"provider_message_id": outcome.provider_message_id, "type": record.type},
        )
        return

    error = outcome.error or "Send failed"
    if outcome.status == SEND_SUPPRESSED or not outcome.retryable:
        applied = await guarded_transition(
            session=session,
            record_id=record.id,
            target=STATUS_FAILED,
            now=now,
            expected=(STATUS_PROCESSING,),
            values={"error_message": error},
        )
        if applied:
            if outcome.suppress_kind:
                await add_suppression(
                    session=session,
                    recipient=record.recipient,
                    kind=outcome.suppress_kind,
                    reason=error,
                    source="provider_feedback",
                )
            # Recipients already on the suppression list never reached a provider.
            if outcome.status != SEND_SUPPRESSED:
                add_dead_letter(
                    session=session,
                    record=record,
                    failure_type=classify_failure(type=record.type, suppress_kind=outcome.suppress_kind),
                    reason=error,
                    now=now,
                )
                summary.dead_lettered += 1
        await session.commit()
        if not applied:
            logger.info("notification_late_outcome_ignored record_id=%s outcome=failed", record.id)
            summary.skipped += 1
            return
        summary.failed += 1
        summary.errors.append({"record_id": record.id, "error": error})
        await _audit_transition(
            session=session,
            record=record,
            action="notification.suppressed" if outcome.status == SEND_SUPPRESSED else "notification.failed",
            outcome="failure",
            metadata={"error": error, "suppress_kind": outcome.suppress_kind, "retryable": False},
        )
        return

    decision = decide_retry(retry_count=record.retry_count, max_retries=record.max_retries, now=now)
    values: dict[str, Any] = {"error_message": error, "retry_count": decision.retry_count}
    if decision.scheduled_for is not None:
        values["scheduled_for"] = decision.scheduled_for
    applied = await guarded_transition(
        session=session,
        record_id=record.id,
        target=decision.status,
        now=now,
        expected=(STATUS_PROCESSING,),
        values=values,
    )
    if applied and decision.status == STATUS_FAILED:
        add_dead_letter(
            session=session,
            record=record,
            failure_type=classify_failure(type=record.type, timed_out=outcome.timed_out),
            reason=error,
            now=now,
        )
        summary.dead_lettered += 1
    await session.commit()
    if not applied:
        logger.info("notification_late_outcome_ignored record_id=%s outcome=%s", record.id, decision.status)
        summary.skipped += 1
        return
    summary.errors.append({"record_id": record.id, "error": error})
    if decision.status == STATUS_PENDING:
        summary.retried += 1
        logger.info(
            "notification_retry_scheduled record_id=%s retry_count=%s delay_s=%s",
            record.id,
            decision.retry_count,
            int(decision.delay.total_seconds()) if decision.delay else 0,
        )
        await _audit_transition(
            session=session,
            record=record,
            action="notification.retry_scheduled",
            outcome="failure",
            metadata={"error": error, "retry_count": decision.retry_count},
        )
    else:
        summary.failed += 1
        await _audit_transition(
            session=session,
            record=record,
            action="notification.failed",
            outcome="failure",
            metadata={"error": error, "retry_count": decision.retry_count, "retries_exhausted": True},
        )


async def _cancel_over_budget(
    *,
    session: AsyncSession,
    record: NotificationRecord,
    summary: BatchSummary,
    now: datetime,
) -> None:
    reason = f"{'SMS' if record.type == 'sms' else 'Email'} budget limit reached"
    applied = await guarded_transition(
        session=session,
        record_id=record.id,
        target=STATUS_CANCELLED,
        now=now,
        expected=(STATUS_PROCESSING,),
        values={"error_message": reason},
    )
    await session.commit()
    if not applied:
        summary.skipped += 1
        return
    summary.cancelled += 1
    logger.warning("notification_budget_cancelled record_id=%s type=%s", record.id, record.type)
    await _audit_transition(
        session=session,
        record=record,
        action="notification.budget_cancelled",
        outcome="failure",
        metadata={"error": reason, "type": record.type},
    )


async def _process_record(
    *,
    record_id: str,
    session_factory: SessionFactory,
    sender_resolver: SenderResolver,
    summary: BatchSummary,
    now: datetime,
    budget: BudgetTracker | None = None,
) -> None:
    async with session_factory() as session:
        claimed = await claim_for_processing(session=session, record_id=record_id, now=now)
        await session.commit()
        if not claimed:
            # Another processor run owns this record.
            logger.debug("notification_claim_lost record_id=%s", record_id)
            summary.skipped += 1
            return
        record = await session.get(NotificationRecord, record_id)
        if record is None:
            summary.skipped += 1
            return

        suppression = await get_suppression(session=session, recipient=record.recipient)
        # Release the connection while the provider call is in flight.
        await session.commit()
        reserved = False
        if suppression is not None:
            outcome = SendOutcome(status=SEND_SUPPRESSED, error=f"Recipient suppressed ({suppression.kind})")
        elif budget is not None and not budget.try_reserve(record.type):
            await _cancel_over_budget(session=session, record=record, summary=summary, now=now)
            return
        else:
            reserved = budget is not None
            message = OutboundMessage(
                recipient=record.recipient,
                content=record.content,
                subject=record.subject,
                correlation_id=record.correlation_id,
                metadata=dict(record.metadata_json or {}),
            )
            try:
                sender = sender_resolver(record.type)
                outcome = await sender.send(message)
            except Exception as exc:  # noqa: BLE001 - one bad send must not abort the batch.
                logger.exception("notification_send_unexpected_error record_id=%s", record_id)
                outcome = SendOutcome(
                    status="failed",
                    error=f"Unexpected sender error: {exc.__class__.__name__}",
                    retryable=True,
                )
        if reserved and budget is not None and outcome.status != SEND_SENT:
            budget.release(record.type)
        await _apply_outcome(session=session, record=record, outcome=outcome, summary=summary, now=now)


async def recover_expired_claims(
    *,
    session: AsyncSession,
    now: datetime,
    lease_s: int | None = None,
    limit: int = 100,
    summary: BatchSummary | None = None,
) -> int:
    """Release records left in ``processing`` by a run that never finished.

    A claim older than ``queue_processing_lease_s`` counts as one failed
    attempt: with retry budget left the record returns to pending and is due
    immediately, otherwise it fails and is dead-lettered. Returns the number
    of records put back to pending.
    """

    lease = lease_s if lease_s is not None else get_settings().queue_processing_lease_s
    cutoff = now - timedelta(seconds=max(1, lease))
    error = "Processing lease expired"
    recovered = 0
    for record in await select_expired_claims(session=session, cutoff=cutoff, limit=limit):
        exhausted = record.retry_count >= record.max_retries
        values: dict[str, Any] = {"error_message": error}
        if not exhausted:
            values.update({"retry_count": record.retry_count + 1, "scheduled_for": now})
        applied = await release_expired_claim(
            session=session,
            record_id=record.id,
            cutoff=cutoff,
            retry_count=record.retry_count,
            target=STATUS_FAILED if exhausted else STATUS_PENDING,
            now=now,
            values=values,
        )
        if not applied:
            continue
        if exhausted:
            add_dead_letter(session=session, record=record, failure_type=FAILURE_TIMEOUT, reason=error, now=now)
        await session.commit()
        logger.warning(
            "notification_claim_expired record_id=%s claimed_at=%s retries_exhausted=%s",
            record.id,
            record.updated_at.isoformat() if record.updated_at else None,
            exhausted,
        )
        if summary is not None:
            if exhausted:
                summary.failed += 1
                summary.dead_lettered += 1
                summary.errors.append({"record_id": record.id, "error": error})
            else:
                summary.recovered += 1
        if not exhausted:
            recovered += 1
        await _audit_transition(
            session=session,
            record=record,
            action="notification.claim_expired",
            outcome="failure",
            metadata={"error": error, "retries_exhausted": exhausted},
        )
    return recovered


async def process_batch(
    *,
    limit: int | None = None,
    session_factory: SessionFactory | None = None,
    sender_resolver: SenderResolver | None = None,
    now: datetime | None = None,
    settings_cache: NotificationSettingsCache | None = None,
) -> BatchSummary:
    """Dispatch up to ``limit`` due notifications.

    Safe to run concurrently with itself: every record is claimed with a
    conditional update before its sender is called, so a record is handed to
    a sender at most once per claim. Records for the same recipient are sent
    in order; different recipients are sent concurrently up to
    ``queue_dispatch_concurrency``. Claims abandoned by a crashed run are
    released first, and the monthly budget is enforced per send.
    """

    settings = get_settings()
    factory = session_factory or SessionLocal
    resolver = sender_resolver or get_channel_sender
    cache = settings_cache or get_settings_cache()
    batch_limit = limit if limit is not None else settings.queue_batch_size
    reference_now = now or utc_now()
    summary = BatchSummary()

    async with factory() as session:
        await recover_expired_claims(session=session, now=reference_now, limit=batch_limit, summary=summary)
        due_ids = await select_due_ids(session=session, now=reference_now, limit=batch_limit)
        if not due_ids:
            return summary
        rows = await session.execute(
            select(NotificationRecord.id, NotificationRecord.recipient).where(NotificationRecord.id.in_(due_ids))
        )
        recipient_by_id = {str(row_id): recipient for row_id, recipient in rows.all()}
        budget = await load_budget(session=session, cache=cache, now=reference_now)
    summary.total = len(due_ids)

    by_recipient: dict[str, list[str]] = {}
    for record_id in due_ids:
        by_recipient.setdefault(recipient_by_id.get(record_id, record_id), []).append(record_id)

    semaphore = asyncio.Semaphore(max(1, int(settings.queue_dispatch_concurrency)))

    async def _run_recipient(record_ids: list[str]) -> None:
        async with semaphore:
            for record_id in record_ids:
                try:
                    await _process_record(
                        record_id=record_id,
                        session_factory=factory,
                        sender_resolver=resolver,
                        summary=summary,
                        now=reference_now,
                        budget=budget,
                    )
                except Exception as exc:  # noqa: BLE001 - isolate per-record storage failures.
                    logger.exception("notification_process_failed record_id=%s", record_id)
                    summary.errors.append({"record_id": record_id, "error": exc.__class__.__name__})

    await asyncio.gather(*(_run_recipient(ids) for ids in by_recipient.values()))
    summary.budget = budget.as_dict()
    logger.info(
        "notification_batch_processed total=%s sent=%s failed=%s retried=%s skipped=%s recovered=%s cancelled=%s",
        summary.total,
        summary.sent,
        summary.failed,
        summary.retried,
        summary.skipped,
        summary.recovered,
        summary.cancelled,
    )
    return summary


async def cancel_notification(
    *,
    session: AsyncSession,
    record_id: str,
    reason: str | None = None,
) -> tuple[NotificationRecord, bool]:
    # Best effort for in-flight records: a sender outcome arriving after cancel is ignored.
    record = await get_notification(session=session, record_id=record_id)
    cancelled = await guarded_transition(
        session=session,
        record_id=record_id,
        target=STATUS_CANCELLED,
        now=utc_now(),
        expected=CANCELLABLE_STATUSES,
        values={"error_message": reason or "Cancelled"},
    )
    await session.commit()
    await session.refresh(record)
    return record, cancelled


async def cancel_appointment_notifications(
    *,
    session: AsyncSession,
    appointment_id: str,
    reason: str | None = None,
) -> int:
    rows = await session.execute(
        select(NotificationRecord.id).where(
            NotificationRecord.appointment_id == appointment_id,
            NotificationRecord.status.in_(CANCELLABLE_STATUSES),
        )
    )
    count = 0
    now = utc_now()
    for record_id in rows.scalars().all():
        if await guarded_transition(
            session=session,
            record_id=str(record_id),
            target=STATUS_CANCELLED,
            now=now,
            expected=CANCELLABLE_STATUSES,
            values={"error_message": reason or "Appointment cancelled"},
        ):
            count += 1
    await session.commit()
    logger.info("appointment_notifications_cancelled appointment_id=%s count=%s", appointment_id, count)
    return count


async def queue_statistics(*, session: AsyncSession, days: int = 7) -> dict[str, Any]:
    # Aggregate counts over records created in the trailing window.
    since = utc_now() - timedelta(days=max(1, days))
    stats: dict[str, Any] = {"days": max(1, days), "total": 0, "by_status": {}, "by_type": {}, "by_channel": {}}
    for column, bucket in (
        (NotificationRecord.status, "by_status"),
        (NotificationRecord.type, "by_type"),
        (NotificationRecord.channel, "by_channel"),
    ):
        rows = await session.execute(
            select(column, func.count()).where(NotificationRecord.created_at >= since).group_by(column)
        )
        stats[bucket] = {str(key): int(count) for key, count in rows.all()}
    stats["total"] = sum(stats["by_status"].values())
    return stats
