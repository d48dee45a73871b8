"""Provider delivery callbacks: persist, map, and apply to the notification queue.

Every callback that passes signature verification is stored in
``notification_webhook_events`` before anything else happens, so a failure
while applying it never loses the provider's report. ``reconcile_batch``
replays stored events that were not applied, including callbacks that
arrived before the record they report on was marked sent. Applying the same
event twice is harmless because every status write is a guarded transition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
from typing import Any, Callable
from urllib.parse import parse_qsl

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.config import get_settings
from apptnotify.core.errors import InternalError, ValidationError
from apptnotify.domain.models import NotificationRecord, WebhookEvent
from apptnotify.domain.state import (
    OUTCOME_ACCEPTED,
    OUTCOME_BOUNCED,
    OUTCOME_DELIVERED,
    OUTCOME_FAILED,
    OUTCOME_QUEUED,
    OUTCOME_SENDING,
    OUTCOME_SENT,
    OUTCOME_UNKNOWN,
    STATUS_BOUNCED,
    STATUS_DELIVERED,
    STATUS_FAILED,
    SUPPRESSION_INVALID,
    SUPPRESSION_UNSUBSCRIBED,
    allowed_sources,
    target_status_for_outcome,
)
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal
from apptnotify.persistence.repos.notifications import find_by_provider_message_id, guarded_transition
from apptnotify.providers.channels.twilio_sms import suppression_kind_for_twilio_code
from apptnotify.services.audit import record_event, record_system_event
from apptnotify.services.dead_letters import (
    FAILURE_HARD_BOUNCE,
    FAILURE_PROVIDER_ERROR,
    add_dead_letter,
    classify_failure,
)
from apptnotify.services.suppression import add_suppression


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]

PROVIDER_TWILIO = "twilio"
PROVIDER_EMAIL = "email"

TWILIO_STATUS_MAP: dict[str, str] = {
    "queued": OUTCOME_QUEUED,
    "sending": OUTCOME_SENDING,
    "sent": OUTCOME_SENT,
    "received": OUTCOME_SENT,
    "delivered": OUTCOME_DELIVERED,
    "undelivered": OUTCOME_BOUNCED,
    "failed": OUTCOME_FAILED,
    "accepted": OUTCOME_ACCEPTED,
}

EMAIL_EVENT_MAP: dict[str, str] = {
    "queued": OUTCOME_QUEUED,
    "processed": OUTCOME_ACCEPTED,
    "deferred": OUTCOME_SENDING,
    "sent": OUTCOME_SENT,
    "delivered": OUTCOME_DELIVERED,
    "bounce": OUTCOME_BOUNCED,
    "bounced": OUTCOME_BOUNCED,
    "dropped": OUTCOME_FAILED,
    "failed": OUTCOME_FAILED,
}

# Recipient feedback that suppresses future sends without changing delivery status.
_EMAIL_UNSUBSCRIBE_EVENTS = frozenset({"complaint", "spamreport", "unsubscribe"})


def map_twilio_status(status: str | None) -> str:
    return TWILIO_STATUS_MAP.get((status or "").strip().lower(), OUTCOME_UNKNOWN)


def map_email_event(event: str | None) -> str:
    return EMAIL_EVENT_MAP.get((event or "").strip().lower(), OUTCOME_UNKNOWN)


@dataclass(frozen=True)
class ProviderFeedback:
    provider: str
    provider_message_id: str | None
    provider_status: str | None
    outcome: str
    error_code: str | None = None
    error_message: str | None = None
    suppress_kind: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileResult:
    event_id: int
    processed: bool
    matched: bool = False
    notification_id: str | None = None
    status: str | None = None
    applied: bool = False
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "processed": self.processed,
            "matched": self.matched,
            "notification_id": self.notification_id,
            "status": self.status,
            "applied": self.applied,
            "reason": self.reason,
        }


def parse_twilio_payload(body: bytes) -> dict[str, str]:
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


def twilio_feedback(payload: dict[str, Any]) -> ProviderFeedback:
    message_sid = str(payload.get("MessageSid") or payload.get("SmsSid") or "").strip()
    status = str(payload.get("MessageStatus") or payload.get("SmsStatus") or "").strip()
    if not message_sid or not status:
        raise ValidationError("MessageSid and MessageStatus are required")
    outcome = map_twilio_status(status)
    error_code = str(payload.get("ErrorCode") or "").strip() or None
    error_message = str(payload.get("ErrorMessage") or "").strip() or None
    suppress_kind = None
    if outcome in {OUTCOME_FAILED, OUTCOME_BOUNCED}:
        suppress_kind = suppression_kind_for_twilio_code(error_code)
    return ProviderFeedback(
        provider=PROVIDER_TWILIO,
        provider_message_id=message_sid,
        provider_status=status,
        outcome=outcome,
        error_code=error_code,
        error_message=error_message,
        suppress_kind=suppress_kind,
        payload=dict(payload),
    )


def parse_email_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Email webhook body must be JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Email webhook body must be a JSON object")
    return payload


def email_feedback(payload: dict[str, Any]) -> ProviderFeedback:
    message_id = str(payload.get("message_id") or "").strip().strip("<>")
    event = str(payload.get("event") or "").strip()
    if not message_id or not event:
        raise ValidationError("message_id and event are required")
    outcome = map_email_event(event)
    reason = str(payload.get("reason") or "").strip() or None
    suppress_kind = None
    if event.lower() in _EMAIL_UNSUBSCRIBE_EVENTS:
        suppress_kind = SUPPRESSION_UNSUBSCRIBED
    elif outcome == OUTCOME_BOUNCED:
        suppress_kind = SUPPRESSION_INVALID
    return ProviderFeedback(
        provider=PROVIDER_EMAIL,
        provider_message_id=message_id,
        provider_status=event,
        outcome=outcome,
        error_message=reason,
        suppress_kind=suppress_kind,
        payload=dict(payload),
    )


def feedback_from_event(event: WebhookEvent) -> ProviderFeedback:
    payload = dict(event.payload_json or {})
    if event.provider == PROVIDER_TWILIO:
        return twilio_feedback(payload)
    if event.provider == PROVIDER_EMAIL:
        return email_feedback(payload)
    raise ValidationError(f"Unsupported webhook provider: {event.provider}")


def _suppression_reason(feedback: ProviderFeedback) -> str:
    if feedback.provider == PROVIDER_TWILIO:
        return f"Twilio error {feedback.error_code}: {feedback.error_message or 'unknown'}"
    return f"Email {feedback.provider_status}: {feedback.error_message or 'no reason given'}"


def _transition_values(feedback: ProviderFeedback, target: str, now: datetime) -> dict[str, Any]:
    if target == STATUS_DELIVERED:
        return {"delivered_at": now}
    detail = feedback.error_message or feedback.provider_status or target
    if feedback.error_code:
        detail = f"{feedback.error_code}: {detail}"
    prefix = "Bounced" if target == STATUS_BOUNCED else "Provider failure"
    return {"error_message": f"{prefix} ({detail})"}


def _dead_letter_type(record: NotificationRecord, feedback: ProviderFeedback, target: str) -> str:
    if feedback.suppress_kind:
        return classify_failure(type=record.type, suppress_kind=feedback.suppress_kind)
    return FAILURE_HARD_BOUNCE if target == STATUS_BOUNCED else FAILURE_PROVIDER_ERROR


def _unmatched_expired(event: WebhookEvent, now: datetime) -> bool:
    settings = get_settings()
    if event.match_attempts >= max(1, settings.webhook_unmatched_max_attempts):
        return True
    received_at = event.received_at or now
    return (now - received_at).total_seconds() >= settings.webhook_unmatched_max_age_s


async def _apply_event(*, session: AsyncSession, event: WebhookEvent, feedback: ProviderFeedback) -> ReconcileResult:
    """Apply one stored callback to the record it reports on.

    A callback can arrive before the processor has written the provider
    message id it refers to. Such an event stays unprocessed so
    ``reconcile_batch`` resolves it later, and is only closed as unmatched
    once it has been tried ``webhook_unmatched_max_attempts`` times or is
    older than ``webhook_unmatched_max_age_s``.
    """

    now = utc_now()
    record: NotificationRecord | None = None
    if feedback.provider_message_id:
        record = await find_by_provider_message_id(session=session, provider_message_id=feedback.provider_message_id)

    applied = False
    if record is None:
        event.match_attempts = (event.match_attempts or 0) + 1
        closed = _unmatched_expired(event, now)
        logger.info(
            "webhook_unmatched provider=%s provider_message_id=%s status=%s attempts=%s closed=%s",
            feedback.provider,
            feedback.provider_message_id,
            feedback.provider_status,
            event.match_attempts,
            closed,
        )
        event.processed = closed
        event.processed_at = now if closed else None
        event.processing_error = "no matching notification" if closed else "awaiting notification match"
        # Replays that still find nothing are not audited again.
        if event.match_attempts == 1 or closed:
            await _audit_callback(session=session, event=event, feedback=feedback, record=None, applied=False)
        await session.commit()
        return ReconcileResult(
            event_id=event.id,
            processed=closed,
            matched=False,
            reason="no_matching_notification" if closed else "awaiting_match",
        )

    target = target_status_for_outcome(feedback.outcome)
    if target is not None:
        applied = await guarded_transition(
            session=session,
            record_id=record.id,
            target=target,
            now=now,
            expected=allowed_sources(target),
            values=_transition_values(feedback, target, now),
        )
        if not applied:
            logger.info(
                "webhook_outcome_ignored record_id=%s status=%s outcome=%s",
                record.id,
                record.status,
                feedback.outcome,
            )
        elif target in {STATUS_BOUNCED, STATUS_FAILED}:
            add_dead_letter(
                session=session,
                record=record,
                failure_type=_dead_letter_type(record, feedback, target),
                reason=_transition_values(feedback, target, now)["error_message"],
                now=now,
            )
    if feedback.suppress_kind:
        await add_suppression(
            session=session,
            recipient=record.recipient,
            kind=feedback.suppress_kind,
            reason=_suppression_reason(feedback),
            source="provider_feedback",
        )

    event.processed = True
    event.processed_at = now
    event.processing_error = None
    event.notification_id = record.id
    await _audit_callback(session=session, event=event, feedback=feedback, record=record, applied=applied)
    await session.commit()

    await session.refresh(record)
    return ReconcileResult(
        event_id=event.id,
        processed=True,
        matched=True,
        notification_id=record.id,
        status=record.status,
        applied=applied,
    )


async def _audit_callback(
    *,
    session: AsyncSession,
    event: WebhookEvent,
    feedback: ProviderFeedback,
    record: NotificationRecord | None,
    applied: bool,
) -> None:
    await record_event(
        session=session,
        actor_type="provider",
        actor_id=feedback.provider,
        action="notification.webhook_received",
        outcome="success",
        resource_type="notification",
        resource_id=record.id if record is not None else None,
        correlation_id=record.correlation_id if record is not None else None,
        metadata={
            "webhook_event_id": event.id,
            "provider_message_id": feedback.provider_message_id,
            "provider_status": feedback.provider_status,
            "outcome": feedback.outcome,
            "applied": applied,
            "matched": record is not None,
            "suppress_kind": feedback.suppress_kind,
            "payload": feedback.payload,
        },
        error_code=feedback.error_code,
        commit=False,
    )


async def _mark_failed(*, session_factory: SessionFactory, event_id: int, error: str) -> None:
    async with session_factory() as session:
        await session.execute(
            update(WebhookEvent).where(WebhookEvent.id == event_id).values(processing_error=error[:1000])
        )
        await session.commit()


async def _store_event(
    *,
    session: AsyncSession,
    provider: str,
    payload: dict[str, Any],
    signature_verified: bool,
    feedback: ProviderFeedback | None,
) -> WebhookEvent:
    event = WebhookEvent(
        provider=provider,
        provider_message_id=feedback.provider_message_id if feedback else None,
        provider_status=feedback.provider_status if feedback else None,
        outcome=feedback.outcome if feedback else None,
        error_code=feedback.error_code if feedback else None,
        error_message=feedback.error_message if feedback else None,
        payload_json=payload,
        signature_verified=signature_verified,
        processed=False,
        received_at=utc_now(),
    )
    session.add(event)
    await session.commit()
    await session.refresh(event)
    return event


async def ingest_callback(
    *,
    provider: str,
    payload: dict[str, Any],
    signature_verified: bool,
    session_factory: SessionFactory | None = None,
) -> ReconcileResult:
    """Store one verified callback and apply it.

    Malformed payloads are stored with a processing error and reported as not
    processed; they are never retried. An unexpected failure while applying
    leaves the stored event unprocessed for ``reconcile_batch`` and raises
    ``InternalError``.
    """

    factory = session_factory or SessionLocal
    parser = twilio_feedback if provider == PROVIDER_TWILIO else email_feedback
    try:
        feedback: ProviderFeedback | None = parser(payload)
        malformed: str | None = None
    except ValidationError as exc:
        feedback = None
        malformed = exc.message

    async with factory() as session:
        event = await _store_event(
            session=session,
            provider=provider,
            payload=payload,
            signature_verified=signature_verified,
            feedback=feedback,
        )
        event_id = event.id
        if feedback is None:
            event.processed = True
            event.processed_at = utc_now()
            event.processing_error = f"malformed payload: {malformed}"
            await session.commit()
            logger.warning("webhook_malformed provider=%s event_id=%s error=%s", provider, event_id, malformed)
            await record_system_event(
                action="notification.webhook_rejected",
                outcome="failure",
                resource_type="webhook_event",
                resource_id=str(event_id),
                metadata={"provider": provider, "payload": payload, "error": malformed},
                error_code="WEBHOOK_PAYLOAD_INVALID",
            )
            return ReconcileResult(event_id=event_id, processed=False, reason="malformed_payload")
        try:
            return await _apply_event(session=session, event=event, feedback=feedback)
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("webhook_apply_failed provider=%s event_id=%s", provider, event_id, exc_info=exc)
            error = exc.__class__.__name__

    await _mark_failed(session_factory=factory, event_id=event_id, error=error)
    await record_system_event(
        action="notification.webhook_received",
        outcome="failure",
        resource_type="webhook_event",
        resource_id=str(event_id),
        metadata={"provider": provider, "payload": payload, "error": error},
        error_code="WEBHOOK_PROCESSING_FAILED",
    )
    raise InternalError("Webhook processing failed")


async def reconcile_batch(
    *,
    limit: int | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, int]:
    """Re-apply stored callbacks that were never processed, oldest first.

    ``deferred`` counts unmatched events left open for a later run.
    """

    factory = session_factory or SessionLocal
    batch_limit = limit if limit is not None else get_settings().webhook_reconcile_batch_size
    async with factory() as session:
        rows = await session.execute(
            select(WebhookEvent.id)
            .where(WebhookEvent.processed.is_(False))
            .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
            .limit(max(1, batch_limit))
        )
        event_ids = [int(row) for row in rows.scalars().all()]

    summary = {"total": len(event_ids), "processed": 0, "matched": 0, "deferred": 0, "failed": 0}
    for event_id in event_ids:
        async with factory() as session:
            event = await session.get(WebhookEvent, event_id)
            if event is None or event.processed:
                continue
            try:
                result = await _apply_event(session=session, event=event, feedback=feedback_from_event(event))
            except ValidationError as exc:
                event.processed = True
                event.processed_at = utc_now()
                event.processing_error = f"malformed payload: {exc.message}"
                await session.commit()
                summary["failed"] += 1
                continue
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("webhook_reconcile_failed event_id=%s", event_id, exc_info=exc)
                summary["failed"] += 1
                await _mark_failed(session_factory=factory, event_id=event_id, error=exc.__class__.__name__)
                continue
        if not result.processed:
            summary["deferred"] += 1
            continue
        summary["processed"] += 1
        if result.matched:
            summary["matched"] += 1
    if event_ids:
        logger.info(
            "webhook_reconcile_batch total=%s processed=%s matched=%s deferred=%s failed=%s",
            summary["total"],
            summary["processed"],
            summary["matched"],
            summary["deferred"],
            summary["failed"],
        )
    return summary
