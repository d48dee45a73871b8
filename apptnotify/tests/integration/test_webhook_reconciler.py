from __future__ import annotations

from datetime import timedelta
import json
from urllib.parse import urlencode

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from apptnotify.apps.api.main import create_app
from apptnotify.core.config import get_settings
from apptnotify.domain.models import AuditEvent, DeadLetterItem, NotificationRecord, SuppressionEntry, WebhookEvent
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal
from apptnotify.providers.channels.base import OutboundMessage
from apptnotify.providers.channels.factory import set_channel_sender
from apptnotify.providers.channels.fake import FakeChannelSender
from apptnotify.services.queue import enqueue_notification, process_batch
from apptnotify.services.webhooks import reconciler
from apptnotify.services.webhooks.reconciler import reconcile_batch
from apptnotify.services.webhooks.verifier import sign_email, sign_twilio


TWILIO_PATH = "/v1/webhooks/twilio"
EMAIL_PATH = "/v1/webhooks/email"
FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _sent_record(type_: str = "sms", recipient: str = "+15550009999") -> tuple[str, str]:
    # Enqueue and dispatch one record through the fake sender; returns (record id, provider id).
    set_channel_sender(type_, FakeChannelSender(type_))
    async with SessionLocal() as session:
        result = await enqueue_notification(
            session=session,
            type=type_,
            channel="reminder",
            recipient=recipient,
            content="Reminder: see you tomorrow at 10:00",
            subject="Reminder" if type_ == "email" else None,
        )
    await process_batch()
    async with SessionLocal() as session:
        record = await session.get(NotificationRecord, result.record_id)
        assert record is not None and record.status == "sent"
        return record.id, record.provider_message_id or ""


async def _load(record_id: str) -> NotificationRecord:
    async with SessionLocal() as session:
        record = await session.get(NotificationRecord, record_id)
        assert record is not None
        return record


async def _events() -> list[WebhookEvent]:
    async with SessionLocal() as session:
        return list((await session.execute(select(WebhookEvent).order_by(WebhookEvent.id))).scalars().all())


async def _dead_letter(record_id: str) -> DeadLetterItem:
    async with SessionLocal() as session:
        return (
            await session.execute(select(DeadLetterItem).where(DeadLetterItem.notification_id == record_id))
        ).scalar_one()


@pytest.mark.asyncio
async def test_twilio_delivered_callback_marks_record_delivered() -> None:
    record_id, sid = await _sent_record()
    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": sid, "MessageStatus": "delivered"}),
            headers=FORM_HEADERS,
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["processed"] is True
    assert data["matched"] is True
    assert data["applied"] is True
    assert data["status"] == "delivered"
    record = await _load(record_id)
    assert record.status == "delivered"
    assert record.delivered_at is not None

    [event] = await _events()
    assert event.processed is True
    assert event.notification_id == record_id
    assert event.outcome == "delivered"
    assert event.signature_verified is False
    async with SessionLocal() as session:
        audit = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == "notification.webhook_received"))
        ).scalar_one()
    assert audit.actor_type == "provider"
    assert audit.resource_id == record_id
    assert audit.metadata_json["payload"]["MessageStatus"] == "delivered"


@pytest.mark.asyncio
async def test_late_sent_callback_never_regresses_delivered() -> None:
    record_id, sid = await _sent_record()
    async with _client() as client:
        await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": sid, "MessageStatus": "delivered"}),
            headers=FORM_HEADERS,
        )
        late = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": sid, "MessageStatus": "sent"}),
            headers=FORM_HEADERS,
        )

    assert late.status_code == 200
    assert late.json()["data"]["applied"] is False
    assert (await _load(record_id)).status == "delivered"
    assert len(await _events()) == 2


@pytest.mark.asyncio
async def test_twilio_opt_out_bounces_and_suppresses() -> None:
    record_id, sid = await _sent_record(recipient="+15550007777")
    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode(
                {
                    "MessageSid": sid,
                    "MessageStatus": "undelivered",
                    "ErrorCode": "21610",
                    "ErrorMessage": "Attempt to send to unsubscribed recipient",
                }
            ),
            headers=FORM_HEADERS,
        )

    assert response.status_code == 200
    record = await _load(record_id)
    assert record.status == "bounced"
    assert "21610" in (record.error_message or "")
    async with SessionLocal() as session:
        entry = await session.get(SuppressionEntry, "+15550007777")
    assert entry is not None
    assert entry.kind == "unsubscribed"
    item = await _dead_letter(record_id)
    assert item.failure_type == "unsubscribed"
    assert item.retry_eligible is False
    assert item.is_permanent is True


@pytest.mark.asyncio
async def test_signed_twilio_callback_is_verified(monkeypatch) -> None:
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "twilio-secret")
    monkeypatch.setenv("WEBHOOK_PUBLIC_BASE_URL", "https://hooks.salon.example")
    get_settings.cache_clear()
    record_id, sid = await _sent_record()
    body = urlencode({"MessageSid": sid, "MessageStatus": "delivered"}).encode("utf-8")
    signature = sign_twilio(
        secret="twilio-secret",
        url=f"https://hooks.salon.example{TWILIO_PATH}",
        body=body,
    )

    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=body,
            headers={**FORM_HEADERS, "X-Twilio-Signature": signature},
        )

    assert response.status_code == 200
    assert (await _load(record_id)).status == "delivered"
    [event] = await _events()
    assert event.signature_verified is True


@pytest.mark.asyncio
@pytest.mark.parametrize("signature", [None, "bm90LXRoZS1zaWduYXR1cmU="])
async def test_bad_twilio_signature_is_rejected_and_not_stored(monkeypatch, signature) -> None:
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "twilio-secret")
    get_settings.cache_clear()
    record_id, sid = await _sent_record()
    headers = dict(FORM_HEADERS)
    if signature is not None:
        headers["X-Twilio-Signature"] = signature

    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": sid, "MessageStatus": "delivered"}),
            headers=headers,
        )

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert await _events() == []
    assert (await _load(record_id)).status == "sent"


@pytest.mark.asyncio
async def test_rejected_webhook_writes_failure_audit_event(monkeypatch) -> None:
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "twilio-secret")
    get_settings.cache_clear()

    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": "SM1", "MessageStatus": "delivered"}),
            headers={**FORM_HEADERS, "X-Twilio-Signature": "forged"},
        )

    assert response.status_code == 401
    async with SessionLocal() as session:
        events = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == "webhook.twilio"))
        ).scalars().all()
    [event] = events
    assert event.outcome == "failure"
    assert event.actor_type == "anonymous"
    assert event.error_code == "AUTH_UNAUTHORIZED"
    assert event.metadata_json["status_code"] == 401


@pytest.mark.asyncio
async def test_accepted_webhook_is_not_audited_by_the_pipeline() -> None:
    record_id, sid = await _sent_record()
    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": sid, "MessageStatus": "delivered"}),
            headers=FORM_HEADERS,
        )

    assert response.status_code == 200
    async with SessionLocal() as session:
        actions = (
            await session.execute(select(AuditEvent.action).where(AuditEvent.resource_id == record_id))
        ).scalars().all()
        pipeline = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == "webhook.twilio"))
        ).scalars().all()
    assert "notification.webhook_received" in actions
    assert pipeline == []


@pytest.mark.asyncio
async def test_unknown_message_id_stays_open_until_attempts_run_out(monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_UNMATCHED_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()
    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": "SM-does-not-exist", "MessageStatus": "delivered"}),
            headers=FORM_HEADERS,
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["matched"] is False
    assert data["processed"] is False
    assert data["reason"] == "awaiting_match"
    [event] = await _events()
    assert event.processed is False
    assert event.match_attempts == 1
    assert event.notification_id is None

    summary = await reconcile_batch()

    assert summary == {"total": 1, "processed": 1, "matched": 0, "deferred": 0, "failed": 0}
    [event] = await _events()
    assert event.processed is True
    assert event.match_attempts == 2
    assert event.processing_error == "no matching notification"
    assert await reconcile_batch() == {"total": 0, "processed": 0, "matched": 0, "deferred": 0, "failed": 0}


@pytest.mark.asyncio
async def test_unknown_message_id_is_closed_after_max_age() -> None:
    async with SessionLocal() as session:
        session.add(
            WebhookEvent(
                provider="twilio",
                provider_message_id="SM-stale",
                provider_status="delivered",
                outcome="delivered",
                payload_json={"MessageSid": "SM-stale", "MessageStatus": "delivered"},
                signature_verified=True,
                processed=False,
                received_at=utc_now() - timedelta(days=2),
            )
        )
        await session.commit()

    summary = await reconcile_batch()

    assert summary["processed"] == 1
    [event] = await _events()
    assert event.processed is True
    assert event.processing_error == "no matching notification"


class _EarlyCallbackSender(FakeChannelSender):
    # The provider reports delivery before the send call has returned its id.

    async def _deliver(self, message: OutboundMessage) -> str:
        await reconciler.ingest_callback(
            provider="twilio",
            payload={"MessageSid": "SMrace1", "MessageStatus": "delivered"},
            signature_verified=True,
        )
        self.sent.append(message)
        return "SMrace1"


@pytest.mark.asyncio
async def test_callback_racing_the_send_is_applied_on_reconcile() -> None:
    set_channel_sender("sms", _EarlyCallbackSender("sms"))
    async with SessionLocal() as session:
        result = await enqueue_notification(
            session=session,
            type="sms",
            channel="reminder",
            recipient="+15550006666",
            content="Reminder: see you tomorrow at 10:00",
        )

    summary = await process_batch()

    assert summary.sent == 1
    record = await _load(result.record_id)
    assert record.status == "sent"
    assert record.provider_message_id == "SMrace1"
    [event] = await _events()
    assert event.processed is False
    assert event.match_attempts == 1

    reconciled = await reconcile_batch()

    assert reconciled == {"total": 1, "processed": 1, "matched": 1, "deferred": 0, "failed": 0}
    record = await _load(result.record_id)
    assert record.status == "delivered"
    assert record.delivered_at is not None
    [event] = await _events()
    assert event.processed is True
    assert event.notification_id == result.record_id


@pytest.mark.asyncio
async def test_malformed_twilio_payload_is_stored_with_error() -> None:
    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": "SM123"}),
            headers=FORM_HEADERS,
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["processed"] is False
    assert data["reason"] == "malformed_payload"
    [event] = await _events()
    assert event.processed is True
    assert event.processing_error and event.processing_error.startswith("malformed payload")
    assert event.payload_json == {"MessageSid": "SM123"}


@pytest.mark.asyncio
async def test_email_bounce_callback_suppresses_invalid_mailbox(monkeypatch) -> None:
    monkeypatch.setenv("EMAIL_WEBHOOK_SECRET", "email-secret")
    get_settings.cache_clear()
    record_id, message_id = await _sent_record(type_="email", recipient="ghost@example.test")
    body = json.dumps(
        {"event": "bounce", "message_id": f"<{message_id}>", "reason": "550 mailbox unavailable"}
    ).encode("utf-8")

    async with _client() as client:
        response = await client.post(
            EMAIL_PATH,
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Webhook-Signature": sign_email(secret="email-secret", body=body),
            },
        )

    assert response.status_code == 200
    record = await _load(record_id)
    assert record.status == "bounced"
    async with SessionLocal() as session:
        entry = await session.get(SuppressionEntry, "ghost@example.test")
    assert entry is not None
    assert entry.kind == "invalid"
    item = await _dead_letter(record_id)
    assert item.failure_type == "invalid_email"
    assert item.retry_eligible is True
    assert item.recipient == "ghost@example.test"


@pytest.mark.asyncio
async def test_email_unsubscribe_suppresses_without_changing_status() -> None:
    record_id, message_id = await _sent_record(type_="email", recipient="leaver@example.test")
    async with _client() as client:
        response = await client.post(EMAIL_PATH, json={"event": "unsubscribe", "message_id": message_id})

    assert response.status_code == 200
    assert (await _load(record_id)).status == "sent"
    async with SessionLocal() as session:
        entry = await session.get(SuppressionEntry, "leaver@example.test")
    assert entry is not None
    assert entry.kind == "unsubscribed"


@pytest.mark.asyncio
async def test_non_json_email_callback_is_kept_raw() -> None:
    async with _client() as client:
        response = await client.post(
            EMAIL_PATH,
            content=b"definitely not json",
            headers={"Content-Type": "text/plain"},
        )

    assert response.status_code == 200
    assert response.json()["data"]["reason"] == "malformed_payload"
    [event] = await _events()
    assert event.payload_json == {"raw": "definitely not json"}


@pytest.mark.asyncio
async def test_storage_failure_leaves_event_for_reconciliation(monkeypatch) -> None:
    record_id, sid = await _sent_record()

    async def _unavailable(**kwargs):
        raise OperationalError("SELECT notification_queue", {}, Exception("database is locked"))

    monkeypatch.setattr(reconciler, "find_by_provider_message_id", _unavailable)
    async with _client() as client:
        response = await client.post(
            TWILIO_PATH,
            content=urlencode({"MessageSid": sid, "MessageStatus": "delivered"}),
            headers=FORM_HEADERS,
        )

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_ERROR"
    [event] = await _events()
    assert event.processed is False
    assert event.processing_error == "OperationalError"
    assert (await _load(record_id)).status == "sent"

    monkeypatch.undo()
    summary = await reconcile_batch()

    assert summary == {"total": 1, "processed": 1, "matched": 1, "deferred": 0, "failed": 0}
    assert (await _load(record_id)).status == "delivered"
    [event] = await _events()
    assert event.processed is True
    assert event.processing_error is None


@pytest.mark.asyncio
async def test_reconcile_batch_applies_stored_events_in_order() -> None:
    record_id, sid = await _sent_record()
    async with SessionLocal() as session:
        session.add_all(
            [
                WebhookEvent(
                    provider="twilio",
                    provider_message_id=sid,
                    provider_status="delivered",
                    outcome="delivered",
                    payload_json={"MessageSid": sid, "MessageStatus": "delivered"},
                    signature_verified=True,
                    processed=False,
                    received_at=utc_now(),
                ),
                WebhookEvent(
                    provider="twilio",
                    payload_json={"MessageStatus": "delivered"},
                    signature_verified=True,
                    processed=False,
                    received_at=utc_now(),
                ),
            ]
        )
        await session.commit()

    summary = await reconcile_batch()

    assert summary == {"total": 2, "processed": 1, "matched": 1, "deferred": 0, "failed": 1}
    assert (await _load(record_id)).status == "delivered"
    assert all(event.processed for event in await _events())
    assert await reconcile_batch() == {"total": 0, "processed": 0, "matched": 0, "deferred": 0, "failed": 0}
