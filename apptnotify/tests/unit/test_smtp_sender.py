from __future__ import annotations

import aiosmtplib
import pytest

from apptnotify.core.config import get_settings
from apptnotify.providers.channels import smtp_email
from apptnotify.providers.channels.base import SEND_FAILED, SEND_SENT, OutboundMessage
from apptnotify.providers.channels.smtp_email import SmtpEmailSender


MESSAGE = OutboundMessage(
    recipient="dana@example.test",
    subject="Reminder",
    content="See you tomorrow",
    correlation_id="reminder_a1_1",
)


async def _never_suppressed(recipient: str) -> bool:
    return False


@pytest.fixture
def smtp_env(monkeypatch) -> None:
    monkeypatch.setenv("SMTP_HOST", "smtp.salon.example")
    monkeypatch.setenv("SMTP_FROM_ADDRESS", "hello@salon.example")
    monkeypatch.setenv("SMTP_FROM_NAME", "Our Salon")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_message_id_identifies_the_send(smtp_env, monkeypatch) -> None:
    sent: list[dict] = []

    async def _fake_send(message, **kwargs):
        sent.append({"message": message, **kwargs})
        return {}, "OK"

    monkeypatch.setattr(smtp_email.aiosmtplib, "send", _fake_send)

    outcome = await SmtpEmailSender(suppression_check=_never_suppressed).send(MESSAGE)

    assert outcome.status == SEND_SENT
    [call] = sent
    email = call["message"]
    assert call["hostname"] == "smtp.salon.example"
    assert email["To"] == "dana@example.test"
    assert email["From"] == "Our Salon <hello@salon.example>"
    assert email["X-Correlation-Id"] == "reminder_a1_1"
    assert outcome.provider_message_id == str(email["Message-ID"]).strip("<>")
    assert outcome.provider_message_id.endswith("@salon.example")


@pytest.mark.asyncio
async def test_refused_mailbox_maps_to_permanent_outcome(smtp_env, monkeypatch) -> None:
    async def _refuse(message, **kwargs):
        raise aiosmtplib.SMTPRecipientsRefused(
            [aiosmtplib.SMTPRecipientRefused(550, "no such user", "dana@example.test")]
        )

    monkeypatch.setattr(smtp_email.aiosmtplib, "send", _refuse)

    outcome = await SmtpEmailSender(suppression_check=_never_suppressed).send(MESSAGE)

    assert outcome.status == SEND_FAILED
    assert outcome.retryable is False
    assert outcome.suppress_kind == "invalid"


@pytest.mark.asyncio
async def test_connection_failure_is_retryable(smtp_env, monkeypatch) -> None:
    async def _unreachable(message, **kwargs):
        raise aiosmtplib.SMTPConnectError("connection refused")

    monkeypatch.setattr(smtp_email.aiosmtplib, "send", _unreachable)

    outcome = await SmtpEmailSender(suppression_check=_never_suppressed).send(MESSAGE)

    assert outcome.retryable is True
