from __future__ import annotations

import base64
from urllib.parse import parse_qs

import httpx
import pytest

from apptnotify.core.config import get_settings
from apptnotify.core.errors import ProviderConfigError
from apptnotify.domain.state import SUPPRESSION_INVALID, SUPPRESSION_UNSUBSCRIBED
from apptnotify.providers.channels.base import SEND_FAILED, SEND_SENT, SEND_SUPPRESSED, OutboundMessage
from apptnotify.providers.channels.twilio_sms import TwilioSmsSender


MESSAGE = OutboundMessage(recipient="+15550001234", content="See you at 10:00", correlation_id="corr-1")


@pytest.fixture
def twilio_env(monkeypatch) -> None:
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token-abc")
    monkeypatch.setenv("TWILIO_FROM_NUMBER", "+15559990000")
    monkeypatch.setenv("WEBHOOK_PUBLIC_BASE_URL", "https://hooks.salon.example/")
    get_settings.cache_clear()


async def _never_suppressed(recipient: str) -> bool:
    return False


def _sender(handler) -> TwilioSmsSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioSmsSender(client=client, suppression_check=_never_suppressed)


@pytest.mark.asyncio
async def test_accepted_message_returns_sid(twilio_env) -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201, json={"sid": "SM0001", "status": "queued"})

    outcome = await _sender(handler).send(MESSAGE)

    assert outcome.status == SEND_SENT
    assert outcome.provider_message_id == "SM0001"
    [request] = captured
    assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"AC123:token-abc").decode("ascii")
    form = parse_qs(request.content.decode("utf-8"))
    assert form["To"] == ["+15550001234"]
    assert form["From"] == ["+15559990000"]
    assert form["Body"] == ["See you at 10:00"]
    assert form["StatusCallback"] == ["https://hooks.salon.example/v1/webhooks/twilio"]


@pytest.mark.asyncio
async def test_invalid_number_is_permanent_and_suppresses(twilio_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": 21211, "message": "The 'To' number is not valid"})

    outcome = await _sender(handler).send(MESSAGE)

    assert outcome.status == SEND_FAILED
    assert outcome.retryable is False
    assert outcome.suppress_kind == SUPPRESSION_INVALID
    assert outcome.error == "Twilio error 21211: The 'To' number is not valid"


@pytest.mark.asyncio
async def test_opted_out_number_is_suppressed_as_unsubscribed(twilio_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": 21610, "message": "Attempt to send to unsubscribed recipient"})

    outcome = await _sender(handler).send(MESSAGE)

    assert outcome.retryable is False
    assert outcome.suppress_kind == SUPPRESSION_UNSUBSCRIBED


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_throttling_and_server_errors_are_retryable(twilio_env, status_code) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"code": 20429, "message": "Too many requests"})

    outcome = await _sender(handler).send(MESSAGE)

    assert outcome.status == SEND_FAILED
    assert outcome.retryable is True
    assert outcome.suppress_kind is None


@pytest.mark.asyncio
async def test_transport_error_is_retryable(twilio_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    outcome = await _sender(handler).send(MESSAGE)

    assert outcome.retryable is True
    assert "ConnectError" in (outcome.error or "")


@pytest.mark.asyncio
async def test_suppressed_recipient_never_reaches_twilio(twilio_env) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(201, json={"sid": "SM0002"})

    async def _always_suppressed(recipient: str) -> bool:
        return True

    sender = TwilioSmsSender(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        suppression_check=_always_suppressed,
    )
    outcome = await sender.send(MESSAGE)

    assert outcome.status == SEND_SUPPRESSED
    assert calls == []


def test_missing_credentials_fail_fast(monkeypatch) -> None:
    monkeypatch.delenv("TWILIO_ACCOUNT_SID", raising=False)
    monkeypatch.delenv("TWILIO_AUTH_TOKEN", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        TwilioSmsSender(suppression_check=_never_suppressed)
