from __future__ import annotations

import logging

import httpx

from apptnotify.core.config import get_settings
from apptnotify.core.errors import PermanentProviderError, ProviderConfigError, TransientProviderError
from apptnotify.domain.state import SUPPRESSION_INVALID, SUPPRESSION_UNSUBSCRIBED
from apptnotify.providers.channels.base import BaseChannelSender, OutboundMessage, SuppressionCheck


logger = logging.getLogger(__name__)

# Twilio error codes that prove a number can never receive messages.
PERMANENT_TWILIO_ERROR_CODES: frozenset[str] = frozenset(
    {
        "21211",  # invalid 'To' number
        "21212",  # invalid 'From' number
        "21408",  # region not enabled
        "21610",  # recipient replied STOP
        "30003",  # unreachable handset
        "30004",  # message blocked
        "30005",  # unknown destination
        "30006",  # landline or unreachable carrier
        "30007",  # carrier violation
        "30008",  # unknown error
        "30009",  # missing segment
        "30010",  # price exceeds max
    }
)
TWILIO_UNSUBSCRIBED_CODE = "21610"


def suppression_kind_for_twilio_code(code: str | int | None) -> str | None:
    # Map a Twilio error code onto the suppression vocabulary, None when not permanent.
    if code is None:
        return None
    normalized = str(code).strip()
    if normalized not in PERMANENT_TWILIO_ERROR_CODES:
        return None
    if normalized == TWILIO_UNSUBSCRIBED_CODE:
        return SUPPRESSION_UNSUBSCRIBED
    return SUPPRESSION_INVALID


class TwilioSmsSender(BaseChannelSender):
    channel_type = "sms"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float | None = None,
        suppression_check: SuppressionCheck | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, suppression_check=suppression_check)
        self._settings = get_settings()
        self._client = client
        if not self._settings.twilio_account_sid or not self._settings.twilio_auth_token:
            raise ProviderConfigError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required for SMS")
        if not self._settings.twilio_from_number and not self._settings.twilio_messaging_service_sid:
            raise ProviderConfigError("TWILIO_FROM_NUMBER or TWILIO_MESSAGING_SERVICE_SID is required for SMS")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per sender for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    def _form(self, message: OutboundMessage) -> dict[str, str]:
        settings = self._settings
        form = {"To": message.recipient, "Body": message.content}
        if settings.twilio_messaging_service_sid:
            form["MessagingServiceSid"] = settings.twilio_messaging_service_sid
        else:
            form["From"] = settings.twilio_from_number or ""
        if settings.webhook_public_base_url:
            form["StatusCallback"] = f"{settings.webhook_public_base_url.rstrip('/')}/v1/webhooks/twilio"
        return form

    async def _deliver(self, message: OutboundMessage) -> str:
        settings = self._settings
        url = (
            f"{settings.twilio_api_base_url.rstrip('/')}/2010-04-01/Accounts/"
            f"{settings.twilio_account_sid}/Messages.json"
        )
        try:
            response = await self._get_client().post(
                url,
                data=self._form(message),
                auth=(settings.twilio_account_sid or "", settings.twilio_auth_token or ""),
            )
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"Twilio transport error: {exc.__class__.__name__}") from exc

        if response.status_code in (200, 201):
            sid = response.json().get("sid")
            if not sid:
                raise TransientProviderError("Twilio response missing message sid")
            return str(sid)

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        code = payload.get("code") if isinstance(payload, dict) else None
        detail = payload.get("message") if isinstance(payload, dict) else None
        message_text = f"Twilio error {code}: {detail}" if code else f"Twilio HTTP {response.status_code}"
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(message_text)
        suppress_kind = suppression_kind_for_twilio_code(code)
        if suppress_kind is not None or 400 <= response.status_code < 500:
            raise PermanentProviderError(message_text, suppress_kind=suppress_kind)
        raise TransientProviderError(message_text)
