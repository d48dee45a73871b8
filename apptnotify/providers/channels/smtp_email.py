from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

import aiosmtplib

from apptnotify.core.config import get_settings
from apptnotify.core.errors import PermanentProviderError, ProviderConfigError, TransientProviderError
from apptnotify.domain.state import SUPPRESSION_INVALID
from apptnotify.providers.channels.base import BaseChannelSender, OutboundMessage, SuppressionCheck


# Recipient-level 5xx replies that prove the mailbox does not exist.
_INVALID_MAILBOX_CODES = {550, 551, 553}


def classify_smtp_error(exc: Exception) -> TransientProviderError | PermanentProviderError:
    # 4xx and network errors retry; 5xx replies are final.
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [int(refused.code) for refused in exc.recipients]
        if codes and all(500 <= code < 600 for code in codes):
            suppress = SUPPRESSION_INVALID if any(code in _INVALID_MAILBOX_CODES for code in codes) else None
            return PermanentProviderError(f"SMTP recipient refused ({codes[0]})", suppress_kind=suppress)
        return TransientProviderError(f"SMTP recipient deferred ({codes[0] if codes else 'unknown'})")
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        code = int(exc.code)
        if 500 <= code < 600:
            suppress = SUPPRESSION_INVALID if code in _INVALID_MAILBOX_CODES else None
            return PermanentProviderError(f"SMTP error {code}", suppress_kind=suppress)
        return TransientProviderError(f"SMTP error {code}")
    if isinstance(exc, (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError)):
        return TransientProviderError(f"SMTP transport error: {exc.__class__.__name__}")
    return TransientProviderError(f"SMTP failure: {exc.__class__.__name__}")


class SmtpEmailSender(BaseChannelSender):
    channel_type = "email"

    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        suppression_check: SuppressionCheck | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, suppression_check=suppression_check)
        self._settings = get_settings()
        if not self._settings.smtp_host:
            raise ProviderConfigError("SMTP_HOST is required for the smtp email provider")

    def build_message(self, message: OutboundMessage) -> EmailMessage:
        settings = self._settings
        email = EmailMessage()
        email["From"] = formataddr((settings.smtp_from_name, settings.smtp_from_address))
        email["To"] = message.recipient
        email["Subject"] = message.subject or settings.business_name
        domain = settings.smtp_from_address.rsplit("@", 1)[-1] or None
        email["Message-ID"] = make_msgid(domain=domain)
        if message.correlation_id:
            email["X-Correlation-Id"] = message.correlation_id
        email.set_content(message.content)
        return email

    async def _deliver(self, message: OutboundMessage) -> str:
        settings = self._settings
        email = self.build_message(message)
        try:
            await aiosmtplib.send(
                email,
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_username,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                start_tls=settings.smtp_start_tls and not settings.smtp_use_tls,
                timeout=self._timeout_s,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise classify_smtp_error(exc) from exc
        # The Message-ID travels back in provider callbacks, so it identifies the send.
        return str(email["Message-ID"]).strip("<>")
