from __future__ import annotations

from apptnotify.core.config import get_settings
from apptnotify.core.errors import ProviderConfigError
from apptnotify.providers.channels.base import ChannelSender
from apptnotify.providers.channels.fake import FakeChannelSender
from apptnotify.providers.channels.smtp_email import SmtpEmailSender
from apptnotify.providers.channels.twilio_sms import TwilioSmsSender


_senders: dict[str, ChannelSender] = {}


def _build_sender(notification_type: str) -> ChannelSender:
    settings = get_settings()
    if notification_type == "email":
        provider = (settings.email_provider or "fake").lower()
        if provider == "fake":
            return FakeChannelSender("email")
        if provider == "smtp":
            return SmtpEmailSender()
        raise ProviderConfigError(f"Unsupported email provider: {provider}")
    if notification_type == "sms":
        provider = (settings.sms_provider or "fake").lower()
        if provider == "fake":
            return FakeChannelSender("sms")
        if provider == "twilio":
            return TwilioSmsSender()
        raise ProviderConfigError(f"Unsupported SMS provider: {provider}")
    raise ProviderConfigError(f"Unsupported notification type: {notification_type}")


def get_channel_sender(notification_type: str) -> ChannelSender:
    # Cache senders so provider HTTP clients are reused across batches.
    sender = _senders.get(notification_type)
    if sender is None:
        sender = _build_sender(notification_type)
        _senders[notification_type] = sender
    return sender


def set_channel_sender(notification_type: str, sender: ChannelSender | None) -> None:
    # Install a sender for one type; None restores settings-driven selection.
    if sender is None:
        _senders.pop(notification_type, None)
    else:
        _senders[notification_type] = sender


def reset_channel_senders() -> None:
    _senders.clear()
