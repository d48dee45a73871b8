from __future__ import annotations

import asyncio

import aiosmtplib

from apptnotify.core.errors import PermanentProviderError, TransientProviderError
from apptnotify.domain.state import SUPPRESSION_INVALID, SUPPRESSION_UNSUBSCRIBED
from apptnotify.providers.channels.smtp_email import classify_smtp_error
from apptnotify.providers.channels.twilio_sms import suppression_kind_for_twilio_code


def test_smtp_invalid_mailbox_is_permanent_and_suppresses() -> None:
    refused = aiosmtplib.SMTPRecipientsRefused(
        [aiosmtplib.SMTPRecipientRefused(550, "no such user", "ghost@example.test")]
    )
    error = classify_smtp_error(refused)
    assert isinstance(error, PermanentProviderError)
    assert error.suppress_kind == SUPPRESSION_INVALID


def test_smtp_greylisting_is_transient() -> None:
    refused = aiosmtplib.SMTPRecipientsRefused(
        [aiosmtplib.SMTPRecipientRefused(451, "try later", "busy@example.test")]
    )
    error = classify_smtp_error(refused)
    assert isinstance(error, TransientProviderError)
    assert error.retryable


def test_smtp_policy_rejection_is_permanent_without_suppression() -> None:
    error = classify_smtp_error(aiosmtplib.SMTPResponseException(554, "policy"))
    assert isinstance(error, PermanentProviderError)
    assert error.suppress_kind is None


def test_network_errors_are_transient() -> None:
    assert isinstance(classify_smtp_error(ConnectionRefusedError()), TransientProviderError)
    assert isinstance(classify_smtp_error(asyncio.TimeoutError()), TransientProviderError)


def test_twilio_codes() -> None:
    assert suppression_kind_for_twilio_code("21211") == SUPPRESSION_INVALID
    assert suppression_kind_for_twilio_code(30005) == SUPPRESSION_INVALID
    assert suppression_kind_for_twilio_code("21610") == SUPPRESSION_UNSUBSCRIBED
    assert suppression_kind_for_twilio_code("20429") is None
    assert suppression_kind_for_twilio_code(None) is None
