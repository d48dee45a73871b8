from __future__ import annotations

import pytest

from apptnotify.services.audit import REDACTED, mask_contact, sanitize_metadata


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("dana@example.test", "d***@example.test"),
        ("+1 (555) 000-1234", "***1234"),
        ("short", "short"),
    ],
)
def test_mask_contact(value, expected) -> None:
    assert mask_contact(value) == expected


def test_provider_payload_is_scrubbed_but_keeps_status() -> None:
    payload = {
        "payload": {
            "MessageSid": "SM1",
            "MessageStatus": "delivered",
            "AccountSid": "AC123",
            "To": "+15550001234",
        },
        "X-Twilio-Signature": "abc",
        "recipients": [{"email": "dana@example.test"}],
    }

    cleaned = sanitize_metadata(payload)

    assert cleaned["payload"]["MessageStatus"] == "delivered"
    assert cleaned["payload"]["MessageSid"] == "SM1"
    assert cleaned["payload"]["AccountSid"] == REDACTED
    assert cleaned["payload"]["To"] == "***1234"
    assert cleaned["X-Twilio-Signature"] == REDACTED
    assert cleaned["recipients"] == [{"email": "d***@example.test"}]
