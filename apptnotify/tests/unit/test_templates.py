from __future__ import annotations

import pytest

from apptnotify.services.templates import DEFAULT_TEMPLATES, get_template, render, render_template


def test_variables_and_missing_values() -> None:
    assert render("Hi {{ name }}, see {{missing}}you", {"name": "Ana"}) == "Hi Ana, see you"


def test_sections_follow_truthiness() -> None:
    template = "{{#staff}}with {{staff}}{{/staff}}{{^staff}}with anyone{{/staff}}"
    assert render(template, {"staff": "Sam"}) == "with Sam"
    assert render(template, {"staff": ""}) == "with anyone"


def test_dotted_lookup() -> None:
    assert render("{{customer.name}}", {"customer": {"name": "Lee"}}) == "Lee"


def test_reminder_email_renders_subject_and_optional_lines() -> None:
    subject, body = render_template(
        get_template("reminder_email"),
        {
            "business_name": "Studio",
            "customer_name": "Ana",
            "service_name": "Haircut",
            "appointment_date": "Monday, 02 March 2026",
            "appointment_time": "10:00",
            "staff_name": "",
            "business_phone": "555-0100",
            "business_address": "",
        },
    )
    assert subject == "Reminder: your appointment at Studio on Monday, 02 March 2026"
    assert "Haircut appointment on Monday, 02 March 2026 at 10:00." in body
    assert "Call us at 555-0100" in body
    assert "Location" not in body
    assert "rescheduled" not in body


@pytest.mark.parametrize(
    ("template_id", "expected"),
    [
        ("reminder_email", "Hi Ana,\n\nYour appointment has been rescheduled.\n\nThis is a reminder"),
        ("reminder_sms", "Studio: moved appointment, reminder of your Haircut"),
    ],
)
def test_reminders_carry_reschedule_notice(template_id: str, expected: str) -> None:
    _, body = render_template(
        get_template(template_id),
        {"business_name": "Studio", "customer_name": "Ana", "service_name": "Haircut", "reschedule_notice": True},
    )
    assert body.startswith(expected)


def test_daily_schedule_without_appointments() -> None:
    _, body = render_template(
        get_template("daily_schedule_email"),
        {"staff_name": "Sam", "schedule_date": "2026-03-02", "has_appointments": False, "business_name": "Studio"},
    )
    assert "no appointments scheduled on 2026-03-02" in body


def test_every_default_template_has_a_body() -> None:
    assert all(template.body for template in DEFAULT_TEMPLATES.values())


def test_unknown_template() -> None:
    with pytest.raises(KeyError):
        get_template("nope")
