"""Minimal mustache-style renderer for notification bodies.

Supported syntax:

* ``{{name}}`` substitutes a variable (missing variables render as "").
* ``{{#flag}}...{{/flag}}`` keeps the block when ``flag`` is truthy.
* ``{{^flag}}...{{/flag}}`` keeps the block when ``flag`` is falsy.

Sections do not nest with the same name and no HTML escaping is applied;
the email sender is responsible for the transport encoding.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Mapping


_SECTION_RE = re.compile(r"\{\{([#^])\s*([\w.]+)\s*\}\}(.*?)\{\{/\s*\2\s*\}\}", re.DOTALL)
_VARIABLE_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


@dataclass(frozen=True)
class MessageTemplate:
    template_id: str
    subject: str | None
    body: str


def _lookup(variables: Mapping[str, Any], name: str) -> Any:
    value: Any = variables
    for part in name.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return None
    return value


def render(template: str, variables: Mapping[str, Any]) -> str:
    def _section(match: re.Match[str]) -> str:
        kind, name, inner = match.group(1), match.group(2), match.group(3)
        truthy = bool(_lookup(variables, name))
        keep = truthy if kind == "#" else not truthy
        return render(inner, variables) if keep else ""

    rendered = _SECTION_RE.sub(_section, template)

    def _variable(match: re.Match[str]) -> str:
        value = _lookup(variables, match.group(1))
        return "" if value is None else str(value)

    return _VARIABLE_RE.sub(_variable, rendered)


def render_template(template: MessageTemplate, variables: Mapping[str, Any]) -> tuple[str | None, str]:
    subject = render(template.subject, variables) if template.subject is not None else None
    return subject, render(template.body, variables)


DEFAULT_TEMPLATES: dict[str, MessageTemplate] = {
    "reminder_email": MessageTemplate(
        template_id="reminder_email",
        subject="Reminder: your appointment at {{business_name}} on {{appointment_date}}",
        body=(
            "Hi {{customer_name}},\n\n"
            "{{#reschedule_notice}}Your appointment has been rescheduled.\n\n{{/reschedule_notice}}"
            "This is a reminder of your {{service_name}} appointment on {{appointment_date}} "
            "at {{appointment_time}}"
            "{{#staff_name}} with {{staff_name}}{{/staff_name}}.\n\n"
            "{{#business_address}}Location: {{business_address}}\n{{/business_address}}"
            "{{#business_phone}}Need to reschedule? Call us at {{business_phone}}.\n{{/business_phone}}"
            "\nSee you soon,\n{{business_name}}"
        ),
    ),
    "reminder_sms": MessageTemplate(
        template_id="reminder_sms",
        subject=None,
        body=(
            "{{business_name}}: {{#reschedule_notice}}moved appointment, {{/reschedule_notice}}"
            "reminder of your {{service_name}} on {{appointment_date}} "
            "at {{appointment_time}}.{{#business_phone}} Call {{business_phone}} to reschedule.{{/business_phone}}"
        ),
    ),
    "confirmation_email": MessageTemplate(
        template_id="confirmation_email",
        subject="Your appointment at {{business_name}} is confirmed",
        body=(
            "Hi {{customer_name}},\n\n"
            "Your {{service_name}} appointment on {{appointment_date}} at {{appointment_time}} is confirmed."
            "\n\n{{business_name}}"
        ),
    ),
    "cancellation_email": MessageTemplate(
        template_id="cancellation_email",
        subject="Your appointment at {{business_name}} was cancelled",
        body=(
            "Hi {{customer_name}},\n\n"
            "Your {{service_name}} appointment on {{appointment_date}} at {{appointment_time}} was cancelled."
            "{{#business_phone}} Call {{business_phone}} to book again.{{/business_phone}}"
            "\n\n{{business_name}}"
        ),
    ),
    "daily_schedule_email": MessageTemplate(
        template_id="daily_schedule_email",
        subject="Your schedule for {{schedule_date}}",
        body=(
            "Hi {{staff_name}},\n\n"
            "{{#has_appointments}}You have {{appointment_count}} appointment(s) on {{schedule_date}}:\n\n"
            "{{appointment_lines}}\n{{/has_appointments}}"
            "{{^has_appointments}}You have no appointments scheduled on {{schedule_date}}.\n{{/has_appointments}}"
            "\n{{business_name}}"
        ),
    ),
}


def get_template(template_id: str) -> MessageTemplate:
    try:
        return DEFAULT_TEMPLATES[template_id]
    except KeyError as exc:
        raise KeyError(f"Unknown template: {template_id}") from exc
