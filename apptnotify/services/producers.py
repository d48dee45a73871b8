"""Scheduled producers that turn booking data into queued notifications.

Both jobs are safe to run more often than their cadence: every enqueue goes
through the queue's equivalence check, so a second run in the same window
collapses onto the records the first run created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
import logging
from typing import Any
from zoneinfo import ZoneInfo

from apptnotify.core.config import get_settings
from apptnotify.core.errors import AppointmentNotifyError
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal
from apptnotify.services.directory import Appointment, AppointmentDirectory, get_appointment_directory
from apptnotify.services.queue import (
    EnqueueResult,
    SessionFactory,
    cancel_appointment_notifications,
    enqueue_notification,
)
from apptnotify.services.settings_cache import NotificationSettingsCache, get_settings_cache
from apptnotify.services.templates import get_template, render_template


logger = logging.getLogger(__name__)

CHANNEL_REMINDER = "reminder"
CHANNEL_DAILY_SCHEDULE = "daily_schedule"

# Half-width of the matching windows around the reminder offset and the daily send time.
# Reminder windows are half-open and 30 minutes wide, matching the 30 minute reminder cron.
REMINDER_WINDOW = timedelta(minutes=15)
DAILY_SCHEDULE_WINDOW = timedelta(minutes=30)


@dataclass
class ProducerSummary:
    total: int = 0
    email_queued: int = 0
    sms_queued: int = 0
    deduplicated: int = 0
    failed: int = 0
    skipped_reason: str | None = None
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "email_queued": self.email_queued,
            "sms_queued": self.sms_queued,
            "deduplicated": self.deduplicated,
            "failed": self.failed,
            "skipped_reason": self.skipped_reason,
            "errors": list(self.errors),
        }


def _business_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().business_timezone)


def _business_variables() -> dict[str, str]:
    settings = get_settings()
    return {
        "business_name": settings.business_name,
        "business_phone": settings.business_phone,
        "business_address": settings.business_address,
    }


def appointment_variables(appointment: Appointment) -> dict[str, Any]:
    local_start = appointment.starts_at.astimezone(_business_tz())
    return {
        **_business_variables(),
        "customer_name": appointment.customer_name or "there",
        "service_name": appointment.service_name,
        "staff_name": appointment.staff_name or "",
        "appointment_date": local_start.strftime("%A, %d %B %Y"),
        "appointment_time": local_start.strftime("%H:%M"),
    }


def parse_daily_time(value: str | None) -> time:
    # "HH:MM" in the business timezone; anything unparseable falls back to 08:00.
    try:
        hours, minutes = (int(part) for part in str(value or "").split(":", 1))
        return time(hour=hours, minute=minutes)
    except ValueError:
        logger.warning("daily_schedule_time_invalid value=%s", value)
        return time(hour=8)


def reminder_window(now: datetime, hours_before: int) -> tuple[datetime, datetime]:
    target = now + timedelta(hours=hours_before)
    return target - REMINDER_WINDOW, target + REMINDER_WINDOW


async def _enqueue(
    *,
    session_factory: SessionFactory,
    summary: ProducerSummary,
    type: str,
    channel: str,
    recipient: str,
    template_id: str,
    variables: dict[str, Any],
    correlation_id: str,
    metadata: dict[str, Any],
    now: datetime,
    scheduled_for: datetime | None = None,
    settings_cache: NotificationSettingsCache | None = None,
) -> EnqueueResult:
    subject, body = render_template(get_template(template_id), variables)
    async with session_factory() as session:
        result = await enqueue_notification(
            session=session,
            type=type,
            channel=channel,
            recipient=recipient,
            content=body,
            subject=subject,
            scheduled_for=scheduled_for or now,
            correlation_id=correlation_id,
            template_id=template_id,
            metadata=metadata,
            settings_cache=settings_cache,
        )
    if not result.created:
        summary.deduplicated += 1
    elif type == "email":
        summary.email_queued += 1
    else:
        summary.sms_queued += 1
    return result


def reminder_metadata(appointment: Appointment, **extra: Any) -> dict[str, Any]:
    # Keyed on the start time so a rescheduled appointment gets fresh reminders.
    return {
        "appointment_id": appointment.id,
        "starts_at": appointment.starts_at.isoformat(),
        "dedup_key": f"reminder:{appointment.id}:{appointment.starts_at.isoformat()}",
        **extra,
    }


def _reminder_targets(
    appointment: Appointment,
    *,
    email_enabled: bool,
    sms_enabled: bool,
) -> list[tuple[str, str, str]]:
    targets = []
    if email_enabled and appointment.customer_email:
        targets.append(("email", appointment.customer_email, "reminder_email"))
    if sms_enabled and appointment.customer_phone:
        targets.append(("sms", appointment.customer_phone, "reminder_sms"))
    return targets


async def schedule_appointment_reminders(
    *,
    now: datetime | None = None,
    directory: AppointmentDirectory | None = None,
    settings_cache: NotificationSettingsCache | None = None,
    session_factory: SessionFactory | None = None,
) -> ProducerSummary:
    """Queue reminders for confirmed appointments starting ``reminder_hours_before`` from now.

    Matches appointments in the half-open 30 minute window centred on the
    offset. On-time runs every 30 minutes cover each start time once; a late
    or repeated run can match an appointment twice, and the enqueue dedup key
    (appointment plus start time) collapses the second match.
    """

    reference_now = now or utc_now()
    cache = settings_cache or get_settings_cache()
    factory = session_factory or SessionLocal
    summary = ProducerSummary()

    email_enabled = await cache.get_bool("reminder_email_enabled")
    sms_enabled = await cache.get_bool("reminder_sms_enabled")
    if not email_enabled and not sms_enabled:
        summary.skipped_reason = "reminders_disabled"
        return summary

    hours_before = await cache.get_int("reminder_hours_before", 24)
    window_start, window_end = reminder_window(reference_now, hours_before)
    appointments = await (directory or get_appointment_directory()).list_appointments(
        starts_after=window_start,
        starts_before=window_end,
        status="confirmed",
    )
    # The directory filter is inclusive; the upper bound belongs to the next run.
    appointments = [item for item in appointments if window_start <= item.starts_at < window_end]
    summary.total = len(appointments)
    stamp = int(reference_now.timestamp() * 1000)

    for appointment in appointments:
        variables = appointment_variables(appointment)
        correlation_id = f"reminder_{appointment.id}_{stamp}"
        metadata = reminder_metadata(appointment)
        targets = _reminder_targets(appointment, email_enabled=email_enabled, sms_enabled=sms_enabled)
        for type_, recipient, template_id in targets:
            try:
                await _enqueue(
                    session_factory=factory,
                    summary=summary,
                    type=type_,
                    channel=CHANNEL_REMINDER,
                    recipient=recipient,
                    template_id=template_id,
                    variables=variables,
                    correlation_id=correlation_id,
                    metadata=metadata,
                    now=reference_now,
                    settings_cache=cache,
                )
            except AppointmentNotifyError as exc:
                summary.failed += 1
                summary.errors.append(f"appointment {appointment.id}: {exc.message}")
                logger.warning("reminder_enqueue_failed appointment_id=%s type=%s", appointment.id, type_)

    logger.info(
        "reminders_scheduled total=%s email=%s sms=%s deduplicated=%s failed=%s",
        summary.total,
        summary.email_queued,
        summary.sms_queued,
        summary.deduplicated,
        summary.failed,
    )
    return summary


@dataclass
class RescheduleSummary:
    appointment_id: str
    cancelled: int = 0
    reminder_at: datetime | None = None
    queued: dict[str, str] = field(default_factory=dict)
    deduplicated: int = 0
    skipped_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "cancelled": self.cancelled,
            "reminder_at": self.reminder_at.isoformat() if self.reminder_at else None,
            "queued": dict(self.queued),
            "deduplicated": self.deduplicated,
            "skipped_reason": self.skipped_reason,
        }


async def reschedule_appointment_notifications(
    *,
    appointment: Appointment,
    now: datetime | None = None,
    settings_cache: NotificationSettingsCache | None = None,
    session_factory: SessionFactory | None = None,
) -> RescheduleSummary:
    """Move an appointment's reminders to its new start time.

    Every pending or in-flight notification for the appointment is cancelled,
    then one reminder per enabled channel is queued for
    ``starts_at - reminder_hours_before`` (immediately when that has already
    passed) with a rescheduled notice in the body.
    """

    reference_now = now or utc_now()
    cache = settings_cache or get_settings_cache()
    factory = session_factory or SessionLocal
    summary = RescheduleSummary(appointment_id=appointment.id)

    async with factory() as session:
        summary.cancelled = await cancel_appointment_notifications(
            session=session,
            appointment_id=appointment.id,
            reason="Appointment rescheduled",
        )

    if appointment.starts_at <= reference_now:
        summary.skipped_reason = "appointment_in_past"
        return summary
    email_enabled = await cache.get_bool("reminder_email_enabled")
    sms_enabled = await cache.get_bool("reminder_sms_enabled")
    targets = _reminder_targets(appointment, email_enabled=email_enabled, sms_enabled=sms_enabled)
    if not targets:
        summary.skipped_reason = "reminders_disabled" if not (email_enabled or sms_enabled) else "no_contact"
        return summary

    hours_before = await cache.get_int("reminder_hours_before", 24)
    summary.reminder_at = max(appointment.starts_at - timedelta(hours=hours_before), reference_now)
    variables = {**appointment_variables(appointment), "reschedule_notice": True}
    producer_summary = ProducerSummary(total=1)
    for type_, recipient, template_id in targets:
        result = await _enqueue(
            session_factory=factory,
            summary=producer_summary,
            type=type_,
            channel=CHANNEL_REMINDER,
            recipient=recipient,
            template_id=template_id,
            variables=variables,
            correlation_id=f"reschedule_{appointment.id}_{int(reference_now.timestamp() * 1000)}",
            metadata=reminder_metadata(appointment, rescheduled=True),
            now=reference_now,
            scheduled_for=summary.reminder_at,
            settings_cache=cache,
        )
        summary.queued[type_] = result.record_id
    summary.deduplicated = producer_summary.deduplicated

    logger.info(
        "appointment_rescheduled appointment_id=%s cancelled=%s queued=%s reminder_at=%s",
        appointment.id,
        summary.cancelled,
        len(summary.queued),
        summary.reminder_at.isoformat(),
    )
    return summary


def _schedule_line(appointment: Appointment, tz: ZoneInfo) -> str:
    local_start = appointment.starts_at.astimezone(tz)
    customer = appointment.customer_name or "Customer"
    return f"- {local_start.strftime('%H:%M')} {appointment.service_name} with {customer}"


async def schedule_daily_staff_notifications(
    *,
    now: datetime | None = None,
    directory: AppointmentDirectory | None = None,
    settings_cache: NotificationSettingsCache | None = None,
    session_factory: SessionFactory | None = None,
) -> ProducerSummary:
    """Queue one schedule email per active staff member for the local day.

    Only acts within 30 minutes of ``daily_schedule_time``; staff without an
    email address are skipped.
    """

    reference_now = now or utc_now()
    cache = settings_cache or get_settings_cache()
    factory = session_factory or SessionLocal
    summary = ProducerSummary()

    if not await cache.get_bool("daily_schedule_email_enabled"):
        summary.skipped_reason = "daily_schedule_disabled"
        return summary

    tz = _business_tz()
    local_now = reference_now.astimezone(tz)
    send_at = datetime.combine(local_now.date(), parse_daily_time(await cache.get("daily_schedule_time")), tzinfo=tz)
    if abs(local_now - send_at) > DAILY_SCHEDULE_WINDOW:
        summary.skipped_reason = "outside_send_window"
        return summary

    day_start = datetime.combine(local_now.date(), time(0), tzinfo=tz)
    directory = directory or get_appointment_directory()
    staff_members = await directory.list_active_staff()
    appointments = await directory.list_appointments(
        starts_after=day_start,
        starts_before=day_start + timedelta(days=1),
        status="confirmed",
    )
    by_staff: dict[str, list[Appointment]] = {}
    for appointment in sorted(appointments, key=lambda item: item.starts_at):
        if appointment.staff_id:
            by_staff.setdefault(appointment.staff_id, []).append(appointment)

    schedule_date = local_now.date().isoformat()
    summary.total = len(staff_members)
    for member in staff_members:
        if not member.email:
            continue
        own = by_staff.get(member.id, [])
        variables = {
            **_business_variables(),
            "staff_name": member.name,
            "schedule_date": schedule_date,
            "has_appointments": bool(own),
            "appointment_count": len(own),
            "appointment_lines": "\n".join(_schedule_line(item, tz) for item in own),
        }
        try:
            await _enqueue(
                session_factory=factory,
                summary=summary,
                type="email",
                channel=CHANNEL_DAILY_SCHEDULE,
                recipient=member.email,
                template_id="daily_schedule_email",
                variables=variables,
                correlation_id=f"daily_schedule_{member.id}_{schedule_date}",
                metadata={
                    "staff_id": member.id,
                    "schedule_date": schedule_date,
                    "dedup_key": f"day:{schedule_date}",
                },
                now=reference_now,
                settings_cache=cache,
            )
        except AppointmentNotifyError as exc:
            summary.failed += 1
            summary.errors.append(f"staff {member.id}: {exc.message}")
            logger.warning("daily_schedule_enqueue_failed staff_id=%s", member.id)

    logger.info(
        "daily_schedules_scheduled staff=%s queued=%s deduplicated=%s failed=%s",
        summary.total,
        summary.email_queued,
        summary.deduplicated,
        summary.failed,
    )
    return summary
