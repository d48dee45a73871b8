from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from apptnotify.core.config import get_settings
from apptnotify.core.logging import configure_logging
from apptnotify.services.producers import schedule_appointment_reminders, schedule_daily_staff_notifications
from apptnotify.services.queue import process_batch
from apptnotify.services.webhooks.reconciler import reconcile_batch


logger = logging.getLogger(__name__)


def parse_minutes(value: str) -> set[int]:
    # "0,15,30" -> {0, 15, 30}; out-of-range entries are dropped.
    minutes = {int(part) for part in value.split(",") if part.strip()}
    return {minute for minute in minutes if 0 <= minute < 60}


async def process_notification_batch(ctx: dict[str, Any]) -> dict[str, Any]:
    summary = await process_batch()
    return summary.as_dict()


async def schedule_reminders(ctx: dict[str, Any]) -> dict[str, Any]:
    summary = await schedule_appointment_reminders()
    return summary.as_dict()


async def schedule_daily_staff(ctx: dict[str, Any]) -> dict[str, Any]:
    summary = await schedule_daily_staff_notifications()
    return summary.as_dict()


async def reconcile_webhooks(ctx: dict[str, Any]) -> dict[str, int]:
    return await reconcile_batch()


async def _startup(ctx: dict[str, Any]) -> None:
    configure_logging()
    logger.info("notification_worker_started queue=%s", get_settings().worker_queue_name)


async def _shutdown(ctx: dict[str, Any]) -> None:
    logger.info("notification_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    functions = [process_notification_batch, schedule_reminders, schedule_daily_staff, reconcile_webhooks]
    # Every job is safe to overlap with itself; unique=True only avoids piling up duplicate runs.
    cron_jobs = [
        cron(process_notification_batch, minute=parse_minutes(settings.cron_process_minutes), unique=True),
        cron(schedule_reminders, minute=parse_minutes(settings.cron_reminder_minutes), unique=True),
        cron(schedule_daily_staff, minute=parse_minutes(settings.cron_daily_schedule_minutes), unique=True),
        cron(reconcile_webhooks, minute=parse_minutes(settings.cron_reconcile_minutes), unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
