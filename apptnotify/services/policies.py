"""Delivery policies read from the notification settings table.

Quiet hours move a send time out of a configured local-time window. Monthly
budgets cap how many emails and SMS leave per calendar month in the business
timezone; with ``budget_hard_cap`` set, records over the cap are cancelled
instead of sent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
import logging
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.config import get_settings
from apptnotify.domain.models import NotificationRecord
from apptnotify.services.settings_cache import NotificationSettingsCache


logger = logging.getLogger(__name__)


def parse_clock(value: str | None, fallback: time) -> time:
    try:
        hours, minutes = (int(part) for part in str(value or "").split(":", 1))
        return time(hour=hours, minute=minutes)
    except ValueError:
        logger.warning("clock_setting_invalid value=%s fallback=%s", value, fallback.strftime("%H:%M"))
        return fallback


@dataclass(frozen=True)
class QuietHours:
    start: time
    end: time
    tz: ZoneInfo

    def contains(self, moment: datetime) -> bool:
        local = moment.astimezone(self.tz).time().replace(tzinfo=None)
        if self.start == self.end:
            return False
        if self.start < self.end:
            return self.start <= local < self.end
        # Overnight window such as 21:00-08:00.
        return local >= self.start or local < self.end

    def next_allowed(self, moment: datetime) -> datetime:
        """Return ``moment`` or, inside the window, the next window end in UTC."""

        if not self.contains(moment):
            return moment
        local = moment.astimezone(self.tz)
        release = datetime.combine(local.date(), self.end, tzinfo=self.tz)
        if release <= local:
            release += timedelta(days=1)
        return release.astimezone(timezone.utc)


async def load_quiet_hours(cache: NotificationSettingsCache) -> QuietHours | None:
    if not await cache.get_bool("quiet_hours_enabled"):
        return None
    return QuietHours(
        start=parse_clock(await cache.get("quiet_hours_start"), time(hour=21)),
        end=parse_clock(await cache.get("quiet_hours_end"), time(hour=8)),
        tz=ZoneInfo(get_settings().business_timezone),
    )


def month_start(now: datetime, tz: ZoneInfo) -> datetime:
    local = now.astimezone(tz)
    return datetime(local.year, local.month, 1, tzinfo=tz).astimezone(timezone.utc)


def _parse_limit(value: str | None) -> int | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return max(0, int(text))
    except ValueError:
        logger.warning("budget_limit_invalid value=%s", value)
        return None


@dataclass
class BudgetTracker:
    """Monthly send counters shared by every send of one processor run.

    ``try_reserve`` takes a slot before a send and ``release`` gives it back
    when the send does not succeed. Both run between awaits on the event loop,
    so concurrent recipients never overspend a limit.
    """

    limits: dict[str, int | None]
    used: dict[str, int]
    hard_cap: bool = True
    blocked: dict[str, int] = field(default_factory=dict)

    def limit_reached(self, type: str) -> bool:
        limit = self.limits.get(type)
        return limit is not None and self.used.get(type, 0) >= limit

    def try_reserve(self, type: str) -> bool:
        if self.limit_reached(type):
            if self.hard_cap:
                self.blocked[type] = self.blocked.get(type, 0) + 1
                return False
            logger.warning("notification_budget_exceeded type=%s used=%s", type, self.used.get(type, 0))
        self.used[type] = self.used.get(type, 0) + 1
        return True

    def release(self, type: str) -> None:
        self.used[type] = max(0, self.used.get(type, 0) - 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            type: {
                "used": self.used.get(type, 0),
                "limit": self.limits.get(type),
                "limit_reached": self.limit_reached(type),
                "blocked": self.blocked.get(type, 0),
            }
            for type in ("email", "sms")
        }


async def load_budget(
    *,
    session: AsyncSession,
    cache: NotificationSettingsCache,
    now: datetime,
) -> BudgetTracker:
    # Anything with a sent_at this month counts, including records since delivered or bounced.
    since = month_start(now, ZoneInfo(get_settings().business_timezone))
    rows = await session.execute(
        select(NotificationRecord.type, func.count())
        .where(NotificationRecord.sent_at.is_not(None), NotificationRecord.sent_at >= since)
        .group_by(NotificationRecord.type)
    )
    used = {str(type): int(count) for type, count in rows.all()}
    return BudgetTracker(
        limits={
            "email": _parse_limit(await cache.get("monthly_email_limit")),
            "sms": _parse_limit(await cache.get("monthly_sms_limit")),
        },
        used=used,
        hard_cap=await cache.get_bool("budget_hard_cap"),
    )


async def budget_status(
    *,
    session: AsyncSession,
    cache: NotificationSettingsCache,
    now: datetime,
) -> dict[str, Any]:
    tracker = await load_budget(session=session, cache=cache, now=now)
    return {"hard_cap": tracker.hard_cap, **tracker.as_dict()}
