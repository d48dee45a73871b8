from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.config import get_settings
from apptnotify.domain.models import NotificationSetting
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Defaults applied when the settings table has no row for a key.
DEFAULT_NOTIFICATION_SETTINGS: dict[str, str] = {
    "reminder_hours_before": "24",
    "reminder_email_enabled": "true",
    "reminder_sms_enabled": "false",
    "daily_schedule_email_enabled": "true",
    "daily_schedule_time": "08:00",
    "quiet_hours_enabled": "false",
    "quiet_hours_start": "21:00",
    "quiet_hours_end": "08:00",
    # Empty means unlimited.
    "monthly_email_limit": "",
    "monthly_sms_limit": "",
    "budget_hard_cap": "true",
}

SessionFactory = Callable[[], AsyncSession]


class NotificationSettingsCache:
    """Read-through cache over the ``notification_settings`` table.

    The whole table is loaded on first access and held as ``(values,
    expires_at)``. Readers see values at most ``ttl_s`` seconds stale per
    process; ``refresh()`` forces a reload (admin writes call it). If a reload
    fails while a previous snapshot exists, the stale snapshot keeps serving
    and the failure is logged.
    """

    def __init__(
        self,
        *,
        ttl_s: int | None = None,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ttl_s = ttl_s if ttl_s is not None else get_settings().settings_cache_ttl_s
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or utc_now
        self._values: dict[str, str] | None = None
        self._expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def expires_at(self) -> datetime | None:
        return self._expires_at

    async def _load(self) -> dict[str, str]:
        async with self._session_factory() as session:
            rows = await session.execute(select(NotificationSetting.key, NotificationSetting.value))
            return {key: value for key, value in rows.all()}

    async def refresh(self) -> dict[str, str]:
        async with self._lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> dict[str, str]:
        try:
            loaded = await self._load()
        except SQLAlchemyError as exc:
            if self._values is None:
                raise
            logger.warning("notification_settings_reload_failed serving_stale=true", exc_info=exc)
            return dict(self._values)
        self._values = loaded
        self._expires_at = self._clock() + timedelta(seconds=max(0, self._ttl_s))
        return dict(loaded)

    async def snapshot(self) -> dict[str, str]:
        now = self._clock()
        if self._values is not None and self._expires_at is not None and now < self._expires_at:
            return dict(self._values)
        async with self._lock:
            # Another waiter may have refreshed while this one queued on the lock.
            if self._values is not None and self._expires_at is not None and self._clock() < self._expires_at:
                return dict(self._values)
            return await self._refresh_locked()

    async def get(self, key: str, default: str | None = None) -> str | None:
        values = await self.snapshot()
        if key in values:
            return values[key]
        if default is not None:
            return default
        return DEFAULT_NOTIFICATION_SETTINGS.get(key)

    async def get_bool(self, key: str) -> bool:
        value = await self.get(key)
        return str(value or "").strip().lower() in {"1", "true", "yes", "on"}

    async def get_int(self, key: str, default: int) -> int:
        value = await self.get(key)
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return default

    def invalidate(self) -> None:
        self._values = None
        self._expires_at = None


async def set_notification_setting(*, session: AsyncSession, key: str, value: str) -> None:
    row = await session.get(NotificationSetting, key)
    if row is None:
        session.add(NotificationSetting(key=key, value=value, updated_at=utc_now()))
    else:
        row.value = value
        row.updated_at = utc_now()


_cache: NotificationSettingsCache | None = None


def get_settings_cache() -> NotificationSettingsCache:
    global _cache
    if _cache is None:
        _cache = NotificationSettingsCache()
    return _cache


def reset_settings_cache() -> None:
    # Drop the process-wide cache for deterministic test setup.
    global _cache
    _cache = None
