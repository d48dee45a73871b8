from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any apptnotify module builds it.
_TEST_DB = os.path.join(tempfile.mkdtemp(prefix="apptnotify-tests-"), "apptnotify.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB}"
os.environ.setdefault("RATE_LIMIT_BACKEND", "database")
os.environ.setdefault("EMAIL_PROVIDER", "fake")
os.environ.setdefault("SMS_PROVIDER", "fake")

import pytest

from apptnotify.apps.api.rate_limit import reset_rate_limiter_state
from apptnotify.core.config import get_settings
from apptnotify.domain.models import Base
from apptnotify.persistence.db import engine
from apptnotify.providers.channels.factory import reset_channel_senders
from apptnotify.services.directory import set_appointment_directory
from apptnotify.services.settings_cache import reset_settings_cache


def _reset_process_state() -> None:
    get_settings.cache_clear()
    reset_rate_limiter_state()
    reset_channel_senders()
    reset_settings_cache()
    set_appointment_directory(None)


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Recreate every table so each test starts from an empty ledger.
    _reset_process_state()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    _reset_process_state()
