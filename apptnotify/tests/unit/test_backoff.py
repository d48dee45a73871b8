from __future__ import annotations

from datetime import datetime, timedelta, timezone

from apptnotify.domain.state import STATUS_FAILED, STATUS_PENDING
from apptnotify.services.backoff import decide_retry, retry_delay


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_first_failure_retries_after_five_minutes() -> None:
    decision = decide_retry(retry_count=0, max_retries=3, now=NOW, base_seconds=300)
    assert decision.status == STATUS_PENDING
    assert decision.retry_count == 1
    assert decision.scheduled_for == NOW + timedelta(minutes=5)


def test_delay_doubles_per_attempt_without_jitter() -> None:
    delays = [retry_delay(count, base_seconds=300) for count in range(4)]
    assert delays == [timedelta(seconds=300 * 2**count) for count in range(4)]


def test_exhausted_budget_fails_without_incrementing() -> None:
    decision = decide_retry(retry_count=3, max_retries=3, now=NOW, base_seconds=300)
    assert decision.status == STATUS_FAILED
    assert decision.retry_count == 3
    assert decision.scheduled_for is None


def test_zero_retry_budget_fails_immediately() -> None:
    assert decide_retry(retry_count=0, max_retries=0, now=NOW).status == STATUS_FAILED


def test_base_defaults_to_settings(monkeypatch) -> None:
    from apptnotify.core.config import get_settings

    monkeypatch.setenv("QUEUE_BACKOFF_BASE_S", "60")
    get_settings.cache_clear()
    assert retry_delay(2) == timedelta(minutes=4)
