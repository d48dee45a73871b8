from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from apptnotify.core.config import get_settings
from apptnotify.domain.state import STATUS_FAILED, STATUS_PENDING


@dataclass(frozen=True)
class RetryDecision:
    # Outcome of a retryable failure: reschedule as pending or give up as failed.
    status: str
    retry_count: int
    scheduled_for: datetime | None
    delay: timedelta | None


def retry_delay(retry_count: int, *, base_seconds: int | None = None) -> timedelta:
    # Exact exponential backoff without jitter: base * 2^retry_count.
    base = base_seconds if base_seconds is not None else get_settings().queue_backoff_base_s
    return timedelta(seconds=max(1, int(base)) * (2 ** max(0, int(retry_count))))


def decide_retry(
    *,
    retry_count: int,
    max_retries: int,
    now: datetime,
    base_seconds: int | None = None,
) -> RetryDecision:
    """Decide what a retryable failure does to a record.

    With budget left (``retry_count < max_retries``) the record goes back to
    pending, ``delay = base * 2**retry_count`` in the future, with the counter
    incremented. Otherwise it becomes terminally failed and the counter is left
    unchanged, so ``retry_count <= max_retries`` always holds.
    """

    if retry_count < max_retries:
        delay = retry_delay(retry_count, base_seconds=base_seconds)
        return RetryDecision(
            status=STATUS_PENDING,
            retry_count=retry_count + 1,
            scheduled_for=now + delay,
            delay=delay,
        )
    return RetryDecision(status=STATUS_FAILED, retry_count=retry_count, scheduled_for=None, delay=None)
