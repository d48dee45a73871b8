from __future__ import annotations

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from apptnotify.services.dead_letters import classify_failure
from apptnotify.services.policies import BudgetTracker, QuietHours, month_start, parse_clock


LONDON = ZoneInfo("Europe/London")
OVERNIGHT = QuietHours(start=time(21), end=time(8), tz=LONDON)


def test_overnight_window_spans_midnight() -> None:
    assert OVERNIGHT.contains(datetime(2026, 1, 10, 22, 0, tzinfo=timezone.utc))
    assert OVERNIGHT.contains(datetime(2026, 1, 10, 7, 59, tzinfo=timezone.utc))
    assert not OVERNIGHT.contains(datetime(2026, 1, 10, 8, 0, tzinfo=timezone.utc))
    assert not OVERNIGHT.contains(datetime(2026, 1, 10, 20, 59, tzinfo=timezone.utc))


def test_same_day_window_and_empty_window() -> None:
    lunch = QuietHours(start=time(12), end=time(13), tz=LONDON)
    assert lunch.contains(datetime(2026, 1, 10, 12, 30, tzinfo=timezone.utc))
    assert not lunch.contains(datetime(2026, 1, 10, 13, 0, tzinfo=timezone.utc))
    never = QuietHours(start=time(9), end=time(9), tz=LONDON)
    assert not never.contains(datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc))


def test_next_allowed_moves_to_window_end_in_local_time() -> None:
    # Summer time: 08:00 London is 07:00 UTC.
    evening = datetime(2026, 7, 10, 21, 0, tzinfo=timezone.utc)
    early = datetime(2026, 7, 11, 5, 0, tzinfo=timezone.utc)
    afternoon = datetime(2026, 7, 11, 14, 0, tzinfo=timezone.utc)
    assert OVERNIGHT.next_allowed(evening) == datetime(2026, 7, 11, 7, 0, tzinfo=timezone.utc)
    assert OVERNIGHT.next_allowed(early) == datetime(2026, 7, 11, 7, 0, tzinfo=timezone.utc)
    assert OVERNIGHT.next_allowed(afternoon) == afternoon


def test_parse_clock_falls_back() -> None:
    assert parse_clock("22:30", time(21)) == time(22, 30)
    assert parse_clock("late", time(21)) == time(21)
    assert parse_clock(None, time(8)) == time(8)


def test_month_start_uses_business_timezone() -> None:
    # 23:30 UTC on 31 March is already April in Auckland.
    moment = datetime(2026, 3, 31, 23, 30, tzinfo=timezone.utc)
    assert month_start(moment, ZoneInfo("Pacific/Auckland")) == datetime(2026, 3, 31, 11, 0, tzinfo=timezone.utc)
    assert month_start(moment, ZoneInfo("UTC")) == datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_hard_cap_blocks_and_release_frees_a_slot() -> None:
    budget = BudgetTracker(limits={"email": 2, "sms": None}, used={"email": 1})
    assert budget.try_reserve("email")
    assert not budget.try_reserve("email")
    budget.release("email")
    assert budget.try_reserve("email")
    assert budget.try_reserve("sms")
    assert budget.as_dict() == {
        "email": {"used": 2, "limit": 2, "limit_reached": True, "blocked": 1},
        "sms": {"used": 1, "limit": None, "limit_reached": False, "blocked": 0},
    }


def test_soft_cap_counts_past_the_limit() -> None:
    budget = BudgetTracker(limits={"email": 0, "sms": 0}, used={}, hard_cap=False)
    assert budget.try_reserve("sms")
    assert budget.used == {"sms": 1}
    assert budget.blocked == {}


def test_failure_classification() -> None:
    assert classify_failure(type="sms", suppress_kind="unsubscribed") == "unsubscribed"
    assert classify_failure(type="sms", suppress_kind="invalid") == "invalid_phone"
    assert classify_failure(type="email", suppress_kind="invalid") == "invalid_email"
    assert classify_failure(type="email", timed_out=True) == "timeout"
    assert classify_failure(type="email") == "provider_error"
