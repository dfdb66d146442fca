"""Tests for the schedule calculator."""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from internal.policy.errors import InvalidWindow, UnparsableSchedule
from internal.scheduler.cron import (
    backend_weekday, check_run, deadline, next_run, parse_schedule, upcoming_runs,
    validate_windows,
)

UTC = timezone.utc


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


# ── Parsing ──────────────────────────────────────────────────────────────────

def test_wrapper_is_stripped():
    assert parse_schedule("cron(0 5 * * ? *)").source == "0 5 * * ? *"
    assert parse_schedule("0 5 * * ? *").source == "0 5 * * ? *"


def test_restricted_day_fields_are_tracked():
    weekly = parse_schedule("cron(0 5 ? * 7 *)")
    assert weekly.dow_restricted and not weekly.dom_restricted
    assert weekly.days_of_week == frozenset({7})
    monthly = parse_schedule("cron(0 5 1 * ? *)")
    assert monthly.dom_restricted and not monthly.dow_restricted


def test_names_ranges_and_steps():
    cron = parse_schedule("cron(*/15 8-10 ? JAN,JUL MON-FRI 2024-2026)")
    assert cron.minutes == (0, 15, 30, 45)
    assert cron.hours == (8, 9, 10)
    assert cron.months == frozenset({1, 7})
    assert cron.days_of_week == frozenset({2, 3, 4, 5, 6})
    assert cron.years == (2024, 2025, 2026)


@pytest.mark.parametrize("expr", [
    "cron(0 5 * *)",
    "cron(0 5 * * ? * *)",
    "cron(60 5 * * ? *)",
    "cron(0 24 * * ? *)",
    "cron(? 5 * * ? *)",
    "cron(0 5 * * FOO *)",
    "cron(*/0 5 * * ? *)",
    "cron(0 5 10-2 * ? *)",
    "cron(0 5 1,,2 * ? *)",
    "cron(0 5 * * ? 1969)",
    "",
])
def test_unparsable_expressions(expr):
    with pytest.raises(UnparsableSchedule):
        parse_schedule(expr, tier="Broken")


def test_unparsable_error_names_the_tier():
    with pytest.raises(UnparsableSchedule) as exc:
        parse_schedule("cron(0 99 * * ? *)", tier="Daily")
    assert exc.value.tier == "Daily"
    assert exc.value.field == "schedule"


def test_backend_weekday_numbering():
    assert backend_weekday(_utc(2024, 1, 7).date()) == 1  # Sunday
    assert backend_weekday(_utc(2024, 1, 1).date()) == 2  # Monday
    assert backend_weekday(_utc(2024, 1, 6).date()) == 7  # Saturday


# ── next_run ─────────────────────────────────────────────────────────────────

def test_daily_next_run():
    assert next_run("cron(0 5 * * ? *)", _utc(2024, 1, 1, 4, 0)) == _utc(2024, 1, 1, 5, 0)


def test_next_run_is_strictly_after():
    assert next_run("cron(0 5 * * ? *)", _utc(2024, 1, 1, 5, 0)) == _utc(2024, 1, 2, 5, 0)
    assert next_run("cron(0 5 * * ? *)", _utc(2024, 1, 1, 4, 59, 30)) == _utc(2024, 1, 1, 5, 0)


def test_weekly_runs_on_saturday():
    run = next_run("cron(0 5 ? * 7 *)", _utc(2024, 1, 1))
    assert run == _utc(2024, 1, 6, 5, 0)
    assert run.weekday() == 5


def test_monthly_runs_on_first_of_month():
    assert next_run("cron(0 5 1 * ? *)", _utc(2024, 1, 1, 5, 0)) == _utc(2024, 2, 1, 5, 0)
    assert next_run("cron(0 5 1 * ? *)", _utc(2024, 12, 15)) == _utc(2025, 1, 1, 5, 0)


def test_last_day_of_month():
    assert next_run("cron(0 0 L * ? *)", _utc(2024, 2, 1)) == _utc(2024, 2, 29, 0, 0)
    assert next_run("cron(0 0 L * ? *)", _utc(2023, 2, 1)) == _utc(2023, 2, 28, 0, 0)


def test_minute_steps():
    assert next_run("cron(*/15 * * * ? *)", _utc(2024, 1, 1, 0, 7)) == _utc(2024, 1, 1, 0, 15)


def test_weekday_names():
    # Saturday -> next Monday
    assert next_run("cron(0 5 ? JAN MON-FRI *)", _utc(2024, 1, 6)) == _utc(2024, 1, 8, 5, 0)


def test_day_of_month_or_day_of_week_when_both_restricted():
    expr = "cron(0 12 10 * 2 *)"  # the 10th, or any Monday
    assert next_run(expr, _utc(2024, 1, 2)) == _utc(2024, 1, 8, 12, 0)
    assert next_run(expr, _utc(2024, 1, 9)) == _utc(2024, 1, 10, 12, 0)


def test_month_restriction_skips_ahead():
    assert next_run("cron(30 2 1 MAR ? *)", _utc(2024, 3, 2)) == _utc(2025, 3, 1, 2, 30)


def test_exhausted_year_list_returns_none():
    assert next_run("cron(0 5 * * ? 2020)", _utc(2024, 1, 1)) is None


def test_year_list_jumps_forward():
    assert next_run("cron(0 5 1 1 ? 2030)", _utc(2024, 6, 1)) == _utc(2030, 1, 1, 5, 0)


def test_reference_zone_is_explicit():
    run = next_run("cron(0 5 * * ? *)", _utc(2024, 1, 1), timezone="America/New_York")
    assert run.astimezone(UTC) == _utc(2024, 1, 1, 10, 0)


def test_repeated_hour_on_fall_back_runs_after_the_given_instant():
    # 2024-11-03 01:00-02:00 happens twice in New York: EDT (05:xxZ) then EST (06:xxZ)
    expr = "cron(30 1 * * ? *)"
    after = _utc(2024, 11, 3, 6, 20)  # 01:20 EST, second pass
    run = next_run(expr, after, timezone="America/New_York")
    assert run > after
    assert run.astimezone(UTC) == _utc(2024, 11, 3, 6, 30)

    # first pass still gets its 01:30 EDT run
    assert next_run(expr, _utc(2024, 11, 3, 5, 20), timezone="America/New_York") == _utc(2024, 11, 3, 5, 30)


def test_fall_back_prefers_earlier_instant_over_earlier_wall_time():
    # 01:00 EST (06:00Z) comes before 01:30 EST but after 01:30 EDT (05:30Z)
    run = next_run("cron(0,30 1 * * ? *)", _utc(2024, 11, 3, 5, 10), timezone="America/New_York")
    assert run == _utc(2024, 11, 3, 5, 30)


def test_spring_forward_gap_runs_once():
    # 02:30 does not exist on 2024-03-10 in New York; it resolves to 03:30 EDT
    run = next_run("cron(30 2 * * ? *)", _utc(2024, 3, 10, 6, 0), timezone="America/New_York")
    assert run == _utc(2024, 3, 10, 7, 30)


def test_unknown_zone_is_rejected():
    with pytest.raises(UnparsableSchedule):
        next_run("cron(0 5 * * ? *)", _utc(2024, 1, 1), timezone="Mars/Olympus")


def test_naive_timestamp_is_rejected():
    with pytest.raises(ValueError):
        next_run("cron(0 5 * * ? *)", datetime(2024, 1, 1))


# ── Deadlines and missed windows ─────────────────────────────────────────────

def test_deadline_adds_both_windows():
    run_at = _utc(2024, 1, 6, 5, 0)
    assert deadline(run_at, 480, 10080) == run_at + timedelta(minutes=10560)
    assert deadline(run_at, timedelta(hours=1), timedelta(0)) == run_at + timedelta(hours=1)


def test_run_completed_in_time_is_not_missed():
    run_at = _utc(2024, 1, 1, 5, 0)
    assert check_run(run_at, 60, 120, completed_at=run_at + timedelta(minutes=180)) is None


def test_run_completed_late_is_reported():
    run_at = _utc(2024, 1, 1, 5, 0)
    missed = check_run(run_at, 60, 120, completed_at=run_at + timedelta(minutes=200), tier="Daily")
    assert missed is not None
    assert missed.tier == "Daily"
    assert missed.deadline == run_at + timedelta(minutes=180)
    assert missed.details["late_by_minutes"] == 20


def test_unfinished_run_past_deadline_is_reported():
    run_at = _utc(2024, 1, 1, 5, 0)
    assert check_run(run_at, 60, 120, now=run_at + timedelta(minutes=100)) is None
    missed = check_run(run_at, 60, 120, now=run_at + timedelta(minutes=181))
    assert missed is not None
    assert missed.completed_at is None


def test_validate_windows():
    validate_windows(0, 0, 100)
    validate_windows(480, 10080, 144000)
    with pytest.raises(InvalidWindow) as exc:
        validate_windows(-1, 10, 100, tier="Daily")
    assert exc.value.field == "startWindowMinutes"
    with pytest.raises(InvalidWindow) as exc:
        validate_windows(60, 50, 100, tier="Daily")
    assert exc.value.field == "completionWindowMinutes"


def test_upcoming_runs_follows_tier_order():
    from internal.models.types import EncryptionKey, ExecutionRole, Vault
    from internal.policy.compiler import compile_policy
    from internal.policy.tiers import default_tiers

    policy = compile_policy(Vault("vault", EncryptionKey("key")), ExecutionRole("role"), default_tiers())
    runs = upcoming_runs(policy, _utc(2024, 1, 1))
    assert [r.tier for r in runs] == ["Daily", "Weekly", "Monthly"]
    assert runs[0].run_at == _utc(2024, 1, 1, 5, 0)
    assert runs[1].run_at == _utc(2024, 1, 6, 5, 0)
    assert runs[2].run_at == _utc(2024, 1, 1, 5, 0)
    assert runs[2].deadline == _utc(2024, 1, 1, 5, 0) + timedelta(minutes=10560)
