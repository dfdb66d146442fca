"""Schedule calculator: six-field cron expressions, run deadlines and
missed-window reporting.

Expression fields, in order:
  minute  hour  day-of-month  month  day-of-week  year

Accepted syntax per field: `*`, `?` (day fields only), numbers, ranges
`a-b`, steps `*/n` / `a/n` / `a-b/n`, comma lists, month names JAN..DEC,
weekday names SUN..SAT. Day-of-week numbers run 1..7 with 1 = Sunday.
Day-of-month also accepts `L` (last day of the month). The backend's
`cron(...)` wrapper is stripped before parsing.

Evaluation happens in an explicit reference time zone (UTC unless the policy
says otherwise); the local zone of the host is never consulted.

When both day-of-month and day-of-week are restricted a day qualifies if it
matches either one, as in conventional cron.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from internal.models.types import MissedWindow, RunWindow
from internal.policy.errors import InvalidWindow, UnparsableSchedule

DEFAULT_TIMEZONE = "UTC"
MIN_YEAR = 1970
MAX_YEAR = 2199

_MONTH_NAMES = {
    name: i + 1 for i, name in enumerate(
        ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")
    )
}
_WEEKDAY_NAMES = {"SUN": 1, "MON": 2, "TUE": 3, "WED": 4, "THU": 5, "FRI": 6, "SAT": 7}

# (name, low, high, names)
_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day-of-month", 1, 31, {}),
    ("month", 1, 12, _MONTH_NAMES),
    ("day-of-week", 1, 7, _WEEKDAY_NAMES),
    ("year", MIN_YEAR, MAX_YEAR, {}),
)


@dataclass(frozen=True)
class CronExpression:
    source: str
    minutes: tuple
    hours: tuple
    days_of_month: frozenset
    last_day_of_month: bool
    months: frozenset
    days_of_week: frozenset
    years: tuple
    dom_restricted: bool
    dow_restricted: bool

    def day_matches(self, d: date) -> bool:
        dom_ok = d.day in self.days_of_month or (
            self.last_day_of_month and d.day == calendar.monthrange(d.year, d.month)[1]
        )
        dow_ok = backend_weekday(d) in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        if self.dom_restricted:
            return dom_ok
        if self.dow_restricted:
            return dow_ok
        return True


def backend_weekday(d: date) -> int:
    """Weekday number with 1 = Sunday ... 7 = Saturday."""
    return (d.weekday() + 1) % 7 + 1


def strip_wrapper(expr: str) -> str:
    raw = (expr or "").strip()
    if raw.lower().startswith("cron(") and raw.endswith(")"):
        raw = raw[5:-1].strip()
    return raw


def _value(token: str, low: int, high: int, names: dict, field: str, source: str) -> int:
    token = token.upper()
    if token in names:
        return names[token]
    if not token.isdigit():
        raise UnparsableSchedule(f"invalid {field} value {token!r} in {source!r}", field="schedule")
    value = int(token)
    if value < low or value > high:
        raise UnparsableSchedule(
            f"{field} value {value} outside {low}-{high} in {source!r}", field="schedule",
        )
    return value


def _parse_field(text: str, index: int, source: str):
    """Return (values, restricted, last_day) for one field."""
    field, low, high, names = _FIELDS[index]
    if text == "?":
        if field not in ("day-of-month", "day-of-week"):
            raise UnparsableSchedule(f"'?' is not allowed in the {field} field: {source!r}", field="schedule")
        return set(range(low, high + 1)), False, False
    if text == "*":
        return set(range(low, high + 1)), False, False

    values = set()
    last_day = False
    for item in text.split(","):
        if not item:
            raise UnparsableSchedule(f"empty list item in {field} field: {source!r}", field="schedule")
        if item.upper() == "L" and field == "day-of-month":
            last_day = True
            continue
        base, _, step_text = item.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise UnparsableSchedule(f"invalid step {step_text!r} in {field} field: {source!r}", field="schedule")
            step = int(step_text)
        if base == "*":
            start, end = low, high
        elif "-" in base:
            a, _, b = base.partition("-")
            start = _value(a, low, high, names, field, source)
            end = _value(b, low, high, names, field, source)
            if start > end:
                raise UnparsableSchedule(f"descending range {base!r} in {field} field: {source!r}", field="schedule")
        else:
            start = _value(base, low, high, names, field, source)
            end = high if step_text else start
        values.update(range(start, end + 1, step))
    return values, True, last_day


def parse_schedule(expr: str, tier: Optional[str] = None) -> CronExpression:
    """Parse a schedule expression.

    Raises:
        UnparsableSchedule: wrong field count or any malformed field.
    """
    source = strip_wrapper(expr)
    parts = source.split()
    if len(parts) != 6:
        raise UnparsableSchedule(
            f"schedule must have 6 fields (minute hour day-of-month month day-of-week year), "
            f"got {len(parts)}: {expr!r}",
            tier=tier, field="schedule",
        )
    try:
        parsed = [_parse_field(text, i, source) for i, text in enumerate(parts)]
    except UnparsableSchedule as exc:
        exc.tier = tier
        raise

    (minutes, _, _), (hours, _, _), (dom, dom_r, last_day), (months, _, _), \
        (dow, dow_r, _), (years, _, _) = parsed
    return CronExpression(
        source=source,
        minutes=tuple(sorted(minutes)),
        hours=tuple(sorted(hours)),
        days_of_month=frozenset(dom),
        last_day_of_month=last_day,
        months=frozenset(months),
        days_of_week=frozenset(dow),
        years=tuple(sorted(years)),
        dom_restricted=dom_r,
        dow_restricted=dow_r,
    )


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise UnparsableSchedule(f"unknown time zone {name!r}", field="timezone") from exc


def next_run(
    expr: Union[str, CronExpression],
    after: datetime,
    timezone: str = DEFAULT_TIMEZONE,
) -> Optional[datetime]:
    """Return the first matching instant strictly after `after`.

    The result is expressed in the reference zone. A wall time repeated by a
    DST fall-back matches once per pass; one skipped by a spring-forward gap
    runs at the shifted instant. Returns None when the expression has no
    occurrence left (e.g. its year list is in the past).
    """
    if after.tzinfo is None:
        raise ValueError("after must be timezone-aware")
    cron = expr if isinstance(expr, CronExpression) else parse_schedule(expr)
    zone = resolve_zone(timezone)

    limit = after.timestamp()
    day = after.astimezone(zone).date()
    while day.year <= MAX_YEAR:
        if day.year not in cron.years:
            later = [y for y in cron.years if y > day.year]
            if not later:
                return None
            day = date(later[0], 1, 1)
            continue
        if day.month not in cron.months:
            day = date(day.year + 1, 1, 1) if day.month == 12 else date(day.year, day.month + 1, 1)
            continue
        if cron.day_matches(day):
            # compare instants: a wall time repeated by a DST fall-back has fold 0 and 1
            found = [c for c in _day_candidates(cron, day, zone) if c.timestamp() > limit]
            if found:
                return min(found, key=lambda c: c.timestamp())
        day += timedelta(days=1)
    return None


def _day_candidates(cron: CronExpression, day: date, zone: ZoneInfo):
    for hour in cron.hours:
        for minute in cron.minutes:
            first = datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone)
            yield first
            second = first.replace(fold=1)
            # fold=1 is a distinct later instant only inside a fall-back repeat
            if second.utcoffset() < first.utcoffset():
                yield second


def _minutes(value) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(minutes=value)


def deadline(run_at: datetime, start_window, completion_window) -> datetime:
    """Latest instant by which a run starting at `run_at` must be done.

    Windows are timedeltas or whole minutes.
    """
    return run_at + _minutes(start_window) + _minutes(completion_window)


def validate_windows(
    start_window_minutes,
    completion_window_minutes,
    max_run_horizon_minutes: int,
    tier: Optional[str] = None,
) -> None:
    for field, value in (
        ("startWindowMinutes", start_window_minutes),
        ("completionWindowMinutes", completion_window_minutes),
    ):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise InvalidWindow(
                f"{field} must be a non-negative integer, got {value!r}",
                tier=tier, field=field,
            )
    total = start_window_minutes + completion_window_minutes
    if total > max_run_horizon_minutes:
        raise InvalidWindow(
            f"start and completion windows add up to {total} minutes, "
            f"more than the {max_run_horizon_minutes} minute run horizon",
            tier=tier, field="completionWindowMinutes",
        )


def check_run(
    run_at: datetime,
    start_window,
    completion_window,
    completed_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    tier: str = "",
) -> Optional[MissedWindow]:
    """Report a run that finished, or is still unfinished, past its deadline.

    Reporting only: nothing is cancelled or rolled back.
    """
    due = deadline(run_at, start_window, completion_window)
    if completed_at is not None:
        if completed_at <= due:
            return None
        late_by = completed_at - due
    elif now is not None and now > due:
        late_by = now - due
    else:
        return None
    return MissedWindow(
        run_at=run_at,
        deadline=due,
        completed_at=completed_at,
        tier=tier,
        details={"late_by_minutes": int(late_by.total_seconds() // 60)},
    )


def upcoming_runs(policy, after: datetime) -> list:
    """Next run and deadline for every tier of a compiled policy, in tier order."""
    runs = []
    for tier in policy.tiers:
        run_at = next_run(tier.schedule, after, timezone=policy.timezone)
        if run_at is None:
            continue
        runs.append(RunWindow(
            tier=tier.name,
            run_at=run_at,
            deadline=deadline(run_at, tier.start_window_minutes, tier.completion_window_minutes),
        ))
    return runs
