"""
Time-bucketing aggregation of usage events.

Groups a flat event list into daily, hourly, per-project and
per-(project, session) summaries. Every function here is pure and
insensitive to input order; the reference instant ``now`` and the local
time zone ``tz`` are passed explicitly so time boundaries are
deterministic.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, tzinfo
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from usage_meter.core.clock import (
    add_hours,
    date_key,
    hour_key,
    hour_label,
    hours_between,
    local_midnight,
    local_timezone,
    parse_timestamp,
    resolve_now,
    truncate_to_hour,
)
from usage_meter.core.token_counter import TokenCounts, ZERO_TOKENS
from usage_meter.storage.models import (
    UNKNOWN_PROJECT,
    DailySummary,
    HourlySummary,
    ProjectSummary,
    SessionSummary,
    TokenTotals,
    UsageData,
    UsageEvent,
)

log = logging.getLogger(__name__)

DEFAULT_HOURS_LIMIT = 24
MAX_TODAY_HOURS = 24

# Python weekday numbering: Monday == 0 ... Sunday == 6
SUNDAY = 6


class ReferenceDateStrategy(Enum):
    """How the date shown as "today" is chosen.

    SYSTEM_CLOCK always uses the system's calendar date.
    MOST_RECENT_DATA_DATE uses the system date when any event falls on
    it, and otherwise the newest date present in the data. The fallback
    is a display policy for data recorded on another machine or in
    another period; it is flagged on the resulting bundle.
    """
    SYSTEM_CLOCK = "system_clock"
    MOST_RECENT_DATA_DATE = "most_recent_data_date"


@dataclass
class _Bucket:
    """Mutable accumulator used while grouping."""
    tokens: TokenCounts = ZERO_TOKENS
    cost: float = 0.0
    count: int = 0

    def add(self, event: UsageEvent) -> None:
        self.tokens = self.tokens + event.tokens
        self.cost += event.cost
        self.count += 1


def _timed_events(
    events: Iterable[UsageEvent], tz: tzinfo
) -> List[Tuple[UsageEvent, datetime]]:
    """Pair each event with its parsed timestamp, dropping unparseable ones."""
    timed = []
    for event in events:
        moment = parse_timestamp(event.timestamp, tz)
        if moment is None:
            log.debug("Ignoring event with unparseable timestamp %r", event.timestamp)
            continue
        timed.append((event, moment))
    return timed


def calculate_percentage_change(current: float, previous: float) -> float:
    """Percentage change between two periods.

    A change from zero is defined rather than infinite: 0 -> 0 is 0%
    and 0 -> positive is 100%.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return ((current - previous) / previous) * 100


def _daily_percent_change(current: float, previous: float) -> Optional[float]:
    if previous > 0:
        return ((current - previous) / previous) * 100
    if previous == 0 and current > 0:
        return 100.0
    return None


def calculate_daily_summary(
    events: Iterable[UsageEvent], tz: Optional[tzinfo] = None
) -> List[DailySummary]:
    """Group events by local calendar date.

    The result is sorted newest first. Each entry except the oldest
    carries ``percent_change`` relative to the next older entry; it is
    left unset when both periods had zero cost.

    Args:
        events: Events to group
        tz: Time zone used to derive calendar dates (local by default)

    Returns:
        Daily summaries sorted descending by date
    """
    tz = tz or local_timezone()
    grouped: Dict[str, _Bucket] = {}
    for event, moment in _timed_events(events, tz):
        grouped.setdefault(date_key(moment, tz), _Bucket()).add(event)

    summaries = [
        DailySummary(date=day, tokens=b.tokens, cost=b.cost, entry_count=b.count)
        for day, b in grouped.items()
    ]
    summaries.sort(key=lambda s: s.date, reverse=True)

    for i in range(len(summaries) - 1):
        change = _daily_percent_change(summaries[i].cost, summaries[i + 1].cost)
        if change is not None:
            summaries[i] = replace(summaries[i], percent_change=change)

    return summaries


def calculate_session_summary(events: Iterable[UsageEvent]) -> List[SessionSummary]:
    """Group events by (project, session) pair.

    Start and end are the timestamps of the earliest and latest events in
    the group, compared as instants so mixed UTC offsets order correctly.

    Returns:
        Session summaries sorted descending by cost
    """
    grouped: Dict[Tuple[str, str], _Bucket] = {}
    bounds: Dict[Tuple[str, str], List[Tuple[datetime, str]]] = {}

    for event, moment in _timed_events(events, local_timezone()):
        key = (event.project or UNKNOWN_PROJECT, event.session or UNKNOWN_PROJECT)
        grouped.setdefault(key, _Bucket()).add(event)
        span = bounds.setdefault(key, [(moment, event.timestamp), (moment, event.timestamp)])
        if moment < span[0][0]:
            span[0] = (moment, event.timestamp)
        if moment > span[1][0]:
            span[1] = (moment, event.timestamp)

    summaries = [
        SessionSummary(
            project=project,
            session=session,
            tokens=b.tokens,
            cost=b.cost,
            start_time=bounds[(project, session)][0][1],
            end_time=bounds[(project, session)][1][1],
            entry_count=b.count,
        )
        for (project, session), b in grouped.items()
    ]
    return sorted(summaries, key=lambda s: s.cost, reverse=True)


def calculate_project_summary(events: Iterable[UsageEvent]) -> List[ProjectSummary]:
    """Group events by project.

    Reports the number of distinct sessions per project and each
    project's share of the grand total cost (0 when the total is 0).

    Returns:
        Project summaries sorted descending by cost
    """
    grouped: Dict[str, _Bucket] = {}
    sessions: Dict[str, Set[str]] = {}
    total_cost = 0.0

    for event in events:
        project = event.project or UNKNOWN_PROJECT
        grouped.setdefault(project, _Bucket()).add(event)
        sessions.setdefault(project, set()).add(event.session)
        total_cost += event.cost

    summaries = [
        ProjectSummary(
            project=project,
            tokens=b.tokens,
            cost=b.cost,
            percentage=(b.cost / total_cost) * 100 if total_cost > 0 else 0.0,
            sessions=len(sessions[project]),
        )
        for project, b in grouped.items()
    ]
    return sorted(summaries, key=lambda s: s.cost, reverse=True)


def _hourly_entry(hour_start: datetime, tz: tzinfo, bucket: Optional[_Bucket]) -> HourlySummary:
    bucket = bucket or _Bucket()
    return HourlySummary(
        hour=hour_key(hour_start),
        hour_label=hour_label(hour_start, tz),
        tokens=bucket.tokens,
        cost=bucket.cost,
        entry_count=bucket.count,
    )


def calculate_hourly_summary(
    events: Iterable[UsageEvent],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    hours_limit: int = DEFAULT_HOURS_LIMIT,
    filter_window: bool = True,
    day: Optional[date] = None,
) -> List[HourlySummary]:
    """Bucket events by hour and densify the series.

    With ``filter_window`` (the default) only events from the trailing
    ``hours_limit`` hours are kept and the series has exactly
    ``hours_limit`` slots starting at the hour containing the cutoff.

    With ``filter_window=False`` the caller has already selected one
    calendar day's events; the series runs from local midnight of
    ``day`` (default: today) through the current hour inclusive, or the
    whole day for a past day, capped at ``hours_limit`` slots.

    Every slot is present; hours without events get zero-valued
    placeholders.

    Args:
        events: Events to bucket
        now: Reference instant (wall clock if omitted)
        tz: Local time zone for hour boundaries and labels
        hours_limit: Window length in hours
        filter_window: Apply the trailing window filter
        day: Calendar day shown when ``filter_window`` is False

    Returns:
        Hourly summaries sorted ascending by hour
    """
    if hours_limit <= 0:
        raise ValueError("hours_limit must be > 0")

    tz = tz or local_timezone()
    now = resolve_now(now, tz)
    cutoff = add_hours(now, -hours_limit)

    timed = _timed_events(events, tz)
    if filter_window:
        timed = [(e, t) for e, t in timed if t >= cutoff]

    grouped: Dict[str, _Bucket] = {}
    for event, moment in timed:
        grouped.setdefault(hour_key(truncate_to_hour(moment, tz)), _Bucket()).add(event)

    if filter_window:
        start = truncate_to_hour(cutoff, tz)
        slots = hours_limit
    else:
        shown_day = day or now.astimezone(tz).date()
        start = local_midnight(shown_day, tz)
        if shown_day == now.astimezone(tz).date():
            slots = int(hours_between(start, truncate_to_hour(now, tz))) + 1
        else:
            slots = MAX_TODAY_HOURS
        slots = max(1, min(slots, hours_limit, MAX_TODAY_HOURS))

    series = []
    for i in range(slots):
        slot_start = add_hours(start, i)
        series.append(_hourly_entry(slot_start, tz, grouped.get(hour_key(slot_start))))
    return series


def get_current_hour_entries(
    events: Iterable[UsageEvent],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[UsageEvent]:
    """Events whose timestamp falls in the hour containing ``now``."""
    tz = tz or local_timezone()
    now = resolve_now(now, tz)
    hour_start = truncate_to_hour(now, tz)
    hour_end = add_hours(hour_start, 1)
    return [e for e, t in _timed_events(events, tz) if hour_start <= t < hour_end]


def patch_current_hour(
    hourly: Sequence[HourlySummary],
    events: Iterable[UsageEvent],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> List[HourlySummary]:
    """Make sure the hour containing ``now`` is present when it has activity.

    The trailing window starts at the truncated cutoff, so the current
    hour can sit just past the last pre-computed slot. When events exist
    in that hour and it is missing, it is appended and the series is
    re-sorted ascending.
    """
    tz = tz or local_timezone()
    now = resolve_now(now, tz)
    current_start = truncate_to_hour(now, tz)
    key = hour_key(current_start)

    patched = list(hourly)
    if any(h.hour == key for h in patched):
        return patched

    entries = get_current_hour_entries(events, now, tz)
    if not entries:
        return patched

    bucket = _Bucket()
    for event in entries:
        bucket.add(event)
    patched.append(_hourly_entry(current_start, tz, bucket))
    patched.sort(key=lambda h: h.hour)
    return patched


def calculate_totals(
    summaries: Iterable[Union[DailySummary, SessionSummary, ProjectSummary, HourlySummary]],
) -> TokenTotals:
    """Sum tokens and cost over any collection of summaries."""
    tokens = ZERO_TOKENS
    cost = 0.0
    for summary in summaries:
        tokens = tokens + summary.tokens
        cost += summary.cost
    return TokenTotals(tokens=tokens, total_cost=cost)


def week_start_date(day: date, week_start: int = SUNDAY) -> date:
    """First day of the calendar week containing ``day``.

    Args:
        day: Any date in the week
        week_start: Weekday the week starts on (Monday == 0, Sunday == 6)
    """
    return day - timedelta(days=(day.weekday() - week_start) % 7)


def month_start_date(day: date) -> date:
    """First day of the calendar month containing ``day``."""
    return day.replace(day=1)


def _next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def calculate_period_totals(
    daily: Iterable[DailySummary], start: date, end: date
) -> TokenTotals:
    """Sum daily summaries whose date lies in ``[start, end)``."""
    start_key, end_key = start.isoformat(), end.isoformat()
    return calculate_totals(d for d in daily if start_key <= d.date < end_key)


def resolve_reference_date(
    daily: Sequence[DailySummary],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    strategy: ReferenceDateStrategy = ReferenceDateStrategy.MOST_RECENT_DATA_DATE,
) -> Tuple[date, bool]:
    """Choose the date displayed as "today".

    Args:
        daily: Daily summaries sorted newest first
        now: Reference instant
        tz: Local time zone
        strategy: Reference date policy

    Returns:
        (reference date, True if the data fallback was applied)
    """
    tz = tz or local_timezone()
    system_day = resolve_now(now, tz).astimezone(tz).date()
    if strategy is ReferenceDateStrategy.SYSTEM_CLOCK or not daily:
        return system_day, False

    if any(d.date == system_day.isoformat() for d in daily):
        return system_day, False

    newest = max(d.date for d in daily)
    log.warning(
        "No usage recorded on %s; showing most recent data date %s as today",
        system_day.isoformat(), newest,
    )
    return date.fromisoformat(newest), True


def filter_events(
    events: Iterable[UsageEvent],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    projects: Optional[Iterable[str]] = None,
    tz: Optional[tzinfo] = None,
) -> List[UsageEvent]:
    """Select events inside an inclusive time range and/or a set of projects."""
    tz = tz or local_timezone()
    wanted = set(projects) if projects else None
    selected = []
    for event, moment in _timed_events(events, tz):
        if start is not None and moment < resolve_now(start, tz):
            continue
        if end is not None and moment > resolve_now(end, tz):
            continue
        if wanted is not None and event.project not in wanted:
            continue
        selected.append(event)
    return selected


def aggregate_usage_data(
    events: Sequence[UsageEvent],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    hours_limit: int = DEFAULT_HOURS_LIMIT,
    reference_date_strategy: ReferenceDateStrategy = ReferenceDateStrategy.MOST_RECENT_DATA_DATE,
    week_start: int = SUNDAY,
) -> UsageData:
    """Produce the full summary bundle from a flat event list.

    "Now" is resolved once and threaded through every step, so the
    weekly and monthly cutoffs, the trailing window and the current-hour
    patch all agree.

    Args:
        events: Flattened events from the ingestion cache
        now: Reference instant (wall clock if omitted)
        tz: Local time zone (system zone if omitted)
        hours_limit: Trailing window for the hourly series
        reference_date_strategy: Policy for choosing "today"
        week_start: Weekday the week starts on (Monday == 0, Sunday == 6)

    Returns:
        UsageData bundle; empty input yields empty lists and zero totals
    """
    tz = tz or local_timezone()
    now = resolve_now(now, tz)

    daily = calculate_daily_summary(events, tz)
    sessions = calculate_session_summary(events)
    projects = calculate_project_summary(events)

    hourly = calculate_hourly_summary(events, now, tz, hours_limit)
    hourly = patch_current_hour(hourly, events, now, tz)

    reference_day, is_fallback = resolve_reference_date(daily, now, tz, reference_date_strategy)
    reference_key = reference_day.isoformat()
    day_events = [
        e for e, t in _timed_events(events, tz) if date_key(t, tz) == reference_key
    ]
    today_hourly = calculate_hourly_summary(
        day_events, now, tz, MAX_TODAY_HOURS, filter_window=False, day=reference_day
    )
    today = next((d for d in daily if d.date == reference_key), None)

    week_start_day = week_start_date(reference_day, week_start)
    month_start_day = month_start_date(reference_day)

    return UsageData(
        daily=daily,
        sessions=sessions,
        projects=projects,
        hourly=hourly,
        today_hourly=today_hourly,
        today=today,
        this_week=calculate_period_totals(
            daily, week_start_day, week_start_day + timedelta(days=7)
        ),
        this_month=calculate_period_totals(
            daily, month_start_day, _next_month(month_start_day)
        ),
        reference_date=reference_key,
        reference_date_is_fallback=is_fallback,
    )
